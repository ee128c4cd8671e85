from flask import Blueprint, request, session, jsonify, current_app

from gymledger.models.user import User

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


@auth_bp.route('/login', methods=['POST'])
def login():
    """Email/password login. Accepts JSON or form data."""
    data = request.get_json(silent=True) or request.form
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'error': 'ValidationError', 'message': 'Email and password are required'}), 400

    user = User.authenticate(email, password)
    if not user:
        current_app.logger.warning("Failed login for %s", email)
        return jsonify({'error': 'Unauthorized', 'message': 'Invalid email or password'}), 401

    session.clear()
    session['user_id'] = user.id
    session['name'] = user.name
    session['email'] = user.email
    session['role'] = 'admin' if user.is_admin else 'member'
    current_app.logger.info("User %s logged in as %s", user.id, session['role'])
    return jsonify({'success': True, 'role': session['role'], 'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    user_id = session.get('user_id')
    session.clear()
    if user_id:
        current_app.logger.info("User %s logged out", user_id)
    return jsonify({'success': True})
