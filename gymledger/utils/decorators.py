from functools import wraps
from flask import session, jsonify


def _auth_error(message, status):
    return jsonify({'error': 'Unauthorized' if status == 401 else 'Forbidden',
                    'message': message}), status


def login_required(f):
    """Decorator to require login for routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return _auth_error('Authentication required', 401)
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator to require admin role"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return _auth_error('Authentication required', 401)
        if session.get('role') != 'admin':
            return _auth_error('Admin privileges required', 403)
        return f(*args, **kwargs)
    return decorated_function


def member_required(f):
    """Logged-in non-admin account"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return _auth_error('Authentication required', 401)
        if session.get('role') != 'member':
            return _auth_error('Member login required', 403)
        return f(*args, **kwargs)
    return decorated_function
