from flask import Blueprint, jsonify, session

from gymledger.errors import NotFound
from gymledger.models.balance_log import BalanceLog
from gymledger.models.reports import Reports
from gymledger.models.time_session import TimeSession
from gymledger.models.user import User
from gymledger.utils import clock
from gymledger.utils.decorators import member_required

member_routes_bp = Blueprint('member', __name__, url_prefix='/member')


def _current_user():
    user = User.get_by_id(session['user_id'])
    if not user:
        raise NotFound('User')
    return user


@member_routes_bp.route('/home')
@member_required
def home():
    """Membership status, balance and today's visits"""
    user = _current_user()
    now = clock.now()
    member = user.member
    active = TimeSession.get_active_for_user(user.id)
    return jsonify({
        'user': user.to_dict(),
        'member': member.to_dict(now) if member else None,
        'activeSession': active.to_dict(now) if active else None,
        'todaysSessions': [s.to_dict(now) for s in TimeSession.get_todays_for_user(user.id, now)],
    })


@member_routes_bp.route('/balance-logs')
@member_required
def balance_logs():
    user = _current_user()
    return jsonify({
        'balance': float(user.balance),
        'formattedBalance': user.formatted_balance,
        'logs': [e.to_dict() for e in BalanceLog.for_user(user.id, limit=20)],
    })


@member_routes_bp.route('/progress')
@member_required
def progress():
    user = _current_user()
    return jsonify(Reports.member_progress(user.id, clock.now()))
