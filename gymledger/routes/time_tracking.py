from flask import Blueprint, jsonify, session, current_app

from gymledger.errors import NotFound
from gymledger.models.member import StatusCode
from gymledger.models.time_session import TimeSession
from gymledger.models.user import User
from gymledger.utils import clock
from gymledger.utils.decorators import login_required
from gymledger.utils.helpers import format_currency

time_tracking_bp = Blueprint('time_tracking', __name__)

MESSAGES = {
    'time_in': 'Successfully timed in',
    'time_out': 'Successfully timed out',
}


def _current_user():
    user = User.get_by_id(session['user_id'])
    if not user:
        raise NotFound('User')
    return user


def _live_balance(user, active, now):
    """Stored balance plus what the open pay-as-you-go session has accrued so far"""
    live = user.balance
    if active is not None:
        live += active.live_credits_used(now)
    return live


def _balance_payload(user, active, now):
    live = _live_balance(user, active, now)
    return {
        'id': user.id,
        'name': user.name,
        'balance': float(user.balance),
        'liveBalance': float(live),
        'formattedBalance': user.formatted_balance,
        'formattedLiveBalance': format_currency(live),
    }


@time_tracking_bp.route('/api/time-tracking/toggle', methods=['POST'])
@login_required
def toggle():
    user = _current_user()
    now = clock.now()
    action, time_session = TimeSession.toggle(user, now)
    active = time_session if time_session.is_active else None
    return jsonify({
        'success': True,
        'action': action,
        'message': MESSAGES[action],
        'session': time_session.to_dict(now),
        'user': _balance_payload(user, active, now),
    })


@time_tracking_bp.route('/api/time-tracking/status')
@login_required
def status():
    user = _current_user()
    now = clock.now()
    active = TimeSession.get_active_for_user(user.id)
    return jsonify({
        'user': _balance_payload(user, active, now),
        'activeSession': active.to_dict(now) if active else None,
        'todaysSessions': [s.to_dict(now) for s in TimeSession.get_todays_for_user(user.id, now)],
        'nextAction': 'time_out' if active else 'time_in',
    })


@time_tracking_bp.route('/api/time-tracking/live-balance')
@login_required
def live_balance():
    user = _current_user()
    now = clock.now()
    active = TimeSession.get_active_for_user(user.id)
    data = _balance_payload(user, active, now)
    data['activeSession'] = {
        'duration': active.formatted_duration(now),
        'creditsUsed': float(active.live_credits_used(now)),
    } if active else None
    return jsonify(data)


@time_tracking_bp.route('/qr/time-track/<int:user_id>')
def qr_time_track(user_id):
    """Public scanner endpoint. Inactive or expired memberships are turned away."""
    user = User.get_by_id(user_id)
    member = user.member if user else None
    if member is None:
        return jsonify({'success': False,
                        'message': 'Member not found or invalid QR code.'}), 404

    now = clock.now()
    status = member.compute_status(now)
    if status.code in (StatusCode.INACTIVE, StatusCode.EXPIRED):
        current_app.logger.warning("QR scan refused for user %s: %s", user.id, status.code.value)
        return jsonify({
            'success': False,
            'message': 'Membership is inactive or expired. Please renew at the front desk.',
            'user': {'name': user.name, 'plan': member.plan.value},
            'status': status.to_dict(),
        }), 403

    action, time_session = TimeSession.toggle(user, now)
    active = time_session if time_session.is_active else None
    return jsonify({
        'success': True,
        'action': action,
        'message': MESSAGES[action],
        'user': {
            'name': user.name,
            'plan': member.plan.value,
            'showBalance': member.plan.is_pay_as_you_go,
            'balance': format_currency(_live_balance(user, active, now)),
        },
        'session': time_session.to_dict(now),
    })
