from datetime import timedelta

from flask import Blueprint, request, jsonify, current_app

from gymledger.errors import NotFound, ValidationError
from gymledger.models.balance_log import BalanceLog
from gymledger.models.member import Member
from gymledger.models.membership_plan import MembershipPlan
from gymledger.models.reports import Reports
from gymledger.models.time_session import TimeSession
from gymledger.models.user import User
from gymledger.utils import clock
from gymledger.utils.decorators import admin_required
from gymledger.utils.email_utils import send_welcome_email, send_membership_expiry_reminder
from gymledger.utils.helpers import CENT, days_between, parse_date, parse_money

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')

BALANCE_ACTIONS = ('set', 'add', 'subtract')


def _payload():
    return request.get_json(silent=True) or request.form


def _get_member(member_id):
    member = Member.get_by_id(member_id)
    if not member:
        raise NotFound(f'Member {member_id}')
    return member


def _get_user(user_id):
    user = User.get_by_id(user_id)
    if not user:
        raise NotFound(f'User {user_id}')
    return user


def _optional_text(data, field, max_length):
    value = (data.get(field) or '').strip()
    if len(value) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters')
    return value or None


# -------------------- Members --------------------

@admin_bp.route('/members')
@admin_required
def members():
    """All members with derived status and status counts"""
    now = clock.now()
    all_members = Member.get_all()
    return jsonify({
        'members': [m.to_dict(now) for m in all_members],
        'counts': Member.status_counts(all_members, now),
        'plans': MembershipPlan.values(),
    })


@admin_bp.route('/members', methods=['POST'])
@admin_required
def create_member():
    data = _payload()
    member, user = Member.register(
        full_name=data.get('full_name'),
        plan=data.get('plan'),
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
        email=data.get('email'),
        phone=data.get('phone'),
        notes=data.get('notes'),
        now=clock.now(),
    )
    if user is not None:
        send_welcome_email(user.email, member.full_name, member.plan.value,
                           member.end_date.isoformat(),
                           current_app.config.get('DEFAULT_MEMBER_PASSWORD', 'password'))
    return jsonify({
        'success': True,
        'member': member.to_dict(clock.now()),
        'user': user.to_dict() if user else None,
    }), 201


@admin_bp.route('/members/<int:member_id>', methods=['PUT', 'POST'])
@admin_required
def update_member(member_id):
    member = _get_member(member_id)
    data = _payload()
    member.update(
        full_name=data.get('full_name'),
        plan=data.get('plan'),
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
        email=data.get('email'),
        phone=data.get('phone'),
        notes=data.get('notes'),
    )
    return jsonify({'success': True, 'member': member.to_dict(clock.now())})


@admin_bp.route('/members/<int:member_id>/renew', methods=['POST'])
@admin_required
def renew_member(member_id):
    now = clock.now()
    member = _get_member(member_id).renew(now)
    return jsonify({'success': True, 'member': member.to_dict(now)})


@admin_bp.route('/members/<int:member_id>/toggle-status', methods=['POST'])
@admin_required
def toggle_member_status(member_id):
    member = _get_member(member_id).toggle_status()
    return jsonify({'success': True, 'member': member.to_dict(clock.now())})


@admin_bp.route('/members/<int:member_id>/password', methods=['POST'])
@admin_required
def reset_member_password(member_id):
    member = _get_member(member_id)
    data = _payload()
    user = member.set_password(data.get('password'), data.get('password_confirmation'))
    return jsonify({'success': True, 'member': member.to_dict(clock.now()), 'user': user.to_dict()})


@admin_bp.route('/members/<int:member_id>', methods=['DELETE'])
@admin_required
def delete_member(member_id):
    member = _get_member(member_id)
    user_deleted = member.destroy()
    return jsonify({'success': True, 'userDeleted': user_deleted})


# -------------------- Balances --------------------

@admin_bp.route('/balances')
@admin_required
def balances():
    users = User.get_all_members()
    return jsonify({'users': [u.to_dict() for u in users]})


@admin_bp.route('/users/<int:user_id>/balance', methods=['POST'])
@admin_required
def update_balance(user_id):
    """Set, add or subtract; ``log_type``/``description`` override the entry tags."""
    user = _get_user(user_id)
    data = _payload()
    action = data.get('action')
    if action not in BALANCE_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(BALANCE_ACTIONS)}")
    amount = parse_money(data.get('balance'), 'balance', minimum=0)
    log_type = _optional_text(data, 'log_type', 50)
    description = _optional_text(data, 'description', 255)
    now = clock.now()

    if action == 'set':
        entry = BalanceLog.set_balance(user, amount, now, type=log_type, description=description)
    elif action == 'add':
        entry = BalanceLog.add_balance(user, amount, now, type=log_type, description=description)
    else:
        entry = BalanceLog.subtract_balance(user, amount, now, type=log_type, description=description)

    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'entry': entry.to_dict() if entry else None,
    })


@admin_bp.route('/transactions', methods=['POST'])
@admin_required
def record_transaction():
    """Product sale charged to a member's balance"""
    data = _payload()
    try:
        user_id = int(data.get('user_id'))
    except (TypeError, ValueError):
        raise ValidationError('user_id is required') from None
    user = _get_user(user_id)
    product = _optional_text(data, 'product', 100)
    amount = parse_money(data.get('amount'), 'amount', minimum=CENT)
    entry = BalanceLog.record_purchase(user, product, amount, clock.now(),
                                       note=_optional_text(data, 'description', 255))
    return jsonify({'success': True, 'user': user.to_dict(), 'entry': entry.to_dict()}), 201


@admin_bp.route('/users/<int:user_id>/balance-logs')
@admin_required
def outstanding_balance_logs(user_id):
    """Charges since the last payment, newest first"""
    user = _get_user(user_id)
    entries = BalanceLog.outstanding_entries(user, clock.now())
    return jsonify({
        'user': user.to_dict(),
        'logs': [e.to_dict() for e in entries],
    })


@admin_bp.route('/users/<int:user_id>/mark-paid', methods=['POST'])
@admin_required
def mark_paid(user_id):
    user = _get_user(user_id)
    data = request.get_json(silent=True) or {}
    entry_ids = data.get('entry_ids') or request.form.getlist('entry_ids')
    try:
        entry_ids = [int(i) for i in entry_ids]
    except (TypeError, ValueError):
        raise ValidationError('entry_ids must be integers') from None
    entry = BalanceLog.mark_paid(user, entry_ids, clock.now(),
                                 description=_optional_text(data or request.form, 'description', 255))
    return jsonify({'success': True, 'user': user.to_dict(), 'entry': entry.to_dict()})


@admin_bp.route('/users/<int:user_id>/summary')
@admin_required
def user_summary(user_id):
    user = _get_user(user_id)
    now = clock.now()
    member = user.member
    subscription = None
    if member:
        subscription = member.to_dict(now)
    sessions, _total = TimeSession.admin_logs(user_id=user.id, per_page=10)
    return jsonify({
        'user': user.to_dict(),
        'subscription': subscription,
        'recentSessions': [s.to_dict(now) for s in sessions],
        'recentLogs': [e.to_dict() for e in BalanceLog.for_user(user.id, limit=10)],
    })


# -------------------- Time logs and reports --------------------

@admin_bp.route('/time-logs')
@admin_required
def time_logs():
    args = request.args
    try:
        page = int(args.get('page', 1))
        per_page = int(args.get('per_page', 20))
    except ValueError:
        raise ValidationError('page and per_page must be integers') from None
    sessions, total = TimeSession.admin_logs(
        date_from=args.get('date_from'),
        date_to=args.get('date_to'),
        user_id=args.get('user_id'),
        active=args.get('active'),
        page=page,
        per_page=per_page,
    )
    now = clock.now()
    return jsonify({
        'sessions': [s.to_dict(now) for s in sessions],
        'total': total,
        'page': page,
        'perPage': per_page,
    })


@admin_bp.route('/reports')
@admin_required
def reports():
    now = clock.now()
    granularity = request.args.get('granularity')
    if granularity:
        start = parse_date(request.args.get('start')) or now.date().replace(month=1, day=1)
        end = parse_date(request.args.get('end')) or now.date() + timedelta(days=1)
        if end <= start:
            raise ValidationError('end must be after start')
        return jsonify({
            'sales': [dict(s, total=float(s['total']))
                      for s in Reports.sales_totals(granularity, start, end)],
            'earnings': [dict(e, total=float(e['total']))
                         for e in Reports.earnings_totals(granularity, start, end)],
            'attendance': Reports.attendance_totals(granularity, start, end, now),
            'topMembers': Reports.top_members(start, end),
        })
    return jsonify({
        'daily': Reports.daily_totals(now),
        'monthly': Reports.monthly_totals(now),
        'annual': Reports.annual_totals(now),
    })


@admin_bp.route('/send-expiry-reminders', methods=['POST'])
@admin_required
def send_expiry_reminders():
    now = clock.now()
    sent_count = 0
    skipped = 0
    for member in Member.get_expiring(now):
        if not member.email:
            skipped += 1
            continue
        if send_membership_expiry_reminder(member.email, member.full_name,
                                           member.end_date.isoformat(),
                                           days_between(now, member.end_date)):
            sent_count += 1
    current_app.logger.info("Expiry reminders sent: %s (skipped %s without email)", sent_count, skipped)
    return jsonify({'success': True, 'sent': sent_count, 'skipped': skipped})
