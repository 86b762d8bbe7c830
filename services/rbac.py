from functools import wraps

from flask import g, jsonify, request

from models import db, Firm, User

CAN_CREATE_CASES = 'can_create_cases'
CAN_ASSIGN_CASES = 'can_assign_cases'
CAN_VIEW_ALL_CASES = 'can_view_all_cases'
CAN_MANAGE_USERS = 'can_manage_users'
CAN_VIEW_FINANCIALS = 'can_view_financials'
CAN_MANAGE_BILLING = 'can_manage_billing'
CAN_ACCESS_ADMIN = 'can_access_admin'

PERMISSIONS = (CAN_CREATE_CASES, CAN_ASSIGN_CASES, CAN_VIEW_ALL_CASES, CAN_MANAGE_USERS,
               CAN_VIEW_FINANCIALS, CAN_MANAGE_BILLING, CAN_ACCESS_ADMIN)

DEPARTMENTS = ('Fee-Earning', 'Practice-Support', 'Business-Ops', 'Admin-Services', 'Business-Dev',
               'Compliance', 'Support-Services', 'Trainee')

JUNIOR, MID, SENIOR, DIRECTOR, PARTNER = 1, 2, 3, 4, 5

ROLES = ('admin', 'partner', 'associate', 'paralegal', 'staff', 'client')

ROLE_PERMISSIONS = {
    'admin': set(PERMISSIONS),
    'partner': {CAN_CREATE_CASES, CAN_ASSIGN_CASES, CAN_VIEW_ALL_CASES, CAN_MANAGE_USERS,
                CAN_VIEW_FINANCIALS, CAN_MANAGE_BILLING},
    'associate': {CAN_CREATE_CASES, CAN_VIEW_ALL_CASES},
    'paralegal': {CAN_CREATE_CASES},
    'staff': set(),
    'client': set(),
}
DEFAULT_ROLE_LEVELS = {'admin': PARTNER, 'partner': PARTNER, 'associate': MID, 'paralegal': JUNIOR,
                       'staff': JUNIOR, 'client': 0}
BILLABLE_ROLES = ('partner', 'associate', 'paralegal')


def has_permission(user, permission):
    if user is None or not user.is_active:
        return False
    return permission in ROLE_PERMISSIONS.get(user.role, set())


def get_user_max_level(user):
    if user is None:
        return 0
    return max(user.level or 0, DEFAULT_ROLE_LEVELS.get(user.role, 0))


def is_senior_level(user):
    return get_user_max_level(user) >= SENIOR


def is_partner_level(user):
    return get_user_max_level(user) >= DIRECTOR


def is_billable(user):
    if user is None:
        return False
    return bool(user.is_billable) or user.role in BILLABLE_ROLES


def get_user_department(user):
    return user.department if user is not None else None


def user_permissions(user):
    return sorted(p for p in PERMISSIONS if has_permission(user, p))


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_acting_firm_id():
    """Firm from X-Firm-Id / ?firm_id, else the first firm."""
    if 'firm_id' not in g:
        firm_id = _int_or_none(request.headers.get('X-Firm-Id') or request.args.get('firm_id'))
        if firm_id is None:
            first = Firm.query.order_by(Firm.id).first()
            firm_id = first.id if first else None
        g.firm_id = firm_id
    return g.firm_id


def get_acting_user():
    """User from X-User-Id, else the firm's first active user."""
    if 'acting_user' not in g:
        firm_id = get_acting_firm_id()
        user_id = _int_or_none(request.headers.get('X-User-Id'))
        user = db.session.get(User, user_id) if user_id is not None else None
        if user is None and user_id is None:
            user = (User.query.filter_by(firm_id=firm_id, is_active=True).order_by(User.id).first()
                    if firm_id else None)
        if user is not None and user.firm_id != firm_id:
            user = None
        g.acting_user = user
    return g.acting_user


def requires_permission(permission):
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if not has_permission(get_acting_user(), permission):
                return jsonify({'error': 'Forbidden', 'required_permission': permission}), 403
            return f(*args, **kwargs)
        return decorated
    return decorator
