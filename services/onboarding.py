import re
import logging
from typing import Any, Dict, List, Optional

from models import db, Firm, User, record_audit
from services import automation
from services.rbac import DEPARTMENTS, ROLES, DEFAULT_ROLE_LEVELS, BILLABLE_ROLES
from services.ticket_manager import ticket_manager
from services.workflow_engine import workflow_engine

logger = logging.getLogger(__name__)

SUBSCRIPTION_TIERS = ('starter', 'professional', 'enterprise')
USER_FIELDS = ('first_name', 'last_name', 'role', 'department', 'level', 'is_billable', 'is_active', 'mfa_enabled')


class OnboardingError(ValueError):
    pass


def slugify(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (name or '').lower()).strip('-')
    return slug[:100]


def seed_firm_defaults(firm_id: int) -> None:
    ticket_manager.ensure_default_categories(firm_id)
    workflow_engine.ensure_defaults(firm_id)
    automation.ensure_defaults(firm_id)


def onboard_firm(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a firm, its first admin and the starter configuration.

    Running it again for the same slug returns the existing firm and only
    fills in missing defaults.
    """
    name = (data.get('firm_name') or '').strip()
    if not name:
        raise OnboardingError('firm_name required')
    slug = slugify(data.get('slug') or name)
    if not slug:
        raise OnboardingError('valid slug required')
    tier = data.get('subscription_tier') or 'professional'
    if tier not in SUBSCRIPTION_TIERS:
        raise OnboardingError(f"Unsupported subscription tier: {tier}")

    firm = Firm.query.filter_by(slug=slug).first()
    created = firm is None
    if created:
        email = (data.get('admin_email') or '').strip().lower()
        if not email:
            raise OnboardingError('admin_email required')
        if User.query.filter_by(email=email).first():
            raise OnboardingError('admin_email already registered')
        firm = Firm(name=name, slug=slug, subscription_tier=tier, settings=dict(data.get('settings') or {}))
        db.session.add(firm)
        db.session.flush()
        admin = User(
            firm_id=firm.id,
            email=email,
            first_name=data.get('admin_first_name') or 'Firm',
            last_name=data.get('admin_last_name') or 'Admin',
            role='admin',
            department='Admin-Services',
            level=DEFAULT_ROLE_LEVELS['admin'],
        )
        if data.get('admin_password'):
            admin.set_password(data['admin_password'])
        db.session.add(admin)
        db.session.flush()
        record_audit(firm.id, 'firm_onboarded', f"Firm {name} onboarded", user_id=admin.id,
                     entity_type='firm', entity_id=firm.id, compliance_relevant=True)
        logger.info(f"Onboarded firm {slug}")
    else:
        admin = User.query.filter_by(firm_id=firm.id, role='admin').order_by(User.id).first()

    seed_firm_defaults(firm.id)
    firm.onboarding_completed = True
    db.session.commit()
    return {'firm': firm, 'admin': admin, 'created': created}


# ---- firm users ----

def _validate_user_fields(data: Dict[str, Any]) -> None:
    if 'role' in data and data['role'] not in ROLES:
        raise OnboardingError(f"Unsupported role: {data['role']}")
    if data.get('department') and data['department'] not in DEPARTMENTS:
        raise OnboardingError(f"Unsupported department: {data['department']}")
    if 'level' in data:
        try:
            level = int(data['level'])
        except (TypeError, ValueError):
            raise OnboardingError('level must be a number')
        if not 0 <= level <= 5:
            raise OnboardingError('level must be between 0 and 5')


def list_users(firm_id: int, include_inactive: bool = True) -> List[User]:
    query = User.query.filter_by(firm_id=firm_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(User.last_name, User.first_name).all()


def get_user(firm_id: int, user_id: int) -> User:
    user = User.query.filter_by(firm_id=firm_id, id=user_id).first()
    if user is None:
        raise LookupError('User not found')
    return user


def create_user(firm_id: int, data: Dict[str, Any], acting_user_id: Optional[int] = None) -> User:
    email = (data.get('email') or '').strip().lower()
    if not email or not data.get('first_name') or not data.get('last_name'):
        raise OnboardingError('email, first_name and last_name required')
    if User.query.filter_by(email=email).first():
        raise OnboardingError('email already registered')
    role = data.get('role') or 'staff'
    _validate_user_fields(dict(data, role=role))
    user = User(
        firm_id=firm_id,
        email=email,
        first_name=data['first_name'],
        last_name=data['last_name'],
        role=role,
        department=data.get('department'),
        level=int(data['level']) if 'level' in data else DEFAULT_ROLE_LEVELS.get(role, 1),
        is_billable=bool(data.get('is_billable', role in BILLABLE_ROLES)),
    )
    if data.get('password'):
        user.set_password(data['password'])
    db.session.add(user)
    db.session.flush()
    record_audit(firm_id, 'user_created', f"User {email} created", user_id=acting_user_id,
                 entity_type='user', entity_id=user.id, risk_level='medium', compliance_relevant=True)
    db.session.commit()
    return user


def update_user(firm_id: int, user_id: int, data: Dict[str, Any], acting_user_id: Optional[int] = None) -> User:
    user = get_user(firm_id, user_id)
    _validate_user_fields(data)
    changed = []
    for field in USER_FIELDS:
        if field in data and getattr(user, field) != data[field]:
            setattr(user, field, int(data[field]) if field == 'level' else data[field])
            changed.append(field)
    if data.get('password'):
        user.set_password(data['password'])
        changed.append('password')
    if changed:
        risk = 'high' if 'role' in changed else 'low'
        record_audit(firm_id, 'user_updated', f"User {user.email} updated", user_id=acting_user_id,
                     entity_type='user', entity_id=user.id, risk_level=risk,
                     compliance_relevant='role' in changed, details={'fields': changed})
    db.session.commit()
    return user


def deactivate_user(firm_id: int, user_id: int, acting_user_id: Optional[int] = None) -> User:
    user = get_user(firm_id, user_id)
    if user.id == acting_user_id:
        raise OnboardingError('You cannot deactivate your own account')
    user.is_active = False
    record_audit(firm_id, 'user_deactivated', f"User {user.email} deactivated", user_id=acting_user_id,
                 entity_type='user', entity_id=user.id, risk_level='medium', compliance_relevant=True)
    db.session.commit()
    return user
