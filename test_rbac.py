from flask import g

import pytest

from models import db, AuditLog, Firm, User
from services.onboarding import (OnboardingError, create_user, deactivate_user, list_users, onboard_firm, slugify,
                                 update_user)
from services.rbac import (CAN_CREATE_CASES, CAN_MANAGE_USERS, CAN_VIEW_FINANCIALS, get_acting_user,
                           has_permission, is_billable, is_partner_level, is_senior_level, requires_permission,
                           user_permissions)


def _user(firm, email, role, **extra):
    return create_user(firm.id, dict({'email': email, 'first_name': 'Test', 'last_name': role.title(),
                                      'role': role}, **extra))


def _reset_acting_context():
    g.pop('firm_id', None)
    g.pop('acting_user', None)


def test_role_permissions(firm, admin):
    associate = _user(firm, 'assoc@hale.test', 'associate')
    paralegal = _user(firm, 'para@hale.test', 'paralegal')
    assert has_permission(admin, CAN_MANAGE_USERS)
    assert has_permission(associate, CAN_CREATE_CASES)
    assert not has_permission(associate, CAN_VIEW_FINANCIALS)
    assert user_permissions(paralegal) == [CAN_CREATE_CASES]
    assert not has_permission(None, CAN_CREATE_CASES)

    associate.is_active = False
    assert not has_permission(associate, CAN_CREATE_CASES)


def test_levels_and_billing(firm):
    associate = _user(firm, 'assoc@hale.test', 'associate')
    partner = _user(firm, 'partner@hale.test', 'partner')
    staff = _user(firm, 'staff@hale.test', 'staff', level=3)
    assert associate.level == 2
    assert not is_senior_level(associate)
    assert is_partner_level(partner)
    assert is_senior_level(staff)
    assert is_billable(associate) and associate.is_billable
    assert not is_billable(staff)


def test_acting_user_resolution(app, firm, admin):
    staff = _user(firm, 'staff@hale.test', 'staff')
    with app.test_request_context(headers={'X-Firm-Id': str(firm.id), 'X-User-Id': str(staff.id)}):
        _reset_acting_context()
        assert get_acting_user() == staff
    with app.test_request_context():
        _reset_acting_context()
        assert get_acting_user() == admin
    with app.test_request_context(headers={'X-Firm-Id': '999', 'X-User-Id': str(staff.id)}):
        _reset_acting_context()
        assert get_acting_user() is None


def test_requires_permission_blocks_staff(app, firm):
    staff = _user(firm, 'staff@hale.test', 'staff')

    @requires_permission(CAN_MANAGE_USERS)
    def manage():
        return 'ok'

    with app.test_request_context(headers={'X-Firm-Id': str(firm.id), 'X-User-Id': str(staff.id)}):
        _reset_acting_context()
        response, status = manage()
        assert status == 403
        assert response.get_json() == {'error': 'Forbidden', 'required_permission': CAN_MANAGE_USERS}


def test_onboarding_is_idempotent(firm, admin):
    assert firm.onboarding_completed is True
    assert admin.check_password('secret123')
    again = onboard_firm({'firm_name': 'Hale & Partners', 'slug': 'hale-partners'})
    assert again['created'] is False
    assert again['firm'].id == firm.id
    assert again['admin'].id == admin.id
    assert Firm.query.count() == 1


def test_onboarding_validation(app, firm):
    assert slugify('Hale & Partners LLP') == 'hale-partners-llp'
    with pytest.raises(OnboardingError):
        onboard_firm({'firm_name': ' '})
    with pytest.raises(OnboardingError):
        onboard_firm({'firm_name': 'Other', 'subscription_tier': 'platinum'})
    with pytest.raises(OnboardingError):
        onboard_firm({'firm_name': 'Other'})
    with pytest.raises(OnboardingError):
        onboard_firm({'firm_name': 'Other', 'admin_email': 'ADMIN@hale.test'})


def test_user_validation(firm):
    _user(firm, 'sam@hale.test', 'associate')
    with pytest.raises(OnboardingError):
        _user(firm, 'sam@hale.test', 'associate')
    with pytest.raises(OnboardingError):
        _user(firm, 'x@hale.test', 'overlord')
    with pytest.raises(OnboardingError):
        _user(firm, 'y@hale.test', 'staff', department='Marketing')
    with pytest.raises(OnboardingError):
        _user(firm, 'z@hale.test', 'staff', level=9)
    with pytest.raises(OnboardingError):
        create_user(firm.id, {'email': 'nobody@hale.test'})


def test_role_change_is_audited_as_high_risk(firm, admin):
    user = _user(firm, 'sam@hale.test', 'associate')
    update_user(firm.id, user.id, {'role': 'partner', 'level': 5}, acting_user_id=admin.id)
    assert user.role == 'partner'
    entry = AuditLog.query.filter_by(event_type='user_updated').one()
    assert entry.risk_level == 'high'
    assert entry.compliance_relevant is True
    assert sorted(entry.details['fields']) == ['level', 'role']


def test_deactivation(firm, admin):
    user = _user(firm, 'sam@hale.test', 'associate')
    with pytest.raises(OnboardingError):
        deactivate_user(firm.id, admin.id, acting_user_id=admin.id)
    deactivate_user(firm.id, user.id, acting_user_id=admin.id)
    assert db.session.get(User, user.id).is_active is False
    assert [u.email for u in list_users(firm.id, include_inactive=False)] == ['admin@hale.test']
    with pytest.raises(LookupError):
        deactivate_user(firm.id, 4242, acting_user_id=admin.id)
