from datetime import datetime, timedelta

import pytest

from models import db, CalendarAutomation, CalendarEvent, Case, Client, EmailQueue, EmailTemplate
from services import automation
from services.automation import AutomationError, next_run_after, parse_schedule
from services.onboarding import create_user
from services.ticket_manager import ticket_manager


def _team(firm):
    associate = create_user(firm.id, {'email': 'sam@hale.test', 'first_name': 'Sam', 'last_name': 'Reed',
                                      'role': 'associate'})
    paralegal = create_user(firm.id, {'email': 'pat@hale.test', 'first_name': 'Pat', 'last_name': 'Lowe',
                                      'role': 'paralegal'})
    return associate, paralegal


def _automation(firm, name):
    return CalendarAutomation.query.filter_by(firm_id=firm.id, name=name).one()


def test_parse_schedule():
    assert parse_schedule('daily_at_9am') == {'kind': 'daily_at', 'hour': 9}
    assert parse_schedule('daily_at_12pm')['hour'] == 12
    assert parse_schedule('daily_at_12am')['hour'] == 0
    assert parse_schedule('3 days before') == {'kind': 'lead', 'days': 3}
    assert parse_schedule('Business_Hours_Only') == {'kind': 'business_hours'}
    with pytest.raises(ValueError):
        parse_schedule('daily_at_13pm')
    with pytest.raises(ValueError):
        parse_schedule('whenever')


def test_next_run_after():
    friday_evening = datetime(2024, 5, 3, 18, 0)
    assert next_run_after('business_hours_only', friday_evening) == datetime(2024, 5, 6, 9, 0)
    assert next_run_after('business_hours_only', datetime(2024, 5, 6, 7, 30)) == datetime(2024, 5, 6, 9, 0)
    assert next_run_after('daily_at_9am', datetime(2024, 5, 6, 10, 0)) == datetime(2024, 5, 7, 9, 0)
    assert next_run_after('monthly', datetime(2024, 1, 31, 8, 0)) == datetime(2024, 2, 29, 8, 0)
    assert next_run_after('hourly', friday_evening) == datetime(2024, 5, 3, 19, 0)


def test_defaults_are_seeded_once(firm):
    templates = EmailTemplate.query.filter_by(firm_id=firm.id).count()
    automations = CalendarAutomation.query.filter_by(firm_id=firm.id).count()
    assert automations == 4
    automation.ensure_defaults(firm.id)
    db.session.commit()
    assert EmailTemplate.query.filter_by(firm_id=firm.id).count() == templates
    assert CalendarAutomation.query.filter_by(firm_id=firm.id).count() == automations
    assert _automation(firm, 'Daily Appointment Reminders').next_run_at is None


def test_email_template_lifecycle(firm):
    template = automation.create_email_template(firm.id, {
        'name': 'Document chase', 'trigger_type': 'document_request',
        'subject': 'Documents for {{case.title}}', 'body': 'Dear {{client.name}}, please send {{documents}}.'})
    assert template.variables == ['case.title', 'client.name', 'documents']

    rendered = automation.render_email_template(template, {'client': {'name': 'Ann'}, 'case': {'title': 'Lease'}})
    assert rendered['subject'] == 'Documents for Lease'
    assert rendered['missing_variables'] == ['documents']

    automation.update_email_template(firm.id, template.id, {'body': 'Hi {{client.first_name}}'})
    assert template.variables == ['case.title', 'client.first_name']
    with pytest.raises(AutomationError):
        automation.update_email_template(firm.id, template.id, {'trigger_type': 'birthday'})
    with pytest.raises(AutomationError):
        automation.create_email_template(firm.id, {'name': 'x', 'subject': 'y', 'body': 'z'})

    automation.delete_email_template(firm.id, template.id)
    assert template.is_active is False
    with pytest.raises(LookupError):
        automation.delete_email_template(firm.id, 9999)


def test_document_template_render_counts_usage(firm):
    template = automation.create_document_template(firm.id, {
        'name': 'Retainer', 'category': 'agreement', 'content': 'Signed on {{current_date}} by {{client.name}}'})
    result = automation.render_document_template(template, {'client': {'name': 'Ann Lee'}})
    assert result['content'].startswith('Signed on ')
    assert result['content'].endswith('by Ann Lee')
    assert result['missing_variables'] == []
    assert template.usage_count == 1
    with pytest.raises(AutomationError):
        automation.create_document_template(firm.id, {'name': 'Bad', 'category': 'poem', 'content': 'x'})


def test_calendar_automation_crud(firm):
    now = datetime(2024, 5, 6, 10, 0)
    created = automation.create_calendar_automation(firm.id, {
        'name': 'Weekly digest', 'automation_type': 'reminder_system', 'schedule_pattern': 'weekly',
        'recipients': ['attorneys']}, now=now)
    assert created.next_run_at == datetime(2024, 5, 13, 10, 0)
    with pytest.raises(AutomationError):
        automation.create_calendar_automation(firm.id, {'name': 'x', 'automation_type': 'reminder_system',
                                                        'schedule_pattern': 'fortnightly-ish'})
    automation.update_calendar_automation(firm.id, created.id, {'is_active': False})
    assert created.next_run_at is None
    automation.delete_calendar_automation(firm.id, created.id)
    assert db.session.get(CalendarAutomation, created.id).is_active is False


def test_court_scheduling_queues_one_email_per_recipient(firm):
    associate, paralegal = _team(firm)
    client = Client(firm_id=firm.id, first_name='Ann', last_name='Lee', email='ann@lee.test')
    db.session.add(client)
    db.session.flush()
    case = Case(firm_id=firm.id, title='Lee v Shaw', client_id=client.id)
    db.session.add(case)
    db.session.flush()
    now = datetime.utcnow()
    db.session.add(CalendarEvent(firm_id=firm.id, title='Final hearing', event_type='hearing',
                                 start_at=now + timedelta(days=2), case_id=case.id, location='Court 4'))
    db.session.add(CalendarEvent(firm_id=firm.id, title='Team lunch', event_type='meeting',
                                 start_at=now + timedelta(days=2)))
    db.session.commit()

    court = _automation(firm, 'Court Date Notifications')
    result = automation.run_calendar_automation(court, now=now)
    assert result['events'] == 1
    assert result['emails_queued'] == 3
    recipients = sorted(e.to for e in EmailQueue.query.filter_by(source='calendar_automation'))
    assert recipients == ['ann@lee.test', 'pat@hale.test', 'sam@hale.test']
    email = EmailQueue.query.filter_by(to='sam@hale.test').one()
    assert email.subject == 'Court Date Notifications: 1 upcoming item'
    assert 'Final hearing (Court 4)' in email.body

    again = automation.run_calendar_automation(court, now=now)
    assert again['emails_queued'] == 0
    assert court.success_count == 2
    assert court.next_run_at == now + timedelta(days=1)


def test_court_digest_leaves_event_reminder_pending(firm):
    _team(firm)
    now = datetime.utcnow()
    hearing = CalendarEvent(firm_id=firm.id, title='Final hearing', event_type='hearing',
                            start_at=now + timedelta(days=2), reminder_minutes_before=60,
                            attendees=['counsel@chambers.test'])
    db.session.add(hearing)
    db.session.commit()

    result = automation.run_calendar_automation(_automation(firm, 'Court Date Notifications'), now=now)
    assert result['events'] == 1
    assert hearing.last_notified_at == now

    assert automation.send_event_reminders(now=hearing.start_at - timedelta(minutes=30)) == 1
    assert EmailQueue.query.filter_by(source='event_reminder').one().to == 'counsel@chambers.test'


def test_deadline_tracking_includes_ticket_sla(firm, admin):
    _team(firm)
    ticket = ticket_manager.create_ticket(firm.id, {'title': 'Serve defence', 'priority': 'high'}, admin.id)
    result = automation.run_calendar_automation(_automation(firm, 'Filing Deadline Alerts'), now=datetime.utcnow())
    assert result['tickets'] == 1
    assert result['emails_queued'] == 2
    email = EmailQueue.query.filter_by(to='pat@hale.test').one()
    assert ticket.ticket_number in email.body


def test_due_automations_respect_business_hours(firm):
    saturday = datetime(2031, 1, 4, 12, 0)
    results = automation.run_due_automations(now=saturday)
    names = sorted(db.session.get(CalendarAutomation, r['automation_id']).name for r in results)
    assert names == ['Court Date Notifications', 'Filing Deadline Alerts']


def test_event_reminders(firm, admin):
    now = datetime.utcnow()
    db.session.add(CalendarEvent(firm_id=firm.id, title='Client call', start_at=now + timedelta(minutes=30),
                                 reminder_minutes_before=60,
                                 attendees=[{'email': 'ann@lee.test'}, 'ann@lee.test']))
    db.session.add(CalendarEvent(firm_id=firm.id, title='Later call', start_at=now + timedelta(minutes=30),
                                 reminder_minutes_before=10, attendees=['bob@lee.test']))
    db.session.add(CalendarEvent(firm_id=firm.id, title='Solo review', start_at=now + timedelta(minutes=30),
                                 reminder_minutes_before=45, created_by_id=admin.id))
    db.session.commit()

    assert automation.send_event_reminders(now=now) == 2
    assert sorted(e.to for e in EmailQueue.query.all()) == ['admin@hale.test', 'ann@lee.test']
    assert automation.send_event_reminders(now=now) == 0
