from datetime import datetime, timedelta

from models import db, CalendarEvent, Case, TicketComment
from services.ticket_ai import ticket_ai
from services.ticket_manager import ticket_manager


def _ticket(firm, admin, **data):
    data.setdefault('title', 'Prepare witness statement')
    return ticket_manager.create_ticket(firm.id, data, created_by_id=admin.id)


def test_query_creates_ticket_when_executed(firm, admin):
    result = ticket_ai.process_ticket_query(
        firm.id, {'query': 'Please create ticket for the lease review. Client is waiting.'},
        execute=True, user_id=admin.id)
    assert [a['type'] for a in result['actions']] == ['create']
    action = result['actions'][0]
    assert action['data']['title'] == 'Please create ticket for the lease review'
    assert action['data']['category'] == 'Document Review'
    assert result['results'][0]['ok'] is True
    ticket = ticket_manager.get_ticket(firm.id, result['results'][0]['ticket_id'])
    assert ticket.category.name == 'Document Review'
    assert 'Done: create' in result['response']


def test_query_without_execute_only_plans(firm, admin):
    ticket = _ticket(firm, admin)
    result = ticket_ai.process_ticket_query(firm.id, {'query': 'resolve ticket please', 'existing_ticket_id': ticket.id})
    assert result['actions'][0]['data'] == {'status': 'resolved'}
    assert result['results'] == []
    assert ticket.status == 'open'


def test_query_assigns_named_user(firm, admin):
    ticket = _ticket(firm, admin)
    result = ticket_ai.process_ticket_query(
        firm.id, {'query': 'assign to Ada', 'existing_ticket_id': ticket.id}, execute=True)
    assert result['actions'][0]['data']['assigned_to'] == admin.id
    assert ticket.assigned_to_id == admin.id


def test_query_with_no_actions(app):
    result = ticket_ai.process_ticket_query(1, {'query': 'what is the weather'})
    assert result['actions'] == []
    assert result['confidence'] == 0.5
    assert 'Could you provide more details' in result['response']


def test_conversation_ticket_requires_actionable_request(firm, admin):
    skipped = ticket_ai.create_ticket_from_conversation(firm.id, {'messages': 'Thanks for the update.'})
    assert skipped['created'] is False
    assert skipped['ticket'] is None

    created = ticket_ai.create_ticket_from_conversation(firm.id, {
        'messages': 'We have an issue with the disclosure bundle and need someone to review it before Friday.',
        'platform': 'teams',
    }, admin.id)
    assert created['created'] is True
    assert created['ticket'].source == 'ai_generated'
    assert created['analysis']['suggested_category'] == 'Document Review'


def test_assignment_prefers_case_owner(firm, admin):
    from services.onboarding import create_user
    associate = create_user(firm.id, {'email': 'sam@hale.test', 'first_name': 'Sam', 'last_name': 'Reed',
                                      'role': 'associate', 'department': 'Fee-Earning'})
    case = Case(firm_id=firm.id, title='Reed v Crown', assigned_to_id=associate.id)
    db.session.add(case)
    db.session.commit()
    _ticket(firm, admin, assigned_to=associate.id)
    ticket = _ticket(firm, admin, case_id=case.id)

    suggestion = ticket_ai.suggest_ticket_assignment(firm.id, ticket.id)
    assert suggestion['suggested_assignee']['id'] == associate.id
    assert suggestion['confidence'] == 0.9
    assert [a['id'] for a in suggestion['alternatives']] == [admin.id]


def test_prioritization_raises_for_court_dates(firm, admin):
    case = Case(firm_id=firm.id, title='Hearing prep')
    db.session.add(case)
    db.session.commit()
    ticket = _ticket(firm, admin, title='Bundle', priority='low', case_id=case.id)
    now = datetime.utcnow()
    db.session.add(CalendarEvent(firm_id=firm.id, title='Directions hearing', event_type='hearing',
                                 start_at=now + timedelta(hours=20), case_id=case.id))
    db.session.commit()

    result = ticket_ai.intelligent_prioritization(firm.id, ticket.id, now=now)
    assert result['suggested_priority'] == 'high'
    assert result['escalation_recommended'] is True
    assert any('Directions hearing' in r for r in result['reasoning'])


def test_escalation_monitor(firm, admin):
    breached = _ticket(firm, admin, title='Overdue reply', priority='high')
    stale = _ticket(firm, admin, title='Quiet matter', priority='low')
    later = datetime.utcnow() + timedelta(days=2)
    stale.updated_at = later - timedelta(days=8)
    stale.sla_due_date = later + timedelta(days=30)
    db.session.commit()

    escalations = ticket_ai.monitor_ticket_escalation(firm.id, now=later)
    assert [(e['ticket_id'], e['urgency']) for e in escalations] == [(breached.id, 'critical'), (stale.id, 'medium')]
    assert escalations[0]['escalation_reason'] == 'SLA breached'


def test_platform_response_updates_ticket(firm, admin):
    ticket = _ticket(firm, admin)
    preview = ticket_ai.process_response_for_ticket_update(firm.id, ticket.id, 'This is fixed now')
    assert preview['action'] == 'resolve'
    assert ticket.status == 'open'

    result = ticket_ai.process_response_for_ticket_update(
        firm.id, ticket.id, 'This is fixed now', platform='slack', author='sam', apply=True)
    assert result['ticket_number'] == ticket.ticket_number
    assert ticket.status == 'resolved'
    comment = TicketComment.query.filter_by(ticket_id=ticket.id, comment_type='ai_update').one()
    assert comment.content == '[slack] sam: This is fixed now'


def test_escalation_response_keeps_critical_priority(firm, admin):
    ticket = _ticket(firm, admin, priority='critical')
    result = ticket_ai.process_response_for_ticket_update(firm.id, ticket.id, 'please escalate', apply=True)
    assert result['action'] == 'escalate'
    assert ticket.priority == 'critical'


def test_platform_responses_append_work_notes(firm, admin):
    ticket = _ticket(firm, admin)
    ticket_manager.update_ticket(firm.id, ticket.id, {'work_notes': 'Called opposing counsel'})
    ticket_ai.process_response_for_ticket_update(firm.id, ticket.id, 'please escalate', platform='teams', apply=True)
    ticket_ai.process_response_for_ticket_update(firm.id, ticket.id, 'All fixed', platform='slack', author='sam',
                                                 apply=True)
    assert ticket.work_notes.splitlines() == ['Called opposing counsel', 'Escalation requested via teams',
                                              'Resolved via slack by sam']
