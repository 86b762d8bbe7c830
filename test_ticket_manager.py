from datetime import datetime, timedelta

import pytest

from models import db, Case, Client, Ticket, TicketComment
from services.onboarding import onboard_firm
from services.ticket_manager import ticket_manager, TicketError, conversation_text


def _ticket(firm, admin, **data):
    data.setdefault('title', 'Review the tenancy agreement')
    return ticket_manager.create_ticket(firm.id, data, created_by_id=admin.id)


def test_ticket_numbers_are_sequential_per_firm(firm, admin):
    first = _ticket(firm, admin)
    second = _ticket(firm, admin)
    year = datetime.utcnow().year
    assert first.ticket_number == f"TKT-{year}-00001"
    assert second.ticket_number == f"TKT-{year}-00002"


def test_sla_uses_priority_defaults_and_category_override(firm, admin):
    high = _ticket(firm, admin, priority='high')
    assert high.sla_due_date - high.created_at == timedelta(hours=24)
    low = _ticket(firm, admin, priority='low')
    assert low.sla_due_date - low.created_at == timedelta(hours=168)

    research = ticket_manager.category_by_name(firm.id, 'Legal Research')
    categorized = _ticket(firm, admin, priority='critical', category_id=research.id)
    assert categorized.sla_due_date - categorized.created_at == timedelta(hours=120)


def test_create_rejects_bad_input(firm, admin):
    with pytest.raises(TicketError):
        _ticket(firm, admin, title='  ')
    with pytest.raises(TicketError):
        _ticket(firm, admin, priority='whenever')
    with pytest.raises(TicketError):
        _ticket(firm, admin, category_id=9999)


def test_status_change_records_comment_and_timestamps(firm, admin):
    ticket = _ticket(firm, admin)
    ticket_manager.update_ticket(firm.id, ticket.id, {'status': 'in_progress'}, admin.id)
    assert ticket.first_response_at is not None

    ticket_manager.update_ticket(firm.id, ticket.id, {'status': 'resolved'}, admin.id)
    assert ticket.resolved_at is not None
    comments = TicketComment.query.filter_by(ticket_id=ticket.id, comment_type='status_change').all()
    assert [c.meta['to'] for c in comments] == ['in_progress', 'resolved']

    ticket_manager.update_ticket(firm.id, ticket.id, {'status': 'open'}, admin.id)
    assert ticket.resolved_at is None


def test_priority_change_recomputes_sla(firm, admin):
    ticket = _ticket(firm, admin, priority='low')
    ticket_manager.update_ticket(firm.id, ticket.id, {'priority': 'critical'}, admin.id)
    assert ticket.sla_due_date - ticket.created_at == timedelta(hours=4)


def test_update_rejects_unknown_fields(firm, admin):
    ticket = _ticket(firm, admin)
    with pytest.raises(TicketError):
        ticket_manager.update_ticket(firm.id, ticket.id, {'ticket_number': 'X'}, admin.id)
    with pytest.raises(LookupError):
        ticket_manager.update_ticket(firm.id, 4242, {'status': 'closed'}, admin.id)


def test_bulk_update(firm, admin):
    tickets = [_ticket(firm, admin) for _ in range(3)]
    updated = ticket_manager.bulk_update_tickets(firm.id, [t.id for t in tickets[:2]], {'priority': 'high'}, admin.id)
    assert len(updated) == 2
    assert Ticket.query.filter_by(priority='high').count() == 2
    with pytest.raises(TicketError):
        ticket_manager.bulk_update_tickets(firm.id, [], {'priority': 'high'}, admin.id)


def test_comments_set_first_response(firm, admin):
    ticket = _ticket(firm, admin, title='Client call back')
    internal = ticket_manager.add_comment(firm.id, ticket.id, 'note to self', user_id=admin.id, is_internal=True)
    assert internal.is_internal
    assert ticket.first_response_at is None
    ticket_manager.add_comment(firm.id, ticket.id, 'We are on it', user_id=None)
    assert ticket.first_response_at is not None
    with pytest.raises(TicketError):
        ticket_manager.add_comment(firm.id, ticket.id, '   ')


def test_references_must_belong_to_the_firm(firm, admin):
    other = onboard_firm({'firm_name': 'Reed LLP', 'admin_email': 'boss@reed.test'})
    their_client = Client(firm_id=other['firm'].id, first_name='Tom', last_name='Reed')
    their_case = Case(firm_id=other['firm'].id, title='Reed v Crown', assigned_to_id=other['admin'].id)
    db.session.add_all([their_client, their_case])
    db.session.commit()

    with pytest.raises(TicketError):
        _ticket(firm, admin, case_id=their_case.id)
    with pytest.raises(TicketError):
        _ticket(firm, admin, client_id=their_client.id)
    with pytest.raises(TicketError):
        _ticket(firm, admin, assigned_to=other['admin'].id)
    db.session.rollback()

    ticket = _ticket(firm, admin)
    with pytest.raises(TicketError):
        ticket_manager.update_ticket(firm.id, ticket.id, {'case_id': their_case.id})
    db.session.rollback()
    assert db.session.get(Ticket, ticket.id).case_id is None

    analysis = ticket_manager.analyze_ticket_with_ai('Review the contract', {'case_id': their_case.id},
                                                     firm_id=firm.id)
    assert analysis['suggested_assignee'] is None
    own = ticket_manager.analyze_ticket_with_ai('Review the contract', {'case_id': their_case.id},
                                                firm_id=other['firm'].id)
    assert own['suggested_assignee'] == other['admin'].id


def test_get_tickets_filters_and_paginates(firm, admin):
    _ticket(firm, admin, title='Court bundle', priority='high', tags=['court'])
    _ticket(firm, admin, title='Invoice query', priority='low')
    _ticket(firm, admin, title='Disclosure review', priority='high')

    result = ticket_manager.get_tickets(firm.id, {'priority': 'high'}, page=1, limit=1)
    assert result['total'] == 2
    assert result['total_pages'] == 2
    assert len(result['tickets']) == 1

    searched = ticket_manager.get_tickets(firm.id, {'search': 'invoice'})
    assert [t['title'] for t in searched['tickets']] == ['Invoice query']

    tagged = ticket_manager.get_tickets(firm.id, {'tags': 'court'})
    assert tagged['total'] == 1

    by_priority = ticket_manager.get_tickets(firm.id, {}, sort_field='priority', sort_direction='asc')
    assert by_priority['tickets'][0]['priority'] == 'low'


def test_stats_count_only_active_breaches(firm, admin):
    breached = _ticket(firm, admin, priority='high')
    breached.sla_due_date = datetime.utcnow() - timedelta(hours=1)
    done = _ticket(firm, admin, priority='high')
    done.sla_due_date = datetime.utcnow() - timedelta(hours=1)
    done.status = 'closed'
    stats = ticket_manager.get_ticket_stats(firm.id)
    assert stats['total'] == 2
    assert stats['sla_breached'] == 1
    assert stats['by_status']['closed'] == 1
    assert stats['unassigned'] == 1


def test_keyword_analysis():
    result = ticket_manager.analyze_ticket_with_ai('Urgent: court filing deadline for employment contract')
    assert result['suggested_priority'] == 'critical'
    assert result['suggested_category'] == 'Court Filing'
    assert result['suggested_tags'] == ['employment', 'urgent', 'contract']
    assert result['estimated_hours'] == 1
    assert result['confidence_score'] == 0.85


def test_create_from_conversation(firm, admin):
    messages = [
        {'author': 'client', 'content': 'Can you review the lease document?'},
        {'author': 'lawyer', 'content': 'Yes, send it over.'},
    ]
    assert conversation_text(messages) == 'Can you review the lease document?\nlawyer: Yes, send it over.'
    result = ticket_manager.create_ticket_from_conversation(firm.id, messages, platform_source='slack')
    ticket = result['ticket']
    assert ticket.source == 'ai_generated'
    assert ticket.category.name == 'Document Review'
    assert ticket.ai_context['platform_source'] == 'slack'


def test_categories(firm):
    names = [c.name for c in ticket_manager.list_categories(firm.id)]
    assert 'General' in names and 'Court Filing' in names
    category = ticket_manager.create_category(firm.id, {'name': 'Probate', 'sla_hours': 48})
    assert category.sla_hours == 48
    with pytest.raises(TicketError):
        ticket_manager.create_category(firm.id, {'name': 'probate'})
    with pytest.raises(TicketError):
        ticket_manager.create_category(firm.id, {'name': 'Wills', 'sla_hours': -3})
