from datetime import date, datetime, timedelta

import pytest

from models import db, AuditLog, Case, Invoice
from services.analytics import (AnalyticsError, analytics_service, calculate_compliance_score,
                                calculate_security_score, calculate_trend, growth_rate, revenue_forecast, risk_level)
from services.ticket_manager import ticket_manager


def test_trend_compares_window_halves():
    start = datetime(2024, 1, 1)
    end = datetime(2024, 1, 11)
    first_half = [datetime(2024, 1, 2), datetime(2024, 1, 3)]
    second_half = [datetime(2024, 1, 8), datetime(2024, 1, 9), datetime(2024, 1, 10)]
    assert calculate_trend(first_half + second_half, start, end) == 50.0
    assert calculate_trend(second_half, start, end) == 100.0
    assert calculate_trend([], start, end) == 0.0


def test_scores():
    logs = [AuditLog(event_type='login', risk_level='high'), AuditLog(event_type='login', risk_level='low')]
    assert calculate_security_score(logs) == 97.5
    assert calculate_security_score([]) == 100.0
    audited = [AuditLog(event_type='x', compliance_relevant=True, result='failure'),
               AuditLog(event_type='x', compliance_relevant=True, result='success')]
    assert calculate_compliance_score(audited) == 50
    assert risk_level(97.5, 0) == 'low'
    assert risk_level(80, 0) == 'medium'
    assert risk_level(99, 1) == 'high'


def test_growth_and_forecast():
    assert growth_rate(150, 100) == 50.0
    assert growth_rate(150, 0) == 0.0
    assert revenue_forecast([100, 200]) is None
    assert revenue_forecast([100, 200, 300]) == {'next_month': 300.0, 'next_quarter': 500.0, 'confidence': 60.0}


def test_unknown_type_rejected(firm):
    with pytest.raises(AnalyticsError):
        analytics_service.get_analytics(firm.id, 'usage')


def test_overview(firm):
    db.session.add(Case(firm_id=firm.id, title='Open matter'))
    db.session.add(Case(firm_id=firm.id, title='Closed matter', status='closed'))
    db.session.add(Invoice(firm_id=firm.id, invoice_number='INV-1', total_amount=500.0, amount_paid=500.0,
                           status='paid', paid_at=datetime.utcnow() - timedelta(days=1)))
    db.session.commit()

    result = analytics_service.get_analytics(firm.id, 'overview', '7d', now=datetime.utcnow() + timedelta(seconds=1))
    overview = result['overview']
    assert overview['total_cases'] == 2
    assert overview['case_resolution_rate'] == 50.0
    assert overview['total_users'] == 1
    assert overview['active_users'] == 0
    assert result['revenue']['collected'] == 500.0
    assert result['security']['risk_level'] == 'low'
    assert result['period'] == '7d'


def test_revenue(firm):
    db.session.add(Invoice(firm_id=firm.id, invoice_number='INV-1', total_amount=500.0, amount_paid=500.0,
                           status='paid', paid_at=datetime.utcnow() - timedelta(hours=2)))
    db.session.add(Invoice(firm_id=firm.id, invoice_number='INV-2', total_amount=1000.0, status='sent',
                           due_date=date.today() - timedelta(days=3)))
    db.session.add(Invoice(firm_id=firm.id, invoice_number='INV-3', total_amount=50.0, status='draft'))
    db.session.commit()

    revenue = analytics_service.get_analytics(firm.id, 'revenue', 'bogus',
                                              now=datetime.utcnow() + timedelta(seconds=1))
    assert revenue['period'] == '30d'
    assert revenue['billed'] == 1500.0
    assert revenue['collected'] == 500.0
    assert revenue['outstanding'] == 1000.0
    assert revenue['overdue_count'] == 1
    assert revenue['invoice_count'] == 3
    assert len(revenue['revenue_history']) == 1
    assert revenue['forecast'] is None


def test_compliance(firm):
    result = analytics_service.get_analytics(firm.id, 'compliance', now=datetime.utcnow() + timedelta(seconds=1))
    assert 'firm_onboarded' in result['audit_summary']['event_types']
    assert result['compliance_score'] == 100
    titles = [r['title'] for r in result['recommendations']]
    assert titles == ['Enable Multi-Factor Authentication']


def test_ticket_analytics(firm, admin):
    first = ticket_manager.create_ticket(firm.id, {'title': 'Draft reply'}, admin.id)
    ticket_manager.create_ticket(firm.id, {'title': 'File bundle'}, admin.id)
    ticket_manager.update_ticket(firm.id, first.id, {'status': 'resolved'}, admin.id)

    result = analytics_service.get_analytics(firm.id, 'tickets', now=datetime.utcnow() + timedelta(seconds=1))
    assert result['created_in_period'] == 2
    assert result['resolved_in_period'] == 1
    assert result['resolution_rate'] == 50.0
    assert sum(result['by_category'].values()) == 2
    assert result['stats']['total'] == 2
