import logging
from collections import Counter, OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from models import AuditLog, Case, Document, Invoice, Ticket, User
from services.ticket_manager import ticket_manager

logger = logging.getLogger(__name__)

PERIOD_DAYS = {'7d': 7, '30d': 30, '90d': 90, '1y': 365}
ANALYTICS_TYPES = ('overview', 'revenue', 'compliance', 'tickets')
ACTIVE_CASE_STATUSES = ('open', 'in_progress', 'pending')
RISK_WEIGHTS = {'critical': 10, 'high': 5, 'medium': 2}


class AnalyticsError(ValueError):
    pass


def period_days(period: Optional[str]) -> int:
    return PERIOD_DAYS.get(period or '30d', 30)


def percent(part, whole) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def calculate_security_score(logs: List[AuditLog]) -> float:
    if not logs:
        return 100.0
    risk = sum(RISK_WEIGHTS.get(log.risk_level, 0) for log in logs) / len(logs)
    return round(max(0.0, 100.0 - risk), 1)


def risk_level(security_score: float, critical_events: int) -> str:
    if critical_events > 0 or security_score < 70:
        return 'high'
    if security_score < 85:
        return 'medium'
    return 'low'


def calculate_trend(timestamps: List[datetime], start: datetime, end: datetime) -> float:
    """Percent change between the first and second half of the window."""
    midpoint = start + (end - start) / 2
    first = sum(1 for t in timestamps if t and t < midpoint)
    second = sum(1 for t in timestamps if t and t >= midpoint)
    if first == 0:
        return 100.0 if second else 0.0
    return round((second - first) / first * 100, 1)


def growth_rate(current: float, previous: float) -> float:
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def calculate_compliance_score(logs: List[AuditLog]) -> int:
    if not logs:
        return 100
    relevant = [log for log in logs if log.compliance_relevant]
    if not relevant:
        return 100
    failed = sum(1 for log in relevant if log.result == 'failure')
    return round((len(relevant) - failed) / len(relevant) * 100)


def revenue_forecast(monthly: List[float]) -> Optional[Dict[str, float]]:
    if len(monthly) < 3:
        return None
    mean = sum(monthly) / len(monthly)
    trend = sum(monthly[i] - monthly[i - 1] for i in range(1, len(monthly))) / (len(monthly) - 1)
    confidence = 60.0 if not mean else min(95.0, max(60.0, 100 - abs(trend) / mean * 100))
    return {
        'next_month': round(max(0.0, mean + trend), 2),
        'next_quarter': round(max(0.0, mean + trend * 3), 2),
        'confidence': round(confidence, 1),
    }


class AnalyticsService:

    def get_analytics(self, firm_id: int, analytics_type: str = 'overview', period: str = '30d',
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        if analytics_type not in ANALYTICS_TYPES:
            raise AnalyticsError('Invalid analytics type')
        now = now or datetime.utcnow()
        start = now - timedelta(days=period_days(period))
        handler = getattr(self, f"_{analytics_type}")
        result = handler(firm_id, start, now)
        result['period'] = period if period in PERIOD_DAYS else '30d'
        result['generated_at'] = now.isoformat()
        return result

    def _audit_logs(self, firm_id, start, end):
        return (AuditLog.query
                .filter(AuditLog.firm_id == firm_id, AuditLog.created_at >= start, AuditLog.created_at <= end)
                .order_by(AuditLog.created_at.desc())
                .all())

    def _collected(self, firm_id, start, end) -> float:
        paid = Invoice.query.filter(Invoice.firm_id == firm_id, Invoice.paid_at >= start, Invoice.paid_at < end).all()
        return round(sum(i.amount_paid or 0.0 for i in paid), 2)

    def _overview(self, firm_id, start, now):
        cases = Case.query.filter(Case.firm_id == firm_id, Case.created_at >= start).all()
        documents = Document.query.filter(Document.firm_id == firm_id, Document.created_at >= start).all()
        users = User.query.filter_by(firm_id=firm_id, is_active=True).all()
        active_users = [u for u in users if u.last_login_at and u.last_login_at > now - timedelta(days=30)]
        logs = self._audit_logs(firm_id, start, now)

        closed = sum(1 for c in cases if c.status == 'closed')
        collected = self._collected(firm_id, start, now)
        previous = self._collected(firm_id, start - (now - start), start)
        score = calculate_security_score(logs)
        critical = sum(1 for log in logs if log.risk_level == 'critical')
        return {
            'overview': {
                'total_cases': len(cases),
                'active_cases': sum(1 for c in cases if c.status in ACTIVE_CASE_STATUSES),
                'closed_cases': closed,
                'case_resolution_rate': percent(closed, len(cases)),
                'total_documents': len(documents),
                'total_users': len(users),
                'active_users': len(active_users),
                'user_utilization': percent(len(active_users), len(users)),
            },
            'revenue': {
                'collected': collected,
                'previous_period': previous,
                'growth': growth_rate(collected, previous),
            },
            'security': {
                'security_score': score,
                'critical_events': critical,
                'risk_level': risk_level(score, critical),
            },
            'trends': {
                'case_trend': calculate_trend([c.created_at for c in cases], start, now),
                'document_trend': calculate_trend([d.created_at for d in documents], start, now),
            },
        }

    def _revenue(self, firm_id, start, now):
        invoices = Invoice.query.filter(Invoice.firm_id == firm_id, Invoice.created_at >= start).all()
        billable = [i for i in invoices if i.status not in ('draft', 'cancelled')]
        open_invoices = Invoice.query.filter(Invoice.firm_id == firm_id, Invoice.status.in_(('sent', 'overdue'))).all()

        history = OrderedDict()
        paid = (Invoice.query
                .filter(Invoice.firm_id == firm_id, Invoice.paid_at >= start, Invoice.paid_at <= now)
                .order_by(Invoice.paid_at.asc()).all())
        for invoice in paid:
            month = invoice.paid_at.strftime('%Y-%m')
            history[month] = round(history.get(month, 0.0) + (invoice.amount_paid or 0.0), 2)

        collected = self._collected(firm_id, start, now)
        previous = self._collected(firm_id, start - (now - start), start)
        return {
            'billed': round(sum(i.total_amount or 0.0 for i in billable), 2),
            'collected': collected,
            'outstanding': round(sum(i.balance_due for i in open_invoices), 2),
            'overdue_count': sum(1 for i in open_invoices if i.is_overdue()),
            'invoice_count': len(invoices),
            'growth': growth_rate(collected, previous),
            'revenue_history': [{'month': m, 'collected': v} for m, v in history.items()],
            'forecast': revenue_forecast(list(history.values())),
        }

    def _compliance(self, firm_id, start, now):
        logs = self._audit_logs(firm_id, start, now)
        risks = []
        failures = [log for log in logs if log.result == 'failure' and log.created_at > now - timedelta(hours=24)]
        if len(failures) > 5:
            risks.append({
                'type': 'security',
                'level': 'high',
                'message': f"{len(failures)} failed operations in the last 24 hours",
                'recommendation': 'Review access controls and consider account lockout policies',
            })
        after_hours = [log for log in logs if log.created_at.hour < 6 or log.created_at.hour > 22]
        if logs and len(after_hours) > len(logs) * 0.1:
            risks.append({
                'type': 'data_access',
                'level': 'medium',
                'message': 'Unusual activity detected outside business hours',
                'recommendation': 'Review access logs and implement time-based access controls',
            })

        recommendations = []
        users = User.query.filter_by(firm_id=firm_id, is_active=True).all()
        without_mfa = [u for u in users if not u.mfa_enabled]
        if without_mfa:
            recommendations.append({
                'priority': 'high',
                'category': 'security',
                'title': 'Enable Multi-Factor Authentication',
                'description': f"{len(without_mfa)} active users do not have MFA enabled",
            })
        if not any(log.compliance_relevant for log in logs):
            recommendations.append({
                'priority': 'medium',
                'category': 'compliance',
                'title': 'Schedule Regular Compliance Audits',
                'description': 'No compliance-relevant activity was recorded in this period',
            })

        return {
            'audit_summary': {
                'total_events': len(logs),
                'event_types': dict(Counter(log.event_type for log in logs)),
                'risk_levels': dict(Counter(log.risk_level for log in logs)),
                'time_range': {'start': logs[-1].created_at.isoformat(), 'end': logs[0].created_at.isoformat()}
                if logs else None,
            },
            'compliance_score': calculate_compliance_score(logs),
            'security_score': calculate_security_score(logs),
            'risk_assessment': risks,
            'recommendations': recommendations,
        }

    def _tickets(self, firm_id, start, now):
        stats = ticket_manager.get_ticket_stats(firm_id)
        created = Ticket.query.filter(Ticket.firm_id == firm_id, Ticket.created_at >= start).all()
        resolved = [t for t in created if t.resolved_at]
        hours = [(t.resolved_at - t.created_at).total_seconds() / 3600.0 for t in resolved]
        return {
            'stats': stats,
            'created_in_period': len(created),
            'resolved_in_period': len(resolved),
            'resolution_rate': percent(len(resolved), len(created)),
            'avg_resolution_hours': round(sum(hours) / len(hours), 1) if hours else None,
            'by_category': dict(Counter(t.category.name if t.category else 'Uncategorized' for t in created)),
            'trend': calculate_trend([t.created_at for t in created], start, now),
        }


analytics_service = AnalyticsService()
