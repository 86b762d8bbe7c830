"""
Email/document templates and calendar automations.

Templates use ``{{name}}`` or ``{{a.b}}`` placeholders; unknown placeholders
are left in place so a partially rendered draft is still readable.
Calendar automations are evaluated by the scheduler and queue reminder
emails through the email queue.
"""
import re
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta

from models import db, CalendarAutomation, CalendarEvent, DocumentTemplate, EmailTemplate, Ticket, User
from services.mailer import queue_email
from utils import ACTIVE_TICKET_STATUSES, extract_placeholders, render_placeholders

logger = logging.getLogger(__name__)

EMAIL_TRIGGER_TYPES = ('client_welcome', 'case_status_update', 'deadline_reminder', 'appointment_confirmation',
                       'document_request')
DOCUMENT_CATEGORIES = ('contract', 'letter', 'court_filing', 'form', 'agreement')
AUTOMATION_TYPES = ('court_scheduling', 'meeting_coordination', 'deadline_tracking', 'reminder_system')

AUTOMATION_EVENT_TYPES = {
    'court_scheduling': ('court_date', 'hearing'),
    'deadline_tracking': ('deadline',),
    'meeting_coordination': ('meeting',),
    'reminder_system': None,
}
ROLE_GROUPS = {
    'attorneys': ('partner', 'associate'),
    'paralegals': ('paralegal',),
    'staff': ('staff',),
    'admins': ('admin',),
}
BUSINESS_START = 9
BUSINESS_END = 17

DEFAULT_EMAIL_TEMPLATES = [
    {
        'name': 'Client Welcome Email',
        'trigger_type': 'client_welcome',
        'subject': 'Welcome to {{firm.name}} - Your Case: {{case.title}}',
        'body': 'Dear {{client.name}},\n\nThank you for choosing {{firm.name}}. We have opened your case '
                '"{{case.title}}" and your legal team will contact you shortly.\n\nKind regards,\n{{firm.name}}',
    },
    {
        'name': 'Case Status Update',
        'trigger_type': 'case_status_update',
        'subject': 'Case Update: {{case.title}}',
        'body': 'Dear {{client.name}},\n\nThe status of your case "{{case.title}}" is now {{case.status}}.'
                '\n\nKind regards,\n{{firm.name}}',
    },
    {
        'name': 'Deadline Reminder',
        'trigger_type': 'deadline_reminder',
        'subject': 'Important Deadline Approaching - {{case.title}}',
        'body': 'This is a reminder that {{deadline.title}} is due on {{deadline.date}}.',
    },
    {
        'name': 'Appointment Confirmation',
        'trigger_type': 'appointment_confirmation',
        'subject': 'Appointment Confirmation - {{appointment.date}}',
        'body': 'Dear {{client.name}},\n\nThis confirms your appointment on {{appointment.date}} at '
                '{{appointment.location}}.',
    },
]

DEFAULT_CALENDAR_AUTOMATIONS = [
    {
        'name': 'Court Date Notifications',
        'description': 'Notify all parties 7 days before court hearings',
        'automation_type': 'court_scheduling',
        'trigger': 'court_date_created',
        'schedule_pattern': '7 days before',
        'recipients': ['attorneys', 'clients', 'paralegals'],
        'is_active': True,
    },
    {
        'name': 'Client Meeting Scheduler',
        'description': 'Coordinate client meetings during business hours',
        'automation_type': 'meeting_coordination',
        'trigger': 'meeting_request',
        'schedule_pattern': 'business_hours_only',
        'recipients': ['attorneys', 'clients'],
        'is_active': True,
    },
    {
        'name': 'Filing Deadline Alerts',
        'description': 'Send alerts 3 days before filing deadlines',
        'automation_type': 'deadline_tracking',
        'trigger': 'deadline_approaching',
        'schedule_pattern': '3 days before',
        'recipients': ['attorneys', 'paralegals'],
        'is_active': True,
    },
    {
        'name': 'Daily Appointment Reminders',
        'description': 'Send daily reminder emails for upcoming appointments',
        'automation_type': 'reminder_system',
        'trigger': 'daily_schedule',
        'schedule_pattern': 'daily_at_9am',
        'recipients': ['attorneys', 'staff'],
        'is_active': False,
    },
]


class AutomationError(ValueError):
    pass


# ---- template rendering ----

def extract_variables(*texts: str) -> List[str]:
    names = []
    for text in texts:
        for name in extract_placeholders(text):
            if name not in names:
                names.append(name)
    return names


def render_template(text: str, variables: Dict[str, Any]) -> str:
    return render_placeholders(text, variables or {}, keep_unknown=True)


def render_email_template(template: EmailTemplate, variables: Dict[str, Any]) -> Dict[str, Any]:
    subject = render_template(template.subject, variables)
    body = render_template(template.body, variables)
    return {'subject': subject, 'body': body, 'missing_variables': extract_variables(subject, body)}


def render_document_template(template: DocumentTemplate, variables: Dict[str, Any]) -> Dict[str, Any]:
    context = dict(variables or {})
    context.setdefault('current_date', datetime.utcnow().strftime('%B %d, %Y'))
    content = render_template(template.content, context)
    template.usage_count = (template.usage_count or 0) + 1
    db.session.commit()
    return {'content': content, 'format': template.output_format, 'missing_variables': extract_variables(content)}


# ---- CRUD ----

def get_item(model, firm_id: int, item_id: int):
    row = model.query.filter_by(firm_id=firm_id, id=item_id).first()
    if row is None:
        raise LookupError(f"{model.__name__} not found")
    return row


def _require(data: Dict[str, Any], *fields) -> None:
    missing = [f for f in fields if not (str(data.get(f) or '')).strip()]
    if missing:
        raise AutomationError(f"{', '.join(missing)} required")


def list_email_templates(firm_id: int, trigger_type: Optional[str] = None) -> List[EmailTemplate]:
    query = EmailTemplate.query.filter_by(firm_id=firm_id)
    if trigger_type:
        query = query.filter_by(trigger_type=trigger_type)
    return query.order_by(EmailTemplate.name).all()


def create_email_template(firm_id: int, data: Dict[str, Any]) -> EmailTemplate:
    _require(data, 'name', 'subject', 'body', 'trigger_type')
    if data['trigger_type'] not in EMAIL_TRIGGER_TYPES:
        raise AutomationError(f"Unsupported trigger type: {data['trigger_type']}")
    template = EmailTemplate(
        firm_id=firm_id,
        name=data['name'].strip(),
        subject=data['subject'],
        body=data['body'],
        trigger_type=data['trigger_type'],
        variables=extract_variables(data['subject'], data['body']),
        is_active=bool(data.get('is_active', True)),
    )
    db.session.add(template)
    db.session.commit()
    return template


def update_email_template(firm_id: int, template_id: int, data: Dict[str, Any]) -> EmailTemplate:
    template = get_item(EmailTemplate, firm_id, template_id)
    if 'trigger_type' in data and data['trigger_type'] not in EMAIL_TRIGGER_TYPES:
        raise AutomationError(f"Unsupported trigger type: {data['trigger_type']}")
    for field in ('name', 'subject', 'body', 'trigger_type', 'is_active'):
        if field in data:
            setattr(template, field, data[field])
    template.variables = extract_variables(template.subject, template.body)
    db.session.commit()
    return template


def delete_email_template(firm_id: int, template_id: int) -> None:
    get_item(EmailTemplate, firm_id, template_id).is_active = False
    db.session.commit()


def list_document_templates(firm_id: int, category: Optional[str] = None) -> List[DocumentTemplate]:
    query = DocumentTemplate.query.filter_by(firm_id=firm_id)
    if category:
        query = query.filter_by(category=category)
    return query.order_by(DocumentTemplate.name).all()


def create_document_template(firm_id: int, data: Dict[str, Any]) -> DocumentTemplate:
    _require(data, 'name', 'content')
    category = data.get('category') or 'letter'
    if category not in DOCUMENT_CATEGORIES:
        raise AutomationError(f"Unsupported category: {category}")
    template = DocumentTemplate(
        firm_id=firm_id,
        key=data.get('key'),
        name=data['name'].strip(),
        description=data.get('description'),
        category=category,
        template_type=data.get('template_type') or 'text',
        content=data['content'],
        variables=extract_variables(data['content']),
        output_format=data.get('output_format') or 'text',
        is_active=bool(data.get('is_active', True)),
    )
    db.session.add(template)
    db.session.commit()
    return template


def update_document_template(firm_id: int, template_id: int, data: Dict[str, Any]) -> DocumentTemplate:
    template = get_item(DocumentTemplate, firm_id, template_id)
    if 'category' in data and data['category'] not in DOCUMENT_CATEGORIES:
        raise AutomationError(f"Unsupported category: {data['category']}")
    for field in ('name', 'description', 'category', 'template_type', 'content', 'output_format', 'is_active'):
        if field in data:
            setattr(template, field, data[field])
    template.variables = extract_variables(template.content)
    db.session.commit()
    return template


def delete_document_template(firm_id: int, template_id: int) -> None:
    get_item(DocumentTemplate, firm_id, template_id).is_active = False
    db.session.commit()


def list_calendar_automations(firm_id: int, automation_type: Optional[str] = None) -> List[CalendarAutomation]:
    query = CalendarAutomation.query.filter_by(firm_id=firm_id)
    if automation_type:
        query = query.filter_by(automation_type=automation_type)
    return query.order_by(CalendarAutomation.name).all()


def _check_schedule(pattern: Optional[str]) -> None:
    try:
        parse_schedule(pattern)
    except ValueError as e:
        raise AutomationError(str(e))


def create_calendar_automation(firm_id: int, data: Dict[str, Any], now: Optional[datetime] = None) -> CalendarAutomation:
    _require(data, 'name', 'automation_type', 'schedule_pattern')
    if data['automation_type'] not in AUTOMATION_TYPES:
        raise AutomationError(f"Unsupported automation type: {data['automation_type']}")
    _check_schedule(data['schedule_pattern'])
    automation = CalendarAutomation(
        firm_id=firm_id,
        name=data['name'].strip(),
        description=data.get('description'),
        automation_type=data['automation_type'],
        trigger=data.get('trigger'),
        schedule_pattern=data['schedule_pattern'],
        recipients=list(data.get('recipients') or []),
        is_active=bool(data.get('is_active', True)),
    )
    if automation.is_active:
        automation.next_run_at = next_run_after(automation.schedule_pattern, now or datetime.utcnow())
    db.session.add(automation)
    db.session.commit()
    return automation


def update_calendar_automation(firm_id: int, automation_id: int, data: Dict[str, Any],
                               now: Optional[datetime] = None) -> CalendarAutomation:
    automation = get_item(CalendarAutomation, firm_id, automation_id)
    if 'automation_type' in data and data['automation_type'] not in AUTOMATION_TYPES:
        raise AutomationError(f"Unsupported automation type: {data['automation_type']}")
    if 'schedule_pattern' in data:
        _check_schedule(data['schedule_pattern'])
    for field in ('name', 'description', 'automation_type', 'trigger', 'schedule_pattern', 'is_active'):
        if field in data:
            setattr(automation, field, data[field])
    if 'recipients' in data:
        automation.recipients = list(data['recipients'] or [])
    if 'schedule_pattern' in data or 'is_active' in data:
        automation.next_run_at = next_run_after(automation.schedule_pattern, now or datetime.utcnow()) \
            if automation.is_active else None
    db.session.commit()
    return automation


def delete_calendar_automation(firm_id: int, automation_id: int) -> None:
    automation = get_item(CalendarAutomation, firm_id, automation_id)
    automation.is_active = False
    automation.next_run_at = None
    db.session.commit()


def ensure_defaults(firm_id: int, now: Optional[datetime] = None) -> None:
    """Seed starter email templates and calendar automations; the caller commits."""
    now = now or datetime.utcnow()
    for spec in DEFAULT_EMAIL_TEMPLATES:
        if not EmailTemplate.query.filter_by(firm_id=firm_id, trigger_type=spec['trigger_type']).first():
            db.session.add(EmailTemplate(firm_id=firm_id, variables=extract_variables(spec['subject'], spec['body']),
                                         **spec))
    for spec in DEFAULT_CALENDAR_AUTOMATIONS:
        if not CalendarAutomation.query.filter_by(firm_id=firm_id, name=spec['name']).first():
            automation = CalendarAutomation(firm_id=firm_id, **dict(spec, recipients=list(spec['recipients'])))
            if automation.is_active:
                automation.next_run_at = next_run_after(automation.schedule_pattern, now)
            db.session.add(automation)
    db.session.flush()


# ---- scheduling ----

def parse_schedule(pattern: Optional[str]) -> Dict[str, Any]:
    p = (pattern or '').strip().lower()
    if p in ('hourly', 'daily', 'weekly', 'monthly'):
        return {'kind': p}
    if p == 'business_hours_only':
        return {'kind': 'business_hours'}
    m = re.fullmatch(r'daily_at_(\d{1,2})(am|pm)', p)
    if m:
        hour = int(m.group(1))
        if not 1 <= hour <= 12:
            raise ValueError(f"Unsupported schedule pattern: {pattern}")
        hour = hour % 12 + (12 if m.group(2) == 'pm' else 0)
        return {'kind': 'daily_at', 'hour': hour}
    m = re.fullmatch(r'(\d+)\s+days?\s+before', p)
    if m:
        return {'kind': 'lead', 'days': int(m.group(1))}
    raise ValueError(f"Unsupported schedule pattern: {pattern}")


def is_business_hour(moment: datetime) -> bool:
    return moment.weekday() < 5 and BUSINESS_START <= moment.hour < BUSINESS_END


def next_run_after(pattern: str, now: datetime) -> datetime:
    schedule = parse_schedule(pattern)
    kind = schedule['kind']
    if kind == 'hourly':
        return now + timedelta(hours=1)
    if kind in ('daily', 'lead'):
        return now + relativedelta(days=1)
    if kind == 'weekly':
        return now + relativedelta(weeks=1)
    if kind == 'monthly':
        return now + relativedelta(months=1)
    if kind == 'daily_at':
        candidate = now.replace(hour=schedule['hour'], minute=0, second=0, microsecond=0)
        return candidate if candidate > now else candidate + relativedelta(days=1)
    candidate = (now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
    while not is_business_hour(candidate):
        if candidate.weekday() < 5 and candidate.hour < BUSINESS_START:
            candidate = candidate.replace(hour=BUSINESS_START)
        else:
            candidate = (candidate + timedelta(days=1)).replace(hour=BUSINESS_START)
    return candidate


def _lead_window(pattern: str) -> timedelta:
    schedule = parse_schedule(pattern)
    return timedelta(days=schedule['days']) if schedule['kind'] == 'lead' else timedelta(days=1)


def resolve_recipients(firm_id: int, recipients: List[str], events: List[CalendarEvent]) -> List[str]:
    emails: List[str] = []

    def add(address):
        if address and address not in emails:
            emails.append(address)

    for entry in recipients or []:
        if '@' in entry:
            add(entry)
        elif entry == 'clients':
            for event in events:
                client = event.client or (event.case.client if event.case else None)
                add(client.email if client else None)
        elif entry in ROLE_GROUPS:
            users = User.query.filter(User.firm_id == firm_id, User.is_active.is_(True),
                                      User.role.in_(ROLE_GROUPS[entry])).order_by(User.id).all()
            for user in users:
                add(user.email)
    return emails


def _automation_items(automation: CalendarAutomation, now: datetime):
    window_end = now + _lead_window(automation.schedule_pattern)
    query = CalendarEvent.query.filter(
        CalendarEvent.firm_id == automation.firm_id,
        CalendarEvent.status != 'cancelled',
        CalendarEvent.start_at >= now,
        CalendarEvent.start_at <= window_end,
    )
    event_types = AUTOMATION_EVENT_TYPES.get(automation.automation_type)
    if event_types:
        query = query.filter(CalendarEvent.event_type.in_(event_types))
    if automation.automation_type != 'reminder_system':
        query = query.filter(CalendarEvent.last_notified_at.is_(None))
    events = query.order_by(CalendarEvent.start_at.asc()).all()

    tickets = []
    if automation.automation_type == 'deadline_tracking':
        tickets = (Ticket.query
                   .filter(Ticket.firm_id == automation.firm_id,
                           Ticket.status.in_(ACTIVE_TICKET_STATUSES),
                           Ticket.sla_due_date >= now,
                           Ticket.sla_due_date <= window_end)
                   .order_by(Ticket.sla_due_date.asc()).all())
    return events, tickets


def run_calendar_automation(automation: CalendarAutomation, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Queue one summary email per recipient for the events the automation covers."""
    now = now or datetime.utcnow()
    try:
        events, tickets = _automation_items(automation, now)
        lines = [f"- {e.start_at.strftime('%b %d, %Y %I:%M %p')}: {e.title}"
                 + (f" ({e.location})" if e.location else '') for e in events]
        lines += [f"- {t.sla_due_date.strftime('%b %d, %Y %I:%M %p')}: {t.ticket_number} {t.title}" for t in tickets]
        queued = 0
        if lines:
            recipients = resolve_recipients(automation.firm_id, automation.recipients, events)
            subject = f"{automation.name}: {len(lines)} upcoming item{'s' if len(lines) != 1 else ''}"
            body = f"{automation.description or automation.name}\n\n" + '\n'.join(lines)
            for address in recipients:
                queue_email(automation.firm_id, address, subject, body, source='calendar_automation')
                queued += 1
            for event in events:
                event.last_notified_at = now
        automation.success_count = (automation.success_count or 0) + 1
        automation.last_error = None
        result = {'automation_id': automation.id, 'events': len(events), 'tickets': len(tickets),
                  'emails_queued': queued}
    except Exception as e:
        db.session.rollback()
        automation.error_count = (automation.error_count or 0) + 1
        automation.last_error = str(e)
        logger.error(f"Calendar automation {automation.id} failed: {e}")
        result = {'automation_id': automation.id, 'error': str(e)}
    automation.last_run_at = now
    automation.next_run_at = next_run_after(automation.schedule_pattern, now) if automation.is_active else None
    db.session.commit()
    return result


def run_due_automations(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.utcnow()
    due = (CalendarAutomation.query
           .filter(CalendarAutomation.is_active.is_(True))
           .filter((CalendarAutomation.next_run_at.is_(None)) | (CalendarAutomation.next_run_at <= now))
           .all())
    results = []
    for automation in due:
        if parse_schedule(automation.schedule_pattern)['kind'] == 'business_hours' and not is_business_hour(now):
            continue
        results.append(run_calendar_automation(automation, now))
    return results


def send_event_reminders(now: Optional[datetime] = None, horizon_days: int = 7) -> int:
    """Queue reminder emails for events whose reminder offset has been reached."""
    now = now or datetime.utcnow()
    events = (CalendarEvent.query
              .filter(CalendarEvent.reminder_minutes_before > 0,
                      CalendarEvent.reminder_sent_at.is_(None),
                      CalendarEvent.status != 'cancelled',
                      CalendarEvent.start_at > now,
                      CalendarEvent.start_at <= now + timedelta(days=horizon_days))
              .all())
    sent = 0
    for event in events:
        if event.start_at - timedelta(minutes=event.reminder_minutes_before) > now:
            continue
        addresses = []
        for attendee in event.attendees or []:
            address = attendee.get('email') if isinstance(attendee, dict) else attendee
            if address and address not in addresses:
                addresses.append(address)
        if not addresses and event.created_by is not None:
            addresses.append(event.created_by.email)
        subject = f"Reminder: {event.title}"
        body = f"{event.title} starts at {event.start_at.strftime('%b %d, %Y %I:%M %p')}" \
               + (f" in {event.location}" if event.location else '') + '.'
        for address in addresses:
            queue_email(event.firm_id, address, subject, body, case_id=event.case_id, source='event_reminder')
            sent += 1
        event.reminder_sent_at = now
    db.session.commit()
    return sent
