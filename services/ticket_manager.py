"""
Ticket management for a firm: listing, lifecycle, comments, statistics
and keyword-based ticket analysis.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case as sa_case, func

from models import db, Ticket, TicketCategory, TicketComment, Case, Client, User, record_audit
from utils import apply_ticket_filters, get_sort_params, parse_datetime, total_pages, truncate, ACTIVE_TICKET_STATUSES

logger = logging.getLogger(__name__)

PRIORITIES = ('critical', 'high', 'medium', 'low')
STATUSES = ('open', 'in_progress', 'pending', 'resolved', 'closed', 'cancelled')
SOURCES = ('manual', 'ai_generated', 'email', 'chat', 'phone', 'web_form', 'api')
SLA_HOURS = {'critical': 4, 'high': 24, 'medium': 72, 'low': 168}

DEFAULT_CATEGORIES = [
    {'name': 'Court Filing', 'description': 'Court filings and deadlines', 'color': '#dc2626', 'icon': 'gavel', 'sla_hours': 24},
    {'name': 'Document Review', 'description': 'Contract and document review', 'color': '#2563eb', 'icon': 'file-text', 'sla_hours': 72},
    {'name': 'Client Communication', 'description': 'Client calls, meetings and correspondence', 'color': '#16a34a', 'icon': 'message-circle', 'sla_hours': 24},
    {'name': 'Legal Research', 'description': 'Research and precedent work', 'color': '#9333ea', 'icon': 'book-open', 'sla_hours': 120},
    {'name': 'Billing', 'description': 'Invoices and payments', 'color': '#ca8a04', 'icon': 'credit-card', 'sla_hours': 72},
    {'name': 'General', 'description': 'Everything else', 'color': '#6b7280', 'icon': 'inbox', 'sla_hours': None},
]

CATEGORY_RULES = [
    ('Court Filing', ['court', 'filing', 'deadline']),
    ('Document Review', ['document', 'review', 'contract']),
    ('Client Communication', ['client', 'meeting', 'call']),
    ('Legal Research', ['research', 'precedent', 'law']),
    ('Billing', ['bill', 'invoice', 'payment']),
]

TAG_AREAS = ['employment', 'family', 'criminal', 'property', 'commercial', 'tort']
TAG_TERMS = ['contract', 'agreement', 'motion']

UPDATABLE_FIELDS = (
    'title', 'description', 'short_description', 'priority', 'status', 'source', 'category_id',
    'case_id', 'client_id', 'assigned_to', 'tags', 'custom_fields', 'estimated_hours',
    'actual_hours', 'work_notes', 'close_notes', 'sla_due_date',
)

PRIORITY_RANK = {'critical': 4, 'high': 3, 'medium': 2, 'low': 1}


class TicketError(ValueError):
    pass


def keyword_priority(text: str) -> str:
    t = (text or '').lower()
    if any(k in t for k in ['urgent', 'emergency', 'critical', 'asap', 'immediately', 'deadline']):
        return 'critical'
    if any(k in t for k in ['important', 'priority', 'soon', 'quickly']):
        return 'high'
    return 'medium'


def keyword_category(text: str) -> str:
    t = (text or '').lower()
    for name, words in CATEGORY_RULES:
        if any(w in t for w in words):
            return name
    return 'General'


def keyword_tags(text: str) -> List[str]:
    t = (text or '').lower()
    tags = [area for area in TAG_AREAS if area in t]
    if 'urgent' in t or 'emergency' in t:
        tags.append('urgent')
    tags.extend(term for term in TAG_TERMS if term in t)
    return tags


def estimate_hours(text: str) -> int:
    words = len((text or '').split())
    if words < 50:
        return 1
    if words < 200:
        return 2
    if words < 500:
        return 4
    return 8


def sla_due(priority: str, category: Optional[TicketCategory] = None, start: Optional[datetime] = None) -> datetime:
    hours = category.sla_hours if category is not None and category.sla_hours else SLA_HOURS.get(priority, 72)
    return (start or datetime.utcnow()) + timedelta(hours=hours)


class TicketManager:
    """Firm-scoped ticket operations. Methods add to the session and commit."""

    sort_mapping = {
        'created_at': Ticket.created_at,
        'updated_at': Ticket.updated_at,
        'title': Ticket.title,
        'status': Ticket.status,
        'ticket_number': Ticket.ticket_number,
        'sla_due_date': Ticket.sla_due_date,
        'priority': sa_case(PRIORITY_RANK, value=Ticket.priority, else_=0),
    }

    # ---- queries ----

    def get_tickets(self, firm_id: int, filters: Optional[Dict[str, Any]] = None, sort_field: str = 'created_at',
                    sort_direction: str = 'desc', page: int = 1, limit: int = 25) -> Dict[str, Any]:
        page = max(1, int(page or 1))
        limit = min(100, max(1, int(limit or 25)))
        query = Ticket.query.filter(Ticket.firm_id == firm_id)
        query = apply_ticket_filters(query, filters)
        column, direction = get_sort_params(sort_field, sort_direction, self.sort_mapping)
        query = query.order_by(column.desc() if direction == 'desc' else column.asc(), Ticket.id.desc())
        paginated = query.paginate(page=page, per_page=limit, error_out=False)
        return {
            'tickets': [t.to_dict() for t in paginated.items],
            'total': paginated.total,
            'page': page,
            'limit': limit,
            'total_pages': total_pages(paginated.total, limit),
        }

    def get_ticket(self, firm_id: int, ticket_id: int) -> Optional[Ticket]:
        return Ticket.query.filter_by(firm_id=firm_id, id=ticket_id).first()

    def _require_ticket(self, firm_id: int, ticket_id: int) -> Ticket:
        ticket = self.get_ticket(firm_id, ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")
        return ticket

    # ---- lifecycle ----

    def next_ticket_number(self, firm_id: int, now: Optional[datetime] = None) -> str:
        year = (now or datetime.utcnow()).year
        prefix = f"TKT-{year}-"
        numbers = db.session.query(Ticket.ticket_number).filter(
            Ticket.firm_id == firm_id, Ticket.ticket_number.like(f"{prefix}%")
        ).all()
        seq = 0
        for (number,) in numbers:
            tail = number[len(prefix):]
            if tail.isdigit():
                seq = max(seq, int(tail))
        return f"{prefix}{seq + 1:05d}"

    def _validate(self, data: Dict[str, Any]) -> None:
        if 'priority' in data and data['priority'] not in PRIORITIES:
            raise TicketError(f"Invalid priority: {data['priority']}")
        if 'status' in data and data['status'] not in STATUSES:
            raise TicketError(f"Invalid status: {data['status']}")
        if 'source' in data and data['source'] not in SOURCES:
            raise TicketError(f"Invalid source: {data['source']}")

    def _firm_category(self, firm_id: int, category_id) -> Optional[TicketCategory]:
        if not category_id:
            return None
        category = TicketCategory.query.filter_by(firm_id=firm_id, id=int(category_id)).first()
        if category is None:
            raise TicketError(f"Unknown category: {category_id}")
        return category

    def _firm_ref(self, model, firm_id: int, ref_id, label: str) -> Optional[int]:
        if not ref_id:
            return None
        if model.query.filter_by(firm_id=firm_id, id=int(ref_id)).first() is None:
            raise TicketError(f"Unknown {label}: {ref_id}")
        return int(ref_id)

    def create_ticket(self, firm_id: int, data: Dict[str, Any], created_by_id: Optional[int] = None) -> Ticket:
        title = (data.get('title') or '').strip()
        if not title:
            raise TicketError('title required')
        priority = data.get('priority') or 'medium'
        source = data.get('source') or 'manual'
        self._validate({'priority': priority, 'source': source})
        category = self._firm_category(firm_id, data.get('category_id'))

        now = datetime.utcnow()
        ticket = Ticket(
            firm_id=firm_id,
            ticket_number=self.next_ticket_number(firm_id, now),
            title=truncate(title, 200),
            description=data.get('description'),
            short_description=(data.get('short_description') or title)[:160],
            priority=priority,
            status='open',
            source=source,
            category_id=category.id if category else None,
            case_id=self._firm_ref(Case, firm_id, data.get('case_id'), 'case'),
            client_id=self._firm_ref(Client, firm_id, data.get('client_id'), 'client'),
            assigned_to_id=self._firm_ref(User, firm_id, data.get('assigned_to'), 'user'),
            created_by_id=created_by_id,
            ai_confidence_score=data.get('ai_confidence_score'),
            ai_generated_tags=list(data.get('ai_generated_tags') or []),
            ai_context=dict(data.get('ai_context') or {}),
            sla_due_date=sla_due(priority, category, now),
            tags=list(data.get('tags') or []),
            custom_fields=dict(data.get('custom_fields') or {}),
            estimated_hours=data.get('estimated_hours'),
            created_at=now,
        )
        db.session.add(ticket)
        db.session.flush()
        record_audit(firm_id, 'ticket_created', f"Ticket {ticket.ticket_number} created", user_id=created_by_id,
                     entity_type='ticket', entity_id=ticket.id)
        db.session.commit()
        logger.info(f"Created ticket {ticket.ticket_number} for firm {firm_id}")
        return ticket

    def _apply_status(self, ticket: Ticket, new_status: str, now: datetime) -> bool:
        old_status = ticket.status
        if new_status == old_status:
            return False
        ticket.status = new_status
        if new_status == 'resolved':
            ticket.resolved_at = now
            ticket.closed_at = None
        elif new_status == 'closed':
            ticket.closed_at = now
            if ticket.resolved_at is None:
                ticket.resolved_at = now
        elif new_status in ACTIVE_TICKET_STATUSES:
            ticket.resolved_at = None
            ticket.closed_at = None
        if old_status == 'open' and ticket.first_response_at is None:
            ticket.first_response_at = now
        return True

    def _apply_updates(self, ticket: Ticket, updates: Dict[str, Any], user_id: Optional[int], now: datetime) -> None:
        self._validate(updates)
        unknown = [k for k in updates if k not in UPDATABLE_FIELDS and k != 'id']
        if unknown:
            raise TicketError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        old_status = ticket.status
        category = ticket.category
        category_changed = 'category_id' in updates and updates['category_id'] != ticket.category_id
        if category_changed:
            category = self._firm_category(ticket.firm_id, updates['category_id'])
            ticket.category = category

        for field in ('title', 'description', 'short_description', 'source',
                      'estimated_hours', 'actual_hours', 'work_notes', 'close_notes'):
            if field in updates:
                setattr(ticket, field, updates[field])
        if 'title' in updates and not (ticket.title or '').strip():
            raise TicketError('title required')
        if 'case_id' in updates:
            ticket.case_id = self._firm_ref(Case, ticket.firm_id, updates['case_id'], 'case')
        if 'client_id' in updates:
            ticket.client_id = self._firm_ref(Client, ticket.firm_id, updates['client_id'], 'client')
        if 'assigned_to' in updates:
            ticket.assigned_to_id = self._firm_ref(User, ticket.firm_id, updates['assigned_to'], 'user')
        if 'tags' in updates:
            ticket.tags = list(updates['tags'] or [])
        if 'custom_fields' in updates:
            ticket.custom_fields = dict(updates['custom_fields'] or {})

        if 'priority' in updates and updates['priority'] != ticket.priority:
            ticket.priority = updates['priority']
            category_changed = True
        if category_changed and 'sla_due_date' not in updates:
            ticket.sla_due_date = sla_due(ticket.priority, category, ticket.created_at or now)
        if 'sla_due_date' in updates:
            ticket.sla_due_date = parse_datetime(updates['sla_due_date'])

        if 'status' in updates and self._apply_status(ticket, updates['status'], now):
            db.session.add(TicketComment(
                ticket_id=ticket.id,
                user_id=user_id,
                content=f"Status changed from {old_status} to {ticket.status}",
                is_internal=True,
                comment_type='status_change',
                meta={'from': old_status, 'to': ticket.status},
            ))
            record_audit(ticket.firm_id, 'ticket_status_change',
                         f"Ticket {ticket.ticket_number}: {old_status} -> {ticket.status}",
                         user_id=user_id, entity_type='ticket', entity_id=ticket.id,
                         details={'from': old_status, 'to': ticket.status})
        ticket.updated_at = now

    def update_ticket(self, firm_id: int, ticket_id: int, updates: Dict[str, Any],
                      user_id: Optional[int] = None) -> Ticket:
        ticket = self._require_ticket(firm_id, ticket_id)
        self._apply_updates(ticket, updates, user_id, datetime.utcnow())
        db.session.commit()
        return ticket

    def bulk_update_tickets(self, firm_id: int, ticket_ids: List[int], updates: Dict[str, Any],
                            user_id: Optional[int] = None) -> List[Ticket]:
        if not ticket_ids:
            raise TicketError('ticket_ids required')
        tickets = Ticket.query.filter(Ticket.firm_id == firm_id, Ticket.id.in_(ticket_ids)).all()
        now = datetime.utcnow()
        try:
            for ticket in tickets:
                self._apply_updates(ticket, updates, user_id, now)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return tickets

    def add_comment(self, firm_id: int, ticket_id: int, content: str, user_id: Optional[int] = None,
                    is_internal: bool = False, comment_type: str = 'comment',
                    meta: Optional[Dict[str, Any]] = None) -> TicketComment:
        ticket = self._require_ticket(firm_id, ticket_id)
        if not (content or '').strip():
            raise TicketError('content required')
        if comment_type not in ('comment', 'status_change', 'work_note', 'ai_update'):
            raise TicketError(f"Invalid comment type: {comment_type}")
        comment = TicketComment(ticket_id=ticket.id, user_id=user_id, content=content.strip(),
                                is_internal=bool(is_internal), comment_type=comment_type, meta=meta or {})
        db.session.add(comment)
        if (not is_internal and ticket.first_response_at is None
                and (user_id is None or user_id != ticket.created_by_id)):
            ticket.first_response_at = datetime.utcnow()
        ticket.updated_at = datetime.utcnow()
        db.session.commit()
        return comment

    # ---- analysis ----

    def analyze_ticket_with_ai(self, content: str, context: Optional[Dict[str, Any]] = None,
                               firm_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            text = content or ''
            priority = keyword_priority(text)
            category = keyword_category(text)
            tags = keyword_tags(text)
            hours = estimate_hours(text)

            reasoning = (
                f"Based on analysis of the content, I suggest {priority} priority and the "
                f"'{category}' category."
            )
            if tags:
                reasoning += f" Identified tags: {', '.join(tags)}."
            reasoning += f" Estimated effort: {hours} hour{'s' if hours != 1 else ''}."

            suggested_assignee = None
            case_id = (context or {}).get('case_id')
            if case_id and firm_id is not None:
                case = Case.query.filter_by(firm_id=firm_id, id=int(case_id)).first()
                if case is not None and case.assigned_to_id:
                    suggested_assignee = case.assigned_to_id
                    reasoning += " Suggested assignee is the case's responsible lawyer."

            return {
                'suggested_priority': priority,
                'suggested_category': category,
                'suggested_tags': tags,
                'suggested_assignee': suggested_assignee,
                'estimated_hours': hours,
                'confidence_score': 0.85,
                'reasoning': reasoning,
            }
        except Exception as e:
            logger.error(f"Ticket analysis failed: {e}")
            return {
                'suggested_priority': 'medium',
                'suggested_category': 'General',
                'suggested_tags': [],
                'suggested_assignee': None,
                'estimated_hours': 1,
                'confidence_score': 0.5,
                'reasoning': 'Basic analysis due to AI service unavailability',
            }

    def category_by_name(self, firm_id: int, name: str) -> Optional[TicketCategory]:
        if not name:
            return None
        return TicketCategory.query.filter(
            TicketCategory.firm_id == firm_id,
            func.lower(TicketCategory.name) == name.lower(),
        ).first()

    def create_ticket_from_conversation(self, firm_id: int, conversation, platform_source: Optional[str] = None,
                                        participant_emails: Optional[List[str]] = None,
                                        case_id: Optional[int] = None, client_id: Optional[int] = None,
                                        created_by_id: Optional[int] = None) -> Dict[str, Any]:
        text = conversation_text(conversation)
        if not text.strip():
            raise TicketError('conversation required')

        analysis = self.analyze_ticket_with_ai(text, {'case_id': case_id}, firm_id=firm_id)
        first_line = next((line.strip() for line in text.splitlines() if line.strip()), 'New Ticket')
        category = self.category_by_name(firm_id, analysis['suggested_category'])

        ticket = self.create_ticket(firm_id, {
            'title': truncate(first_line, 100),
            'description': truncate(text, 2000),
            'priority': analysis['suggested_priority'],
            'source': 'ai_generated',
            'category_id': category.id if category else None,
            'case_id': case_id,
            'client_id': client_id,
            'assigned_to': analysis['suggested_assignee'],
            'ai_confidence_score': analysis['confidence_score'],
            'ai_generated_tags': analysis['suggested_tags'],
            'tags': analysis['suggested_tags'],
            'estimated_hours': analysis['estimated_hours'],
            'ai_context': {
                'analysis': analysis,
                'platform_source': platform_source,
                'participant_emails': participant_emails or [],
            },
        }, created_by_id=created_by_id)
        return {'ticket': ticket, 'analysis': analysis}

    # ---- statistics ----

    def get_ticket_stats(self, firm_id: int) -> Dict[str, Any]:
        base = Ticket.query.filter(Ticket.firm_id == firm_id)
        by_status = dict(
            db.session.query(Ticket.status, func.count(Ticket.id))
            .filter(Ticket.firm_id == firm_id).group_by(Ticket.status).all()
        )
        by_priority = dict(
            db.session.query(Ticket.priority, func.count(Ticket.id))
            .filter(Ticket.firm_id == firm_id).group_by(Ticket.priority).all()
        )
        now = datetime.utcnow()
        sla_breached = base.filter(
            Ticket.sla_due_date.isnot(None),
            Ticket.sla_due_date < now,
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        ).count()
        unassigned = base.filter(
            Ticket.assigned_to_id.is_(None),
            Ticket.status.in_(ACTIVE_TICKET_STATUSES),
        ).count()

        resolved = base.filter(Ticket.resolved_at.isnot(None)).with_entities(
            Ticket.created_at, Ticket.resolved_at).all()
        durations = [(r - c).total_seconds() / 3600.0 for c, r in resolved if c and r]
        avg_resolution = round(sum(durations) / len(durations), 1) if durations else 0.0

        return {
            'total': base.count(),
            'by_status': {s: by_status.get(s, 0) for s in STATUSES},
            'by_priority': {p: by_priority.get(p, 0) for p in PRIORITIES},
            'sla_breached': sla_breached,
            'avg_resolution_time': avg_resolution,
            'unassigned': unassigned,
        }

    # ---- categories ----

    def list_categories(self, firm_id: int, include_inactive: bool = False) -> List[TicketCategory]:
        query = TicketCategory.query.filter(TicketCategory.firm_id == firm_id)
        if not include_inactive:
            query = query.filter(TicketCategory.is_active.is_(True))
        return query.order_by(TicketCategory.name.asc()).all()

    def create_category(self, firm_id: int, data: Dict[str, Any]) -> TicketCategory:
        name = (data.get('name') or '').strip()
        if not name:
            raise TicketError('name required')
        if self.category_by_name(firm_id, name):
            raise TicketError(f"Category already exists: {name}")
        sla_hours = data.get('sla_hours')
        if sla_hours is not None and (not str(sla_hours).isdigit() or int(sla_hours) <= 0):
            raise TicketError('sla_hours must be a positive integer')
        category = TicketCategory(
            firm_id=firm_id,
            name=name,
            description=data.get('description'),
            color=data.get('color') or '#6b7280',
            icon=data.get('icon'),
            sla_hours=int(sla_hours) if sla_hours is not None else None,
        )
        db.session.add(category)
        db.session.commit()
        return category

    def ensure_default_categories(self, firm_id: int) -> int:
        """Create any missing default categories; returns how many were added (no commit)."""
        added = 0
        for spec in DEFAULT_CATEGORIES:
            if self.category_by_name(firm_id, spec['name']) is None:
                db.session.add(TicketCategory(firm_id=firm_id, **spec))
                added += 1
        db.session.flush()
        return added

    def active_staff(self, firm_id: int) -> List[User]:
        return User.query.filter(
            User.firm_id == firm_id,
            User.is_active.is_(True),
            User.role != 'client',
        ).all()


def conversation_text(conversation) -> str:
    """Flatten a conversation (string or list of messages) into plain text."""
    if conversation is None:
        return ''
    if isinstance(conversation, str):
        return conversation
    lines = []
    for message in conversation:
        if isinstance(message, dict):
            content = message.get('content') or message.get('text') or ''
            author = message.get('author') or message.get('role')
            lines.append(f"{author}: {content}" if author and lines else content)
        else:
            lines.append(str(message))
    return '\n'.join(line for line in lines if line)


ticket_manager = TicketManager()
