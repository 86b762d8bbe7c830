"""
Natural-language ticket operations used by the agent and chat platforms.
"""
import re
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from models import db, Ticket, User, CalendarEvent
from services.ticket_manager import (
    ticket_manager, keyword_priority, conversation_text, PRIORITIES, PRIORITY_RANK, TicketError,
)
from utils import truncate, ACTIVE_TICKET_STATUSES

logger = logging.getLogger(__name__)

CREATE_KEYWORDS = ['create ticket', 'new ticket', 'log issue', 'report problem']
UPDATE_KEYWORDS = ['update ticket', 'change status', 'mark as', 'resolve ticket']
ASSIGN_KEYWORDS = ['assign to', 'assign ticket', 'give to']
PRIORITY_KEYWORDS = ['priority', 'urgent', 'critical']

ISSUE_WORDS = ['issue', 'problem', 'help', 'error']
ACTION_WORDS = ['need', 'should', 'request']

CATEGORY_DEPARTMENTS = {
    'Court Filing': ['Fee-Earning'],
    'Document Review': ['Fee-Earning', 'Practice-Support'],
    'Client Communication': ['Fee-Earning', 'Support-Services'],
    'Legal Research': ['Practice-Support', 'Trainee'],
    'Billing': ['Business-Ops'],
}

UNASSIGNED_GRACE = timedelta(hours=4)
STALE_AFTER = timedelta(days=7)
COURT_WINDOW = timedelta(hours=72)
DEADLINE_WINDOW = timedelta(hours=48)
COURT_EVENT_TYPES = ('court_date', 'hearing', 'deadline')


def _raise_priority(priority: str) -> str:
    order = list(reversed(PRIORITIES))  # low .. critical
    idx = order.index(priority) if priority in order else 1
    return order[min(idx + 1, len(order) - 1)]


class TicketAIIntegration:

    def __init__(self, manager=None):
        self.manager = manager or ticket_manager

    # ---- query processing ----

    def process_ticket_query(self, firm_id: int, request: Dict[str, Any], execute: bool = False,
                             user_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            query = (request.get('query') or '').strip()
            lowered = query.lower()
            conversation = request.get('conversation_context') or {}
            ticket_id = request.get('existing_ticket_id')
            actions = []

            if any(k in lowered for k in CREATE_KEYWORDS):
                actions.append(self._create_action(firm_id, query, conversation, request))

            if ticket_id and any(k in lowered for k in UPDATE_KEYWORDS):
                status = None
                if 'resolve' in lowered or 'fixed' in lowered:
                    status = 'resolved'
                elif 'close' in lowered:
                    status = 'closed'
                elif 'in progress' in lowered or 'working' in lowered:
                    status = 'in_progress'
                if status:
                    actions.append({
                        'type': 'update',
                        'ticket_id': ticket_id,
                        'data': {'status': status},
                        'confidence': 0.9,
                        'reasoning': f"Request indicates the ticket should be marked {status}",
                    })

            if ticket_id and any(k in lowered for k in ASSIGN_KEYWORDS):
                actions.append(self._assign_action(firm_id, ticket_id, query))

            if ticket_id and any(k in lowered for k in PRIORITY_KEYWORDS):
                result = self.intelligent_prioritization(firm_id, ticket_id)
                actions.append({
                    'type': 'prioritize',
                    'ticket_id': ticket_id,
                    'data': {'priority': result['suggested_priority']},
                    'confidence': result['confidence'],
                    'reasoning': '; '.join(result['reasoning']),
                })

            results = []
            if execute:
                results = [self._execute(firm_id, action, user_id) for action in actions]

            confidence = round(sum(a['confidence'] for a in actions) / len(actions), 2) if actions else 0.5
            return {
                'actions': actions,
                'results': results,
                'response': self._response_text(actions, results),
                'confidence': confidence,
            }
        except Exception as e:
            db.session.rollback()
            logger.error(f"Ticket query processing failed: {e}")
            return {
                'actions': [],
                'results': [],
                'response': 'I encountered an error processing your ticket request. Please try again.',
                'confidence': 0.3,
            }

    def _create_action(self, firm_id: int, query: str, conversation: Dict[str, Any], request: Dict[str, Any]) -> Dict[str, Any]:
        first_sentence = re.split(r'[.!?]', query)[0].strip()
        title = truncate(first_sentence, 100) if first_sentence else 'New Ticket'
        messages = conversation.get('messages') or []
        description = conversation_text(messages) if messages else query
        analysis = self.manager.analyze_ticket_with_ai(description, {'case_id': request.get('case_id')},
                                                     firm_id=firm_id)
        priority = analysis['suggested_priority']
        return {
            'type': 'create',
            'data': {
                'title': title,
                'description': description,
                'priority': priority,
                'category': analysis['suggested_category'],
                'tags': analysis['suggested_tags'],
                'estimated_hours': analysis['estimated_hours'],
                'assigned_to': analysis['suggested_assignee'],
                'source': 'ai_generated' if messages else 'manual',
                'case_id': request.get('case_id'),
                'client_id': request.get('client_id'),
                'platform': conversation.get('platform'),
            },
            'confidence': analysis['confidence_score'],
            'reasoning': analysis['reasoning'],
            'suggested_response': f"I'll create a {priority} priority ticket for this issue. {analysis['reasoning']}",
        }

    def _assign_action(self, firm_id: int, ticket_id: int, query: str) -> Dict[str, Any]:
        match = re.search(r'(?:assign to|give to)\s+([A-Za-z]+)', query, re.IGNORECASE)
        if match:
            name = match.group(1)
            user = User.query.filter(
                User.firm_id == firm_id,
                User.is_active.is_(True),
                func.lower(User.first_name) == name.lower(),
            ).first()
            if user is not None:
                return {
                    'type': 'assign',
                    'ticket_id': ticket_id,
                    'data': {'assigned_to': user.id, 'assignee_name': user.full_name},
                    'confidence': 0.7,
                    'reasoning': f"Assignment to {user.full_name} requested",
                }
        suggestion = self.suggest_ticket_assignment(firm_id, ticket_id)
        assignee = suggestion['suggested_assignee'] or {}
        return {
            'type': 'assign',
            'ticket_id': ticket_id,
            'data': {'assigned_to': assignee.get('id'), 'assignee_name': assignee.get('name')},
            'confidence': 0.7,
            'reasoning': suggestion['reasoning'],
        }

    def _execute(self, firm_id: int, action: Dict[str, Any], user_id: Optional[int]) -> Dict[str, Any]:
        data = action['data']
        try:
            if action['type'] == 'create':
                category = self.manager.category_by_name(firm_id, data.get('category'))
                ticket = self.manager.create_ticket(firm_id, {
                    'title': data['title'],
                    'description': data['description'],
                    'priority': data['priority'],
                    'source': data['source'],
                    'category_id': category.id if category else None,
                    'case_id': data.get('case_id'),
                    'client_id': data.get('client_id'),
                    'assigned_to': data.get('assigned_to'),
                    'tags': data.get('tags'),
                    'ai_generated_tags': data.get('tags'),
                    'ai_confidence_score': action['confidence'],
                    'estimated_hours': data.get('estimated_hours'),
                    'ai_context': {'reasoning': action['reasoning'], 'platform_source': data.get('platform')},
                }, created_by_id=user_id)
            elif action['type'] in ('update', 'prioritize'):
                ticket = self.manager.update_ticket(firm_id, action['ticket_id'], data, user_id)
            elif action['type'] == 'assign':
                if not data.get('assigned_to'):
                    return {'type': 'assign', 'ok': False, 'error': 'no assignee available'}
                ticket = self.manager.update_ticket(firm_id, action['ticket_id'],
                                                    {'assigned_to': data['assigned_to']}, user_id)
            else:
                return {'type': action['type'], 'ok': False, 'error': 'unsupported action'}
            return {'type': action['type'], 'ok': True, 'ticket_id': ticket.id, 'ticket_number': ticket.ticket_number}
        except (TicketError, LookupError) as e:
            db.session.rollback()
            return {'type': action['type'], 'ok': False, 'error': str(e)}

    def _response_text(self, actions: List[Dict[str, Any]], results: List[Dict[str, Any]]) -> str:
        if not actions:
            return "I don't see any ticket actions needed for your request. Could you provide more details?"
        lines = []
        for action in actions:
            data = action['data']
            if action['type'] == 'create':
                lines.append(f"• Create a {data['priority']} priority ticket: \"{data['title']}\"")
            elif action['type'] == 'update':
                lines.append(f"• Update ticket status to {data['status']}")
            elif action['type'] == 'assign':
                lines.append(f"• Assign ticket to {data.get('assignee_name') or 'the next available team member'}")
            elif action['type'] == 'prioritize':
                lines.append(f"• Set ticket priority to {data['priority']}")
        for result in results:
            if result.get('ok'):
                lines.append(f"• Done: {result['type']} {result['ticket_number']}")
            else:
                lines.append(f"• Could not {result['type']}: {result.get('error')}")
        return ("I'll help you with that ticket request:\n\n" + '\n'.join(lines)
                + "\n\nIs there anything specific you'd like me to adjust?")

    # ---- conversation tickets ----

    def create_ticket_from_conversation(self, firm_id: int, context: Dict[str, Any],
                                        user_id: Optional[int] = None) -> Dict[str, Any]:
        text = conversation_text(context.get('messages') or context.get('conversation') or '')
        lowered = text.lower()
        has_issue = any(w in lowered for w in ISSUE_WORDS)
        has_action = any(w in lowered for w in ACTION_WORDS)
        if not (has_issue and has_action and len(text) > 50):
            return {
                'created': False,
                'ticket': None,
                'reasoning': 'Conversation does not contain an actionable request that requires tracking',
            }
        result = self.manager.create_ticket_from_conversation(
            firm_id,
            text,
            platform_source=context.get('platform'),
            participant_emails=context.get('participants'),
            case_id=context.get('case_id'),
            client_id=context.get('client_id'),
            created_by_id=user_id,
        )
        return {
            'created': True,
            'ticket': result['ticket'],
            'analysis': result['analysis'],
            'reasoning': 'Conversation describes an issue with a requested action; created a ticket to track it',
        }

    # ---- assignment / priority / escalation ----

    def _open_workload(self, firm_id: int) -> Dict[int, int]:
        rows = (
            db.session.query(Ticket.assigned_to_id, func.count(Ticket.id))
            .filter(Ticket.firm_id == firm_id,
                    Ticket.assigned_to_id.isnot(None),
                    Ticket.status.in_(ACTIVE_TICKET_STATUSES))
            .group_by(Ticket.assigned_to_id)
            .all()
        )
        return dict(rows)

    def suggest_ticket_assignment(self, firm_id: int, ticket_id: int) -> Dict[str, Any]:
        ticket = self.manager.get_ticket(firm_id, ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")

        staff = self.manager.active_staff(firm_id)
        if not staff:
            return {
                'ticket_id': ticket.id,
                'suggested_assignee': None,
                'reasoning': 'No active staff available for assignment',
                'confidence': 0.0,
                'alternatives': [],
            }

        workload = self._open_workload(firm_id)
        case_owner = ticket.case.assigned_to_id if ticket.case else None
        departments = CATEGORY_DEPARTMENTS.get(ticket.category.name if ticket.category else '', [])

        def score(user):
            value = workload.get(user.id, 0)
            if user.id == case_owner:
                value -= 3
            if user.department in departments:
                value -= 1
            return value, user.id

        ranked = sorted(staff, key=score)
        best = ranked[0]

        reasons = [f"{best.full_name} has {workload.get(best.id, 0)} open ticket(s)"]
        confidence = 0.6
        if best.id == case_owner:
            reasons.append('is the responsible lawyer on the linked case')
            confidence = 0.9
        elif best.department in departments:
            reasons.append(f"works in {best.department}")
            confidence = 0.75

        def describe(user):
            return {
                'id': user.id,
                'name': user.full_name,
                'email': user.email,
                'department': user.department,
                'open_tickets': workload.get(user.id, 0),
            }

        return {
            'ticket_id': ticket.id,
            'suggested_assignee': describe(best),
            'reasoning': ' and '.join(reasons),
            'confidence': confidence,
            'alternatives': [describe(u) for u in ranked[1:4]],
        }

    def _next_court_event(self, ticket: Ticket, now: datetime, window: timedelta) -> Optional[CalendarEvent]:
        if not ticket.case_id:
            return None
        return (
            CalendarEvent.query
            .filter(CalendarEvent.case_id == ticket.case_id,
                    CalendarEvent.event_type.in_(COURT_EVENT_TYPES),
                    CalendarEvent.status != 'cancelled',
                    CalendarEvent.start_at >= now,
                    CalendarEvent.start_at <= now + window)
            .order_by(CalendarEvent.start_at.asc())
            .first()
        )

    def intelligent_prioritization(self, firm_id: int, ticket_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        ticket = self.manager.get_ticket(firm_id, ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")
        now = now or datetime.utcnow()

        suggested = keyword_priority(f"{ticket.title} {ticket.description or ''}")
        reasoning = [f"Content analysis suggests {suggested} priority"]
        if PRIORITY_RANK.get(ticket.priority, 0) > PRIORITY_RANK[suggested]:
            suggested = ticket.priority
            reasoning.append(f"Keeping current {ticket.priority} priority")
        if ticket.is_sla_breached(now):
            suggested = _raise_priority(suggested)
            reasoning.append('SLA has been breached')
        event = self._next_court_event(ticket, now, DEADLINE_WINDOW)
        if event is not None:
            suggested = _raise_priority(suggested)
            reasoning.append(f"'{event.title}' is due within 48 hours")

        return {
            'ticket_id': ticket.id,
            'current_priority': ticket.priority,
            'suggested_priority': suggested,
            'escalation_recommended': PRIORITY_RANK[suggested] > PRIORITY_RANK.get(ticket.priority, 0),
            'reasoning': reasoning,
            'confidence': 0.8,
        }

    def monitor_ticket_escalation(self, firm_id: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.utcnow()
        tickets = Ticket.query.filter(
            Ticket.firm_id == firm_id, Ticket.status.in_(ACTIVE_TICKET_STATUSES)
        ).all()
        escalations = []
        for ticket in tickets:
            entry = None
            if ticket.is_sla_breached(now):
                entry = ('SLA breached', 'Escalate to supervising partner',
                         'critical' if ticket.priority in ('critical', 'high') else 'high')
            elif self._next_court_event(ticket, now, COURT_WINDOW) is not None:
                entry = ('Court date within 72 hours', 'Confirm preparation is complete', 'high')
            elif (ticket.priority in ('critical', 'high') and ticket.assigned_to_id is None
                  and ticket.created_at and now - ticket.created_at > UNASSIGNED_GRACE):
                entry = ('High priority ticket unassigned for over 4 hours', 'Assign immediately', 'high')
            elif ticket.updated_at and now - ticket.updated_at > STALE_AFTER:
                entry = ('No activity for 7 days', 'Follow up with the assignee', 'medium')
            if entry:
                reason, suggested_action, urgency = entry
                escalations.append({
                    'ticket_id': ticket.id,
                    'ticket_number': ticket.ticket_number,
                    'escalation_reason': reason,
                    'suggested_action': suggested_action,
                    'urgency': urgency,
                })
        rank = {'critical': 0, 'high': 1, 'medium': 2}
        escalations.sort(key=lambda e: (rank[e['urgency']], e['ticket_id']))
        return escalations

    # ---- platform responses ----

    def process_response_for_ticket_update(self, firm_id: int, ticket_id: int, response_text: str,
                                           platform: str = 'chat', author: str = 'unknown',
                                           apply: bool = False, user_id: Optional[int] = None) -> Dict[str, Any]:
        lowered = (response_text or '').lower()
        if any(w in lowered for w in ['resolved', 'fixed', 'completed']):
            action = 'resolve'
            updates = {'status': 'resolved', 'work_notes': f"Resolved via {platform} by {author}"}
        elif any(w in lowered for w in ['urgent', 'escalate', 'manager']):
            action = 'escalate'
            current = self.manager.get_ticket(firm_id, ticket_id)
            keep = current is not None and PRIORITY_RANK.get(current.priority, 0) > PRIORITY_RANK['high']
            updates = {'priority': current.priority if keep else 'high',
                       'work_notes': f"Escalation requested via {platform}"}
        else:
            action = 'comment'
            updates = {}
        comment = f"[{platform}] {author}: {response_text}"

        ticket_number = None
        if apply:
            ticket = self.manager._require_ticket(firm_id, ticket_id)
            if updates:
                notes = "\n".join(filter(None, [ticket.work_notes, updates['work_notes']]))
                ticket = self.manager.update_ticket(firm_id, ticket_id, dict(updates, work_notes=notes), user_id)
            ticket_number = ticket.ticket_number
            self.manager.add_comment(firm_id, ticket_id, comment, user_id=user_id, is_internal=False,
                                     comment_type='ai_update',
                                     meta={'platform': platform, 'author': author, 'action': action})
        return {
            'ticket_id': ticket_id,
            'ticket_number': ticket_number,
            'action': action,
            'updates': updates,
            'comment': comment,
            'reasoning': 'Standard response update' if action == 'comment' else f"Response indicates {action}",
        }


ticket_ai = TicketAIIntegration()
