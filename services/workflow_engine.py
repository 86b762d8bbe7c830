"""
Workflow engine: firm-defined rules that react to case, document, payment
and custom events by running a sequence of actions.

Rules are stored in ``WorkflowRule``; every run is stored in
``WorkflowExecution`` with a step log. Actions run in order and the first
failure stops the execution.
"""
import os
import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from models import (db, Case, CalendarEvent, Document, DocumentTemplate, EmailTemplate, WorkflowExecution,
                    WorkflowRule, Ticket, record_audit)
from services.mailer import queue_email
from services.ticket_manager import ticket_manager
from utils import parse_datetime, render_placeholders, extract_placeholders

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 30))

TRIGGER_TYPES = ('case_created', 'case_updated', 'task_completed', 'document_uploaded',
                 'deadline_approaching', 'payment_received', 'custom_event')
OPERATORS = ('equals', 'not_equals', 'contains', 'greater_than', 'less_than', 'in', 'not_in',
             'exists', 'not_exists')
ACTION_TYPES = ('send_email', 'create_task', 'update_case', 'generate_document', 'create_calendar_event',
                'send_notification', 'run_script', 'webhook')
CASE_UPDATE_FIELDS = ('status', 'priority', 'case_type', 'description', 'assigned_to_id', 'court', 'jurisdiction')

DEFAULT_RULES = [
    {
        'key': 'new_case_welcome',
        'name': 'New Case Welcome Email',
        'description': 'Send welcome email when a new case is created',
        'trigger_type': 'case_created',
        'trigger_event': 'case.created',
        'conditions': [],
        'actions': [{
            'type': 'send_email',
            'config': {
                'to': '{{client.email}}',
                'subject': 'Welcome - Your Case Has Been Created',
                'template': 'client_welcome',
                'body': 'Dear {{client.name}},\n\nYour case "{{case.title}}" has been opened with our firm. '
                        'We will be in touch shortly with next steps.',
            },
        }],
        'priority': 100,
    },
]

ENGAGEMENT_LETTER = """ENGAGEMENT LETTER

Date: {{current_date}}

{{client.name}}
{{client.address}}

Dear {{client.name}},

This letter confirms our agreement regarding legal representation in the matter of {{case.title}}.

Sincerely,
{{attorney.name}}"""

DEFAULT_TEMPLATES = [
    {
        'key': 'engagement_letter',
        'name': 'Engagement Letter',
        'description': 'Standard client engagement letter',
        'category': 'contract',
        'content': ENGAGEMENT_LETTER,
        'output_format': 'pdf',
    },
]

SCRIPTS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Any]] = {}


class WorkflowError(Exception):
    pass


def register_script(name: str):
    """Register a callable that `run_script` actions may invoke by name."""
    def decorator(fn):
        SCRIPTS[name] = fn
        return fn
    return decorator


@register_script('count_case_tickets')
def count_case_tickets(data, config):
    case_id = (data.get('case') or {}).get('id') or config.get('case_id')
    if not case_id:
        return {'open_tickets': 0}
    count = Ticket.query.filter(Ticket.case_id == case_id,
                                Ticket.status.in_(('open', 'in_progress', 'pending'))).count()
    return {'case_id': case_id, 'open_tickets': count}


def get_nested_value(data: Any, path: str) -> Any:
    current = data
    for part in (path or '').split('.'):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: Dict[str, Any], data: Dict[str, Any]) -> bool:
    value = get_nested_value(data, condition.get('field'))
    operator = condition.get('operator')
    expected = condition.get('value')
    if operator == 'equals':
        return value == expected
    if operator == 'not_equals':
        return value != expected
    if operator == 'contains':
        return value is not None and str(expected) in str(value)
    if operator in ('greater_than', 'less_than'):
        left, right = _number(value), _number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == 'greater_than' else left < right
    if operator == 'in':
        return isinstance(expected, list) and value in expected
    if operator == 'not_in':
        return isinstance(expected, list) and value not in expected
    if operator == 'exists':
        return value is not None
    if operator == 'not_exists':
        return value is None
    return False


def evaluate_conditions(conditions: List[Dict[str, Any]], data: Dict[str, Any]) -> bool:
    """Fold conditions left to right; each condition's ``logical`` joins it to the next one."""
    result = True
    joiner = 'AND'
    for condition in conditions or []:
        outcome = evaluate_condition(condition, data)
        result = (result and outcome) if joiner == 'AND' else (result or outcome)
        joiner = (condition.get('logical') or 'AND').upper()
    return result


def render_value(value: Any, data: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_placeholders(value, data)
    if isinstance(value, dict):
        return {k: render_value(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, data) for v in value]
    return value


class WorkflowEngine:

    def __init__(self, scripts: Optional[Dict[str, Callable]] = None):
        self.scripts = SCRIPTS if scripts is None else scripts

    # ---- rules ----

    def ensure_defaults(self, firm_id: int) -> None:
        """Seed the built-in rules and templates for a firm; the caller commits."""
        for spec in DEFAULT_RULES:
            if not WorkflowRule.query.filter_by(firm_id=firm_id, key=spec['key']).first():
                db.session.add(WorkflowRule(firm_id=firm_id, **copy.deepcopy(spec)))
        for spec in DEFAULT_TEMPLATES:
            if not DocumentTemplate.query.filter_by(firm_id=firm_id, key=spec['key']).first():
                db.session.add(DocumentTemplate(firm_id=firm_id, variables=extract_placeholders(spec['content']),
                                                **spec))
        db.session.flush()

    def validate_rule(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not (data.get('name') or '').strip():
            errors.append('name required')
        if data.get('trigger_type') not in TRIGGER_TYPES:
            errors.append('valid trigger_type required')
        actions = data.get('actions')
        if not isinstance(actions, list) or not actions:
            errors.append('at least one action required')
        else:
            for action in actions:
                if not isinstance(action, dict) or action.get('type') not in ACTION_TYPES:
                    errors.append(f"unknown action type: {action.get('type') if isinstance(action, dict) else action}")
                    break
        for condition in data.get('conditions') or []:
            if condition.get('operator') not in OPERATORS or not condition.get('field'):
                errors.append('conditions need a field and a known operator')
                break
        return errors

    def create_rule(self, firm_id: int, data: Dict[str, Any], user_id: Optional[int] = None) -> WorkflowRule:
        errors = self.validate_rule(data)
        if errors:
            raise WorkflowError('; '.join(errors))
        rule = WorkflowRule(
            firm_id=firm_id,
            key=data.get('key'),
            name=data['name'].strip(),
            description=data.get('description'),
            trigger_type=data['trigger_type'],
            trigger_event=data.get('trigger_event'),
            conditions=list(data.get('conditions') or []),
            actions=list(data['actions']),
            enabled=bool(data.get('enabled', True)),
            priority=int(data.get('priority') or 0),
        )
        db.session.add(rule)
        db.session.flush()
        record_audit(firm_id, 'workflow_rule_created', rule.name, user_id=user_id,
                     entity_type='workflow_rule', entity_id=rule.id)
        db.session.commit()
        return rule

    def get_rule(self, firm_id: int, rule_id: int) -> WorkflowRule:
        rule = WorkflowRule.query.filter_by(firm_id=firm_id, id=rule_id).first()
        if rule is None:
            raise LookupError('Workflow rule not found')
        return rule

    def update_rule(self, firm_id: int, rule_id: int, data: Dict[str, Any]) -> WorkflowRule:
        rule = self.get_rule(firm_id, rule_id)
        merged = rule.to_dict()
        merged['trigger_type'] = data.get('trigger_type', rule.trigger_type)
        merged.update({k: v for k, v in data.items() if k != 'trigger_type'})
        errors = self.validate_rule(merged)
        if errors:
            raise WorkflowError('; '.join(errors))
        for field in ('name', 'description', 'trigger_type', 'trigger_event', 'enabled', 'priority'):
            if field in data:
                setattr(rule, field, data[field])
        if 'conditions' in data:
            rule.conditions = list(data['conditions'] or [])
        if 'actions' in data:
            rule.actions = list(data['actions'])
        db.session.commit()
        return rule

    def delete_rule(self, firm_id: int, rule_id: int) -> None:
        rule = self.get_rule(firm_id, rule_id)
        WorkflowExecution.query.filter_by(rule_id=rule.id).update({'rule_id': None})
        db.session.delete(rule)
        db.session.commit()

    def get_rules(self, firm_id: int) -> List[WorkflowRule]:
        return (WorkflowRule.query.filter_by(firm_id=firm_id)
                .order_by(WorkflowRule.priority.desc(), WorkflowRule.id.asc()).all())

    def get_executions(self, firm_id: int, rule_id: Optional[int] = None, limit: int = 50) -> List[WorkflowExecution]:
        query = WorkflowExecution.query.filter_by(firm_id=firm_id)
        if rule_id:
            query = query.filter_by(rule_id=rule_id)
        return query.order_by(WorkflowExecution.started_at.desc(), WorkflowExecution.id.desc()).limit(limit).all()

    def get_templates(self, firm_id: int) -> List[DocumentTemplate]:
        return DocumentTemplate.query.filter_by(firm_id=firm_id, is_active=True).order_by(DocumentTemplate.name).all()

    # ---- execution ----

    def trigger_workflows(self, firm_id: int, event_type: str, event_data: Dict[str, Any]) -> List[WorkflowExecution]:
        if event_type not in TRIGGER_TYPES:
            raise WorkflowError(f"Unknown trigger type: {event_type}")
        rules = (WorkflowRule.query
                 .filter_by(firm_id=firm_id, trigger_type=event_type, enabled=True)
                 .order_by(WorkflowRule.priority.desc(), WorkflowRule.id.asc())
                 .all())
        executions = []
        for rule in rules:
            try:
                if evaluate_conditions(rule.conditions, event_data):
                    executions.append(self.execute_workflow(rule, event_data))
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error executing workflow {rule.name}: {e}")
        return executions

    def test_workflow(self, rule: WorkflowRule, sample_data: Dict[str, Any]) -> Dict[str, Any]:
        """Dry run: evaluate conditions and render action configs without side effects."""
        matched = evaluate_conditions(rule.conditions, sample_data)
        return {
            'rule_id': rule.id,
            'conditions_met': matched,
            'actions': [
                {'type': a.get('type'), 'config': render_value(a.get('config') or {}, self._context(sample_data)),
                 'delay': a.get('delay', 0)}
                for a in (rule.actions or [])
            ] if matched else [],
        }

    def execute_workflow(self, rule: WorkflowRule, trigger_data: Dict[str, Any]) -> WorkflowExecution:
        execution = WorkflowExecution(firm_id=rule.firm_id, rule_id=rule.id, status='running',
                                      trigger_data=trigger_data, started_at=datetime.utcnow())
        db.session.add(execution)
        db.session.flush()

        log = []
        context = self._context(trigger_data)
        for index, action in enumerate(rule.actions or [], start=1):
            step = {'step': f"action_{index}", 'action': action.get('type'), 'status': 'running',
                    'timestamp': datetime.utcnow().isoformat()}
            log.append(step)
            try:
                step['result'] = self.execute_action(rule.firm_id, action, context)
                step['status'] = 'completed'
            except Exception as e:
                step['status'] = 'failed'
                step['error'] = str(e)
                execution.status = 'failed'
                execution.error_message = str(e)
                logger.error(f"Action failed: {action.get('type')} in rule {rule.name}: {e}")
                break

        if execution.status == 'running':
            execution.status = 'completed'
        execution.execution_log = log
        execution.completed_at = datetime.utcnow()
        db.session.commit()
        return execution

    @staticmethod
    def _context(data: Dict[str, Any]) -> Dict[str, Any]:
        context = dict(data or {})
        context.setdefault('current_date', datetime.utcnow().strftime('%B %d, %Y'))
        return context

    def execute_action(self, firm_id: int, action: Dict[str, Any], data: Dict[str, Any]) -> Any:
        action_type = action.get('type')
        config = render_value(action.get('config') or {}, data)
        handlers = {
            'send_email': lambda: self._send_email(firm_id, config, data, action.get('delay') or 0),
            'create_task': lambda: self._create_task(firm_id, config, data),
            'update_case': lambda: self._update_case(firm_id, config, data),
            'generate_document': lambda: self.generate_document(firm_id, config, data),
            'create_calendar_event': lambda: self._create_calendar_event(firm_id, config, data),
            'send_notification': lambda: self._send_notification(config),
            'run_script': lambda: self._run_script(config, data),
            'webhook': lambda: self._call_webhook(config, data),
        }
        if action_type not in handlers:
            raise WorkflowError(f"Unknown action type: {action_type}")
        return handlers[action_type]()

    # ---- actions ----

    def _send_email(self, firm_id, config, data, delay_seconds):
        to = (config.get('to') or '').strip()
        if not to or '{{' in to:
            raise WorkflowError('send_email has no recipient')
        subject = config.get('subject') or 'Notification'
        body = config.get('body') or subject
        if config.get('template'):
            template = EmailTemplate.query.filter_by(firm_id=firm_id, trigger_type=config['template'],
                                                     is_active=True).first()
            if template:
                subject = render_placeholders(template.subject, data)
                body = render_placeholders(template.body, data)
        case_id = (data.get('case') or {}).get('id')
        item = queue_email(firm_id, to, subject, body, delay_minutes=float(delay_seconds) / 60.0,
                           case_id=case_id, source='workflow')
        db.session.flush()
        return {'queued': True, 'email_id': item.id, 'send_after': item.send_after.isoformat()}

    def _create_task(self, firm_id, config, data):
        case = data.get('case') or {}
        ticket = ticket_manager.create_ticket(firm_id, {
            'title': config.get('title') or 'Workflow task',
            'description': config.get('description'),
            'priority': config.get('priority') or 'medium',
            'source': 'api',
            'case_id': config.get('case_id') or case.get('id'),
            'client_id': (data.get('client') or {}).get('id'),
            'assigned_to': config.get('assigned_to'),
            'tags': ['workflow'],
        })
        return {'ticket_id': ticket.id, 'ticket_number': ticket.ticket_number}

    def _update_case(self, firm_id, config, data):
        case_id = config.get('case_id') or (data.get('case') or {}).get('id')
        case = Case.query.filter_by(firm_id=firm_id, id=case_id).first() if case_id else None
        if case is None:
            raise WorkflowError('update_case target not found')
        updates = {k: v for k, v in (config.get('updates') or {}).items() if k in CASE_UPDATE_FIELDS}
        if not updates:
            raise WorkflowError('update_case has no supported fields')
        for field, value in updates.items():
            setattr(case, field, value)
        if updates.get('status') == 'closed' and not case.closed_at:
            case.closed_at = datetime.utcnow()
        db.session.flush()
        return {'updated': True, 'case_id': case.id, 'fields': sorted(updates)}

    def generate_document(self, firm_id, config, data):
        key = config.get('template_key') or config.get('template_id')
        query = DocumentTemplate.query.filter_by(firm_id=firm_id, is_active=True)
        template = query.filter_by(key=str(key)).first()
        if template is None and str(key).isdigit():
            template = query.filter_by(id=int(key)).first()
        if template is None:
            raise WorkflowError(f"Template not found: {key}")

        context = self._context(data)
        content = render_placeholders(template.content, context)
        name = config.get('document_name') or f"{template.name} - {datetime.utcnow().strftime('%m/%d/%Y')}"
        document = Document(
            firm_id=firm_id,
            case_id=(context.get('case') or {}).get('id'),
            name=name,
            file_type=template.output_format,
            content=content,
            description=f"Generated from template {template.name}",
            tags=['generated'],
        )
        template.usage_count = (template.usage_count or 0) + 1
        db.session.add(document)
        db.session.flush()
        logger.info(f"Document generated: {name}")
        return {'document_id': document.id, 'template_id': template.id, 'name': name, 'content': content,
                'format': template.output_format, 'generated_at': datetime.utcnow().isoformat()}

    def _create_calendar_event(self, firm_id, config, data):
        title = config.get('title')
        if not title:
            raise WorkflowError('create_calendar_event requires a title')
        start = parse_datetime(config.get('start_time'))
        if start is None:
            start = datetime.utcnow() + timedelta(days=int(config.get('days_from_now') or 1))
        event = CalendarEvent(
            firm_id=firm_id,
            title=title,
            description=config.get('description'),
            start_at=start,
            end_at=start + timedelta(minutes=int(config.get('duration_minutes') or 60)),
            location=config.get('location'),
            event_type=config.get('event_type') or 'reminder',
            case_id=(data.get('case') or {}).get('id'),
        )
        db.session.add(event)
        db.session.flush()
        return {'event_id': event.id, 'title': title, 'start_at': start.isoformat()}

    def _send_notification(self, config):
        logger.info(f"Workflow notification ({config.get('type', 'info')}): {config.get('message', '')}")
        return {'sent': True, 'channel': config.get('type', 'info')}

    def _run_script(self, config, data):
        name = config.get('script_name')
        script = self.scripts.get(name)
        if script is None:
            raise WorkflowError(f"Script not registered: {name}")
        return {'executed': True, 'script': name, 'result': script(data, config)}

    def _call_webhook(self, config, data):
        url = config.get('url')
        if not url:
            raise WorkflowError('webhook requires a url')
        method = (config.get('method') or 'POST').upper()
        try:
            res = requests.request(method, url, json=config.get('payload') or data,
                                   headers=config.get('headers') or {}, timeout=HTTP_TIMEOUT)
            res.raise_for_status()
        except requests.RequestException as e:
            raise WorkflowError(f"Webhook call failed: {e}")
        return {'called': True, 'status': res.status_code}


workflow_engine = WorkflowEngine()
