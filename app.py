import os
from datetime import datetime, timedelta
from functools import wraps

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from flask import Flask, request, jsonify, abort, Response
from flask_migrate import Migrate

from models import (db, Firm, Client, Case, Document, Ticket, TicketCategory, EmailTemplate,
                    DocumentTemplate, CalendarAutomation, Integration, Invoice, CourtFiling, CalendarEvent,
                    AIAnalysis, EmailQueue, User, record_audit)
from utils import get_pagination, parse_datetime
from filters import time_ago, format_date, pluralize
from document_service import document_service
from services import automation
from services.agent import intelligent_agent
from services.ai_engine import ai_engine, AIEngineError
from services.analytics import analytics_service
from services.billing_service import BillingService, process_billing_webhook
from services.calendar_service import CalendarService, EVENT_TYPES
from services.court_filing_service import CourtFilingService, generate_filing_receipt
from services.document_search import DocumentSearchManager
from services.integrations import (IntegrationError, get_integration_status,
                                   provider_choices, sync_integration, test_integration,
                                   validate_integration_config)
from services.legal_research_service import LegalResearchService
from services.mailer import process_email_queue
from services.onboarding import (onboard_firm, list_users, get_user, create_user, update_user,
                                 deactivate_user)
from services.platform_connectors import CONNECTORS, PlatformManager
from services.rbac import (CAN_ACCESS_ADMIN, CAN_CREATE_CASES, CAN_MANAGE_BILLING, CAN_MANAGE_USERS,
                           CAN_VIEW_ALL_CASES, CAN_VIEW_FINANCIALS, get_acting_firm_id, get_acting_user,
                           has_permission, requires_permission, user_permissions)
from services.ticket_ai import ticket_ai
from services.ticket_manager import ticket_manager
from services.workflow_engine import workflow_engine, WorkflowError

# Load environment variables
load_dotenv()

# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-me')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_CONTENT_LENGTH', 16 * 1024 * 1024))

# Configure database URI
DATABASE_URL = os.getenv('DATABASE_URL')
if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
    DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

# Normalize SQLite path and ensure directory exists
basedir = os.path.dirname(os.path.abspath(__file__))
db_url = DATABASE_URL or 'sqlite:///themiscore.db'
if db_url.startswith('sqlite:///'):
    rel_path = db_url.replace('sqlite:///', '')
    abs_path = os.path.join(basedir, rel_path)
    os.makedirs(os.path.dirname(abs_path), exist_ok=True)
    # Use forward slashes for SQLite URL
    abs_url_path = abs_path.replace('\\', '/')
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{abs_url_path}'
else:
    app.config['SQLALCHEMY_DATABASE_URI'] = db_url

db.init_app(app)
migrate = Migrate(app, db)

# Authentication configuration
AUTH_USERNAME = os.getenv('FLASK_BASIC_USER', 'demo')
AUTH_PASSWORD = os.getenv('FLASK_BASIC_PASS', 'themiscore123')  # Change this in production


def requires_auth(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        auth = request.authorization
        if not auth or not (auth.username == AUTH_USERNAME and auth.password == AUTH_PASSWORD):
            return Response(
                'Could not verify your access level for that URL.\n'
                'You have to login with proper credentials', 401,
                {'WWW-Authenticate': 'Basic realm="Login Required"'})
        return f(*args, **kwargs)
    return decorated


def _firm_id():
    firm_id = get_acting_firm_id()
    if firm_id is None:
        abort(404)
    return firm_id


def _user_id():
    user = get_acting_user()
    return user.id if user else None


def _service_error(e, handler):
    """Map service exceptions onto JSON error responses."""
    db.session.rollback()
    if isinstance(e, KeyError):
        return jsonify({'error': f"{e.args[0]} required"}), 400
    if isinstance(e, LookupError):
        return jsonify({'error': str(e) or 'Resource not found'}), 404
    if isinstance(e, (ValueError, IntegrationError, WorkflowError, AIEngineError)):
        return jsonify({'error': str(e)}), 400
    app.logger.error(f"Error in {handler}: {str(e)}")
    return jsonify({'error': 'failed'}), 500


def _client_payload(client):
    if client is None:
        return {}
    return {'id': client.id, 'name': client.full_name, 'email': client.email, 'address': client.address}


def _firm_ref(model, firm_id, ref_id, label):
    """Resolve an id taken from a request to a record owned by the acting firm."""
    if not ref_id:
        return None
    if model.query.filter_by(firm_id=firm_id, id=int(ref_id)).first() is None:
        raise LookupError(f"{label} not found")
    return int(ref_id)


def _case_event(case):
    firm = db.session.get(Firm, case.firm_id)
    attorney = case.assigned_user or case.creator
    return {
        'case': case.to_dict(),
        'client': _client_payload(case.client),
        'firm': {'name': firm.name if firm else os.getenv('LAW_FIRM_NAME', '')},
        'attorney': {'name': attorney.full_name if attorney else ''},
    }


# ==================== BACKGROUND JOBS ====================

_scheduler = None


def _process_email_queue():
    with app.app_context():
        try:
            process_email_queue()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Email queue processor error: {str(e)}")


def _check_calendar_reminders():
    with app.app_context():
        try:
            automation.send_event_reminders()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Reminder job error: {str(e)}")


def _run_calendar_automations():
    with app.app_context():
        try:
            automation.run_due_automations()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Calendar automation job error: {str(e)}")


def _monitor_ticket_escalations():
    with app.app_context():
        for firm in Firm.query.all():
            try:
                for item in ticket_ai.monitor_ticket_escalation(firm.id):
                    app.logger.warning(f"Escalation {item['ticket_number']}: {item['escalation_reason']}")
            except Exception as e:
                db.session.rollback()
                app.logger.error(f"Escalation monitor error for firm {firm.id}: {str(e)}")


def _start_scheduler_once():
    global _scheduler
    if _scheduler is not None:
        return
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(_process_email_queue, 'interval', minutes=1, id='email_queue_processor')
    _scheduler.add_job(_check_calendar_reminders, 'interval', minutes=1, id='calendar_reminders')
    _scheduler.add_job(_run_calendar_automations, 'interval', minutes=5, id='calendar_automations')
    _scheduler.add_job(_monitor_ticket_escalations, 'interval', minutes=15, id='ticket_escalations')
    _scheduler.start()


# Start scheduler only on the reloader main process
if os.environ.get('WERKZEUG_RUN_MAIN') == 'true' or os.getenv('ENABLE_SCHEDULER', 'false').lower() == 'true':
    try:
        _start_scheduler_once()
        app.logger.info('APScheduler started for queue, reminder and escalation jobs.')
    except Exception as e:
        app.logger.error(f'Failed to start scheduler: {str(e)}')


@app.route('/api/session', methods=['GET'])
@requires_auth
def api_session():
    user = get_acting_user()
    firm = db.session.get(Firm, get_acting_firm_id()) if get_acting_firm_id() else None
    return jsonify({
        'firm': firm.to_dict() if firm else None,
        'user': user.to_dict() if user else None,
        'permissions': user_permissions(user),
    })


# ==================== TICKETS ====================

TICKET_FILTER_KEYS = ('status', 'priority', 'assigned_to', 'category_id', 'case_id', 'client_id', 'source',
                      'created_date_from', 'created_date_to', 'search', 'tags', 'sla_breached')


@app.route('/api/tickets', methods=['GET'])
@requires_auth
def api_tickets_list():
    firm_id = _firm_id()
    try:
        filters = {k: request.args.get(k) for k in TICKET_FILTER_KEYS if request.args.get(k)}
        result = ticket_manager.get_tickets(
            firm_id,
            filters,
            sort_field=request.args.get('sort_field', 'created_at'),
            sort_direction=request.args.get('sort_direction', 'desc'),
            page=request.args.get('page', 1),
            limit=request.args.get('limit', 25),
        )
        return jsonify(result)
    except Exception as e:
        return _service_error(e, 'api_tickets_list')


@app.route('/api/tickets', methods=['POST'])
@requires_auth
def api_tickets_post():
    firm_id = _firm_id()
    user_id = _user_id()
    data = request.get_json() or {}
    action = data.get('action') or 'create'
    try:
        if action == 'create':
            ticket = ticket_manager.create_ticket(firm_id, data, created_by_id=user_id)
            return jsonify({'ok': True, 'id': ticket.id, 'ticket': ticket.to_dict()}), 201
        if action == 'create_from_conversation':
            result = ticket_ai.create_ticket_from_conversation(
                firm_id, data.get('conversation_context') or data, user_id)
            if result['ticket'] is not None:
                result['ticket'] = result['ticket'].to_dict()
            return jsonify(result), 201 if result['created'] else 200
        if action == 'ai_analyze':
            if not data.get('content'):
                return jsonify({'error': 'content required'}), 400
            return jsonify(ticket_manager.analyze_ticket_with_ai(data['content'], data.get('context'),
                                                                 firm_id=_firm_id()))
        if action == 'ai_process_query':
            if not data.get('query'):
                return jsonify({'error': 'query required'}), 400
            return jsonify(ticket_ai.process_ticket_query(firm_id, data, execute=bool(data.get('execute', True)),
                                                          user_id=user_id))
        if action == 'bulk_update':
            tickets = ticket_manager.bulk_update_tickets(firm_id, data.get('ticket_ids') or [],
                                                         data.get('updates') or {}, user_id)
            return jsonify({'ok': True, 'updated': len(tickets)})
        if action == 'suggest_assignment':
            return jsonify(ticket_ai.suggest_ticket_assignment(firm_id, int(data['ticket_id'])))
        if action == 'analyze_priority':
            return jsonify(ticket_ai.intelligent_prioritization(firm_id, int(data['ticket_id'])))
        if action == 'monitor_escalation':
            return jsonify({'escalations': ticket_ai.monitor_ticket_escalation(firm_id)})
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_tickets_post')


@app.route('/api/tickets', methods=['PUT'])
@requires_auth
def api_tickets_update():
    firm_id = _firm_id()
    data = request.get_json() or {}
    if not data.get('id'):
        return jsonify({'error': 'id required'}), 400
    try:
        updates = {k: v for k, v in data.items() if k != 'id'}
        ticket = ticket_manager.update_ticket(firm_id, int(data['id']), updates, _user_id())
        return jsonify({'ok': True, 'ticket': ticket.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_tickets_update')


@app.route('/api/tickets/stats', methods=['GET'])
@requires_auth
def api_ticket_stats():
    firm_id = _firm_id()
    try:
        return jsonify(ticket_manager.get_ticket_stats(firm_id))
    except Exception as e:
        return _service_error(e, 'api_ticket_stats')


@app.route('/api/tickets/<int:ticket_id>', methods=['GET'])
@requires_auth
def api_ticket_detail(ticket_id):
    ticket = ticket_manager.get_ticket(_firm_id(), ticket_id)
    if ticket is None:
        abort(404)
    return jsonify(ticket.to_dict(include_comments=True))


@app.route('/api/tickets/<int:ticket_id>/comments', methods=['POST'])
@requires_auth
def api_ticket_comment(ticket_id):
    firm_id = _firm_id()
    data = request.get_json() or {}
    try:
        comment = ticket_manager.add_comment(
            firm_id, ticket_id, data.get('content'), user_id=_user_id(),
            is_internal=bool(data.get('is_internal')), comment_type=data.get('comment_type') or 'comment')
        return jsonify({'ok': True, 'id': comment.id, 'comment': comment.to_dict()}), 201
    except Exception as e:
        return _service_error(e, 'api_ticket_comment')


@app.route('/api/tickets/<int:ticket_id>/response', methods=['POST'])
@requires_auth
def api_ticket_response(ticket_id):
    firm_id = _firm_id()
    data = request.get_json() or {}
    if not data.get('response'):
        return jsonify({'error': 'response required'}), 400
    try:
        result = ticket_ai.process_response_for_ticket_update(
            firm_id, ticket_id, data['response'], platform=data.get('platform') or 'chat',
            author=data.get('author') or 'unknown', apply=bool(data.get('apply', True)), user_id=_user_id())
        return jsonify(result)
    except Exception as e:
        return _service_error(e, 'api_ticket_response')


@app.route('/api/ticket-categories', methods=['GET'])
@requires_auth
def api_ticket_categories():
    firm_id = _firm_id()
    include_inactive = request.args.get('include_inactive') == 'true'
    return jsonify([c.to_dict() for c in ticket_manager.list_categories(firm_id, include_inactive)])


@app.route('/api/ticket-categories', methods=['POST'])
@requires_auth
def api_ticket_category_create():
    firm_id = _firm_id()
    try:
        category = ticket_manager.create_category(firm_id, request.get_json() or {})
        return jsonify({'ok': True, 'id': category.id}), 201
    except Exception as e:
        return _service_error(e, 'api_ticket_category_create')


@app.route('/api/ticket-categories/<int:category_id>', methods=['DELETE'])
@requires_auth
def api_ticket_category_delete(category_id):
    category = TicketCategory.query.filter_by(firm_id=_firm_id(), id=category_id).first_or_404()
    category.is_active = False
    db.session.commit()
    return jsonify({'ok': True})


# ==================== AGENT ====================

@app.route('/api/agent', methods=['GET'])
@requires_auth
def api_agent_status():
    firm_id = _firm_id()
    try:
        return jsonify(intelligent_agent.get_status(firm_id))
    except Exception as e:
        return _service_error(e, 'api_agent_status')


@app.route('/api/agent', methods=['POST'])
@requires_auth
def api_agent():
    firm_id = _firm_id()
    data = request.get_json() or {}
    action = data.get('action') or 'process_query'
    try:
        if action == 'process_query':
            if not (data.get('query') or '').strip():
                return jsonify({'error': 'query required'}), 400
            return jsonify(intelligent_agent.process_query(firm_id, _user_id(), data['query'], data.get('context')))
        if action == 'process_email':
            return jsonify(intelligent_agent.process_incoming_email(firm_id, data.get('email_request') or data))
        if action == 'legal_research':
            if not data.get('topic'):
                return jsonify({'error': 'topic required'}), 400
            return jsonify({'results': intelligent_agent.perform_legal_research(firm_id, data['topic'])})
        if action == 'case_analysis':
            return jsonify(intelligent_agent.analyze_case_success(firm_id, data.get('params') or {}))
        if action == 'document_search':
            terms = data.get('terms') or data.get('query')
            if not terms:
                return jsonify({'error': 'terms required'}), 400
            return jsonify(intelligent_agent.search_all_documents(firm_id, terms))
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_agent')


@app.route('/api/agent/conversations', methods=['GET'])
@requires_auth
def api_agent_conversations():
    firm_id = _firm_id()
    conversations = intelligent_agent.list_conversations(firm_id, _user_id())
    return jsonify([c.to_dict() for c in conversations])


@app.route('/api/agent/conversations/<int:conversation_id>', methods=['GET'])
@requires_auth
def api_agent_conversation(conversation_id):
    firm_id = _firm_id()
    try:
        conversation = intelligent_agent.get_conversation(firm_id, conversation_id)
    except LookupError:
        abort(404)
    return jsonify(conversation.to_dict(include_messages=True))


# ==================== AI ====================

def _analyze_and_store(firm_id, document_id, name, content, analysis_type):
    result = ai_engine.analyze_document(str(document_id), name, content, analysis_type)
    analysis = AIAnalysis(firm_id=firm_id, **result)
    db.session.add(analysis)
    return analysis


def _analysis_stats(firm_id):
    analyses = AIAnalysis.query.filter_by(firm_id=firm_id).all()
    by_category, by_risk = {}, {}
    for a in analyses:
        by_category[a.category or 'unknown'] = by_category.get(a.category or 'unknown', 0) + 1
        by_risk[a.risk_level or 'low'] = by_risk.get(a.risk_level or 'low', 0) + 1
    total = len(analyses)
    return {
        'total_analyses': total,
        'by_category': by_category,
        'by_risk_level': by_risk,
        'average_confidence': round(sum(a.confidence_score or 0 for a in analyses) / total, 2) if total else 0,
        'average_processing_ms': round(sum(a.processing_time_ms or 0 for a in analyses) / total) if total else 0,
    }


@app.route('/api/ai', methods=['GET'])
@requires_auth
def api_ai_get():
    firm_id = _firm_id()
    kind = request.args.get('type') or 'overview'
    if kind == 'analyses':
        limit = get_pagination(1, request.args.get('limit', 50))['per_page']
        rows = (AIAnalysis.query.filter_by(firm_id=firm_id)
                .order_by(AIAnalysis.created_at.desc()).limit(limit).all())
        return jsonify([a.to_dict() for a in rows])
    if kind == 'analysis':
        analysis = AIAnalysis.query.filter_by(firm_id=firm_id, id=request.args.get('id', type=int)).first_or_404()
        return jsonify(analysis.to_dict())
    if kind == 'stats':
        return jsonify(_analysis_stats(firm_id))
    if kind == 'overview':
        return jsonify({'config': ai_engine.get_current_config(), 'stats': _analysis_stats(firm_id)})
    return jsonify({'error': 'Invalid type'}), 400


@app.route('/api/ai', methods=['POST'])
@requires_auth
def api_ai_post():
    firm_id = _firm_id()
    data = request.get_json() or {}
    action = data.get('action')
    try:
        if action == 'analyze_document':
            document = None
            if data.get('document_id'):
                document = Document.query.filter_by(firm_id=firm_id, id=data['document_id']).first()
                if document is None:
                    return jsonify({'error': 'Document not found'}), 404
            content = document.content if document else data.get('content')
            if not content:
                return jsonify({'error': 'document_id or content required'}), 400
            analysis = _analyze_and_store(firm_id, document.id if document else (data.get('name') or 'inline'),
                                          document.name if document else data.get('name') or 'Untitled',
                                          content, data.get('analysis_type') or 'document_classification')
            db.session.commit()
            return jsonify({'ok': True, 'id': analysis.id, 'analysis': analysis.to_dict()}), 201
        if action == 'bulk_analyze':
            ids = data.get('document_ids') or []
            if not ids:
                return jsonify({'error': 'document_ids required'}), 400
            documents = Document.query.filter(Document.firm_id == firm_id, Document.id.in_(ids)).all()
            results = [_analyze_and_store(firm_id, d.id, d.name, d.content or '', 'document_classification')
                       for d in documents]
            db.session.commit()
            return jsonify({'ok': True, 'analyzed': len(results), 'results': [a.to_dict() for a in results]})
        if action == 'query':
            if not data.get('prompt'):
                return jsonify({'error': 'prompt required'}), 400
            return jsonify(ai_engine.process_legal_query(data['prompt'], data.get('context'),
                                                         data.get('system_prompt')))
        if action == 'draft_email':
            return jsonify(ai_engine.draft_legal_email(data.get('email_context') or data))
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_ai_post')


@app.route('/api/ai', methods=['PUT'])
@requires_auth
@requires_permission(CAN_ACCESS_ADMIN)
def api_ai_config():
    try:
        return jsonify(ai_engine.update_config(request.get_json() or {}))
    except Exception as e:
        return _service_error(e, 'api_ai_config')


# ==================== INTEGRATIONS ====================

def _integration(firm_id, integration_id, integration_type=None):
    query = Integration.query.filter_by(firm_id=firm_id, id=integration_id)
    if integration_type:
        query = query.filter_by(type=integration_type)
    return query.first()


@app.route('/api/integrations', methods=['GET'])
@requires_auth
def api_integrations_list():
    firm_id = _firm_id()
    query = Integration.query.filter_by(firm_id=firm_id)
    if request.args.get('type'):
        query = query.filter_by(type=request.args['type'])
    items = []
    for row in query.order_by(Integration.name).all():
        item = row.to_dict()
        item['status_label'] = get_integration_status(row.status)
        items.append(item)
    return jsonify({'integrations': items, 'providers': {k: list(v) for k, v in provider_choices().items()}})


@app.route('/api/integrations', methods=['POST'])
@requires_auth
def api_integrations_post():
    firm_id = _firm_id()
    data = request.get_json() or {}
    action = data.get('action') or 'create'
    try:
        if action == 'create':
            if not has_permission(get_acting_user(), CAN_ACCESS_ADMIN):
                return jsonify({'error': 'Forbidden', 'required_permission': CAN_ACCESS_ADMIN}), 403
            errors = validate_integration_config(data)
            if errors:
                return jsonify({'error': '; '.join(errors)}), 400
            integration = Integration(
                firm_id=firm_id,
                name=data['name'].strip(),
                type=data['type'],
                provider=data['provider'],
                status='pending',
                description=data.get('description'),
                credentials=dict(data.get('credentials') or {}),
                settings=dict(data.get('settings') or {}),
                sync_frequency=data.get('sync_frequency') or 'manual',
                features=list(data.get('features') or []),
                webhook_url=data.get('webhook_url'),
            )
            db.session.add(integration)
            db.session.flush()
            record_audit(firm_id, 'integration_created', f"{integration.type}:{integration.provider}",
                         user_id=_user_id(), entity_type='integration', entity_id=integration.id,
                         risk_level='medium', compliance_relevant=True)
            db.session.commit()
            return jsonify({'ok': True, 'id': integration.id}), 201

        integration = _integration(firm_id, data.get('id'))
        if integration is None:
            return jsonify({'error': 'Integration not found'}), 404
        if action == 'test_connection':
            ok = test_integration(integration)
            return jsonify({'connected': ok, 'status': integration.status,
                            'status_label': get_integration_status(integration.status)})
        if action == 'sync':
            return jsonify(sync_integration(integration))
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_integrations_post')


@app.route('/api/integrations', methods=['PUT'])
@requires_auth
@requires_permission(CAN_ACCESS_ADMIN)
def api_integrations_update():
    firm_id = _firm_id()
    data = request.get_json() or {}
    integration = _integration(firm_id, data.get('id'))
    if integration is None:
        abort(404)
    try:
        for field in ('name', 'description', 'sync_frequency', 'webhook_url'):
            if field in data:
                setattr(integration, field, data[field])
        if 'settings' in data:
            integration.settings = dict(integration.settings or {}, **(data['settings'] or {}))
        if 'features' in data:
            integration.features = list(data['features'] or [])
        if 'credentials' in data:
            integration.credentials = dict(integration.credentials or {}, **(data['credentials'] or {}))
            integration.status = 'pending'
        db.session.commit()
        return jsonify({'ok': True, 'integration': integration.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_integrations_update')


@app.route('/api/integrations', methods=['DELETE'])
@requires_auth
@requires_permission(CAN_ACCESS_ADMIN)
def api_integrations_delete():
    firm_id = _firm_id()
    integration = _integration(firm_id, request.args.get('id', type=int))
    if integration is None:
        abort(404)
    try:
        record_audit(firm_id, 'integration_deleted', f"{integration.type}:{integration.provider}",
                     user_id=_user_id(), entity_type='integration', entity_id=integration.id,
                     risk_level='medium', compliance_relevant=True)
        db.session.delete(integration)
        db.session.commit()
        return jsonify({'ok': True})
    except Exception as e:
        return _service_error(e, 'api_integrations_delete')


@app.route('/api/platforms', methods=['GET'])
@requires_auth
def api_platforms():
    manager = PlatformManager(_firm_id())
    return jsonify({'platforms': manager.get_platform_status(), 'connected': manager.get_connected_platforms()})


@app.route('/api/platforms', methods=['POST'])
@requires_auth
def api_platforms_post():
    manager = PlatformManager(_firm_id())
    data = request.get_json() or {}
    action = data.get('action')
    try:
        if action == 'connect':
            if data.get('platform') not in CONNECTORS:
                return jsonify({'error': f"Unsupported platform: {data.get('platform')}"}), 400
            ok = manager.connect_platform(data['platform'], data.get('credentials') or {})
            return jsonify({'connected': ok, 'platform': data['platform']})
        if action == 'disconnect':
            if not manager.disconnect_platform(data.get('platform')):
                return jsonify({'error': 'Platform not linked'}), 404
            return jsonify({'ok': True})
        if action == 'search':
            if not data.get('query'):
                return jsonify({'error': 'query required'}), 400
            date_range = None
            if data.get('date_from') or data.get('date_to'):
                date_range = {'start': parse_datetime(data.get('date_from')), 'end': parse_datetime(data.get('date_to'))}
            return jsonify(manager.search_all_platforms(data['query'], platforms=data.get('platforms'),
                                                        limit=int(data.get('limit') or 100), date_range=date_range))
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_platforms_post')


@app.route('/api/webhooks/billing', methods=['GET'])
def api_billing_webhook_health():
    return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat()})


@app.route('/api/webhooks/billing', methods=['POST'])
@requires_auth
def api_billing_webhook():
    firm_id = _firm_id()
    payload = request.get_json(silent=True)
    provider = request.args.get('provider') or request.headers.get('X-Billing-Provider')
    if not payload or not provider:
        return jsonify({'error': 'provider and JSON payload required'}), 400
    try:
        return jsonify(process_billing_webhook(firm_id, provider, payload))
    except Exception as e:
        return _service_error(e, 'api_billing_webhook')


# ==================== BILLING ====================

def _next_invoice_number(firm_id):
    prefix = f"INV-{datetime.utcnow().year}-"
    numbers = db.session.query(Invoice.invoice_number).filter(
        Invoice.firm_id == firm_id, Invoice.invoice_number.like(f"{prefix}%")
    ).all()
    seq = 0
    for (number,) in numbers:
        tail = number[len(prefix):]
        if tail.isdigit():
            seq = max(seq, int(tail))
    return f"{prefix}{seq + 1:04d}"


@app.route('/api/invoices', methods=['GET'])
@requires_auth
@requires_permission(CAN_VIEW_FINANCIALS)
def api_invoices_list():
    firm_id = _firm_id()
    query = Invoice.query.filter_by(firm_id=firm_id)
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    if request.args.get('client_id', type=int):
        query = query.filter_by(client_id=request.args.get('client_id', type=int))
    return jsonify([i.to_dict() for i in query.order_by(Invoice.created_at.desc()).all()])


@app.route('/api/invoices', methods=['POST'])
@requires_auth
@requires_permission(CAN_MANAGE_BILLING)
def api_invoices_create():
    firm_id = _firm_id()
    data = request.get_json() or {}
    try:
        lines = list(data.get('line_items') or [])
        amount = float(data.get('amount') or sum(float(l.get('amount') or 0) for l in lines))
        if amount <= 0:
            return jsonify({'error': 'amount or line_items required'}), 400
        number = data.get('invoice_number') or _next_invoice_number(firm_id)
        if Invoice.query.filter_by(firm_id=firm_id, invoice_number=number).first() is not None:
            return jsonify({'error': f"Invoice number {number} already exists"}), 400
        tax = float(data.get('tax_amount') or 0)
        invoice = Invoice(
            firm_id=firm_id,
            client_id=_firm_ref(Client, firm_id, data.get('client_id'), 'Client'),
            case_id=_firm_ref(Case, firm_id, data.get('case_id'), 'Case'),
            invoice_number=number,
            amount=amount,
            tax_amount=tax,
            total_amount=round(amount + tax, 2),
            currency=data.get('currency') or 'USD',
            status='draft',
            issue_date=(parse_datetime(data.get('issue_date')) or datetime.utcnow()).date(),
            due_date=(parse_datetime(data.get('due_date')) or datetime.utcnow() + timedelta(days=30)).date(),
            line_items=lines,
        )
        db.session.add(invoice)
        db.session.commit()
        pushed = None
        if data.get('integration_id'):
            integration = _integration(firm_id, data['integration_id'], 'billing')
            if integration is None:
                return jsonify({'error': 'Billing integration not found'}), 404
            pushed = BillingService(integration).create_invoice(invoice)
        return jsonify({'ok': True, 'id': invoice.id, 'invoice': invoice.to_dict(), 'provider_invoice': pushed}), 201
    except Exception as e:
        return _service_error(e, 'api_invoices_create')


@app.route('/api/invoices/<int:invoice_id>/payments', methods=['POST'])
@requires_auth
@requires_permission(CAN_MANAGE_BILLING)
def api_invoice_payment(invoice_id):
    firm_id = _firm_id()
    invoice = Invoice.query.filter_by(firm_id=firm_id, id=invoice_id).first_or_404()
    data = request.get_json() or {}
    try:
        integration = Integration.query.filter_by(firm_id=firm_id, type='billing',
                                                  provider=invoice.provider).first() if invoice.provider else None
        if integration is not None:
            paid_on = parse_datetime(data.get('paid_on'))
            result = BillingService(integration).record_payment(
                invoice, data.get('amount'), paid_on.date() if paid_on else None,
                data.get('method') or 'bank_transfer')
        else:
            amount = float(data.get('amount') or 0)
            if amount <= 0:
                return jsonify({'error': 'Payment amount must be positive'}), 400
            invoice.add_payment(amount)
            db.session.commit()
            result = {'amount': amount}
        if invoice.status == 'paid':
            workflow_engine.trigger_workflows(firm_id, 'payment_received', {
                'invoice': invoice.to_dict(), 'client': _client_payload(invoice.client)})
        return jsonify({'ok': True, 'payment': result, 'invoice': invoice.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_invoice_payment')


# ==================== COURT FILING / RESEARCH ====================

@app.route('/api/court-filings', methods=['GET'])
@requires_auth
def api_court_filings():
    firm_id = _firm_id()
    query = CourtFiling.query.filter_by(firm_id=firm_id)
    if request.args.get('case_id', type=int):
        query = query.filter_by(case_id=request.args.get('case_id', type=int))
    return jsonify([f.to_dict() for f in query.order_by(CourtFiling.created_at.desc()).all()])


@app.route('/api/court-filings', methods=['POST'])
@requires_auth
def api_court_filings_post():
    firm_id = _firm_id()
    data = request.get_json() or {}
    integration = _integration(firm_id, data.get('integration_id'), 'court_filing')
    if integration is None:
        return jsonify({'error': 'Court filing integration not found'}), 404
    action = data.get('action') or 'submit'
    try:
        service = CourtFilingService(integration)
        if action == 'submit':
            _firm_ref(Case, firm_id, data.get('case_id'), 'Case')
            filing = service.submit_filing(data, user_id=_user_id())
            return jsonify({'ok': True, 'id': filing.id, 'filing': filing.to_dict()}), 201
        if action == 'status':
            return jsonify(service.get_filing_status(int(data['filing_id'])))
        if action == 'docket':
            if not data.get('case_number'):
                return jsonify({'error': 'case_number required'}), 400
            return jsonify(service.get_case_docket(data['case_number']))
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_court_filings_post')


@app.route('/api/court-filings/<int:filing_id>/receipt', methods=['GET'])
@requires_auth
def api_court_filing_receipt(filing_id):
    filing = CourtFiling.query.filter_by(firm_id=_firm_id(), id=filing_id).first_or_404()
    return Response(generate_filing_receipt(filing), mimetype='text/plain')


@app.route('/api/legal-research', methods=['POST'])
@requires_auth
def api_legal_research():
    firm_id = _firm_id()
    data = request.get_json() or {}
    if data.get('integration_id'):
        integration = _integration(firm_id, data['integration_id'], 'legal_research')
    else:
        integration = Integration.query.filter_by(firm_id=firm_id, type='legal_research').order_by(
            Integration.id).first()
    if integration is None:
        return jsonify({'error': 'No legal research integration configured'}), 404
    try:
        service = LegalResearchService(integration)
        if data.get('action') == 'details':
            details = service.get_case_details(data.get('identifier') or '')
            if details is None:
                return jsonify({'error': 'Document not found'}), 404
            return jsonify(details)
        if not (data.get('query') or '').strip():
            return jsonify({'error': 'query required'}), 400
        results = service.search(
            data['query'],
            jurisdiction=data.get('jurisdiction'),
            document_types=data.get('document_types'),
            date_from=data.get('date_from'),
            date_to=data.get('date_to'),
            max_results=data.get('max_results'),
            sort_by=data.get('sort_by') or 'relevance',
        )
        return jsonify({'query': data['query'], 'provider': integration.provider, 'results': results,
                        'total_found': len(results)})
    except Exception as e:
        return _service_error(e, 'api_legal_research')


# ==================== WORKFLOWS ====================

@app.route('/api/workflows', methods=['GET'])
@requires_auth
def api_workflows():
    firm_id = _firm_id()
    kind = request.args.get('type') or 'rules'
    if kind == 'rules':
        return jsonify([r.to_dict() for r in workflow_engine.get_rules(firm_id)])
    if kind == 'executions':
        executions = workflow_engine.get_executions(firm_id, request.args.get('rule_id', type=int),
                                                    request.args.get('limit', 50, type=int))
        return jsonify([e.to_dict() for e in executions])
    if kind == 'templates':
        return jsonify([t.to_dict() for t in workflow_engine.get_templates(firm_id)])
    return jsonify({'error': 'Invalid type'}), 400


@app.route('/api/workflows', methods=['POST'])
@requires_auth
def api_workflows_post():
    firm_id = _firm_id()
    data = request.get_json() or {}
    action = data.get('action')
    try:
        if action == 'create_rule':
            rule = workflow_engine.create_rule(firm_id, data.get('rule') or data, user_id=_user_id())
            return jsonify({'ok': True, 'id': rule.id}), 201
        if action == 'trigger_workflow':
            executions = workflow_engine.trigger_workflows(firm_id, data.get('event_type'), data.get('event_data') or {})
            return jsonify({'executions': [e.to_dict() for e in executions]})
        if action == 'test_workflow':
            rule = workflow_engine.get_rule(firm_id, int(data['rule_id']))
            return jsonify(workflow_engine.test_workflow(rule, data.get('sample_data') or {}))
        if action == 'generate_document':
            result = workflow_engine.generate_document(firm_id, data, data.get('data') or {})
            db.session.commit()
            return jsonify(result), 201
        return jsonify({'error': 'Invalid action'}), 400
    except Exception as e:
        return _service_error(e, 'api_workflows_post')


@app.route('/api/workflows', methods=['PUT'])
@requires_auth
def api_workflows_update():
    firm_id = _firm_id()
    data = request.get_json() or {}
    if not data.get('id'):
        return jsonify({'error': 'id required'}), 400
    try:
        rule = workflow_engine.update_rule(firm_id, int(data['id']), {k: v for k, v in data.items() if k != 'id'})
        return jsonify({'ok': True, 'rule': rule.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_workflows_update')


@app.route('/api/workflows', methods=['DELETE'])
@requires_auth
def api_workflows_delete():
    firm_id = _firm_id()
    try:
        workflow_engine.delete_rule(firm_id, request.args.get('id', type=int))
        return jsonify({'ok': True})
    except Exception as e:
        return _service_error(e, 'api_workflows_delete')


# ==================== AUTOMATION TEMPLATES ====================

@app.route('/api/templates/email', methods=['GET'])
@requires_auth
def api_email_templates():
    templates = automation.list_email_templates(_firm_id(), request.args.get('trigger_type'))
    return jsonify([t.to_dict() for t in templates])


@app.route('/api/templates/email', methods=['POST'])
@requires_auth
def api_email_template_create():
    try:
        template = automation.create_email_template(_firm_id(), request.get_json() or {})
        return jsonify({'ok': True, 'id': template.id}), 201
    except Exception as e:
        return _service_error(e, 'api_email_template_create')


@app.route('/api/templates/email/<int:template_id>', methods=['PUT', 'DELETE'])
@requires_auth
def api_email_template_item(template_id):
    firm_id = _firm_id()
    try:
        if request.method == 'DELETE':
            automation.delete_email_template(firm_id, template_id)
            return jsonify({'ok': True})
        template = automation.update_email_template(firm_id, template_id, request.get_json() or {})
        return jsonify({'ok': True, 'template': template.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_email_template_item')


@app.route('/api/templates/email/<int:template_id>/render', methods=['POST'])
@requires_auth
def api_email_template_render(template_id):
    template = EmailTemplate.query.filter_by(firm_id=_firm_id(), id=template_id).first_or_404()
    return jsonify(automation.render_email_template(template, (request.get_json() or {}).get('variables') or {}))


@app.route('/api/templates/document', methods=['GET'])
@requires_auth
def api_document_templates():
    templates = automation.list_document_templates(_firm_id(), request.args.get('category'))
    return jsonify([t.to_dict() for t in templates])


@app.route('/api/templates/document', methods=['POST'])
@requires_auth
def api_document_template_create():
    try:
        template = automation.create_document_template(_firm_id(), request.get_json() or {})
        return jsonify({'ok': True, 'id': template.id}), 201
    except Exception as e:
        return _service_error(e, 'api_document_template_create')


@app.route('/api/templates/document/<int:template_id>', methods=['PUT', 'DELETE'])
@requires_auth
def api_document_template_item(template_id):
    firm_id = _firm_id()
    try:
        if request.method == 'DELETE':
            automation.delete_document_template(firm_id, template_id)
            return jsonify({'ok': True})
        template = automation.update_document_template(firm_id, template_id, request.get_json() or {})
        return jsonify({'ok': True, 'template': template.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_document_template_item')


@app.route('/api/templates/document/<int:template_id>/render', methods=['POST'])
@requires_auth
def api_document_template_render(template_id):
    template = DocumentTemplate.query.filter_by(firm_id=_firm_id(), id=template_id).first_or_404()
    try:
        return jsonify(automation.render_document_template(template, (request.get_json() or {}).get('variables') or {}))
    except Exception as e:
        return _service_error(e, 'api_document_template_render')


@app.route('/api/automations/calendar', methods=['GET'])
@requires_auth
def api_calendar_automations():
    automations = automation.list_calendar_automations(_firm_id(), request.args.get('automation_type'))
    return jsonify([a.to_dict() for a in automations])


@app.route('/api/automations/calendar', methods=['POST'])
@requires_auth
def api_calendar_automation_create():
    try:
        item = automation.create_calendar_automation(_firm_id(), request.get_json() or {})
        return jsonify({'ok': True, 'id': item.id}), 201
    except Exception as e:
        return _service_error(e, 'api_calendar_automation_create')


@app.route('/api/automations/calendar/<int:automation_id>', methods=['PUT', 'DELETE'])
@requires_auth
def api_calendar_automation_item(automation_id):
    firm_id = _firm_id()
    try:
        if request.method == 'DELETE':
            automation.delete_calendar_automation(firm_id, automation_id)
            return jsonify({'ok': True})
        item = automation.update_calendar_automation(firm_id, automation_id, request.get_json() or {})
        return jsonify({'ok': True, 'automation': item.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_calendar_automation_item')


@app.route('/api/automations/calendar/<int:automation_id>/run', methods=['POST'])
@requires_auth
def api_calendar_automation_run(automation_id):
    item = CalendarAutomation.query.filter_by(firm_id=_firm_id(), id=automation_id).first_or_404()
    try:
        return jsonify(automation.run_calendar_automation(item))
    except Exception as e:
        return _service_error(e, 'api_calendar_automation_run')


# ==================== CLIENTS / CASES / DOCUMENTS ====================

@app.route('/api/clients', methods=['GET'])
@requires_auth
def api_clients_list():
    firm_id = _firm_id()
    try:
        query = Client.query.filter_by(firm_id=firm_id)
        search = (request.args.get('search') or '').strip()
        if search:
            like = f"%{search}%"
            query = query.filter(db.or_(Client.first_name.ilike(like), Client.last_name.ilike(like),
                                        Client.email.ilike(like), Client.phone.ilike(like)))
        return jsonify([c.to_dict() for c in query.order_by(Client.last_name, Client.first_name).all()])
    except Exception as e:
        return _service_error(e, 'api_clients_list')


@app.route('/api/clients/<int:client_id>', methods=['GET'])
@requires_auth
def api_client_detail(client_id):
    client = Client.query.filter_by(firm_id=_firm_id(), id=client_id).first_or_404()
    result = client.to_dict()
    result['cases'] = [c.to_dict() for c in sorted(client.cases, key=lambda c: c.created_at, reverse=True)]
    return jsonify(result)


@app.route('/api/clients', methods=['POST'])
@requires_auth
def api_client_create():
    firm_id = _firm_id()
    data = request.get_json() or {}
    first_name = (data.get('first_name') or '').strip()
    last_name = (data.get('last_name') or '').strip()
    if not first_name or not last_name:
        return jsonify({'error': 'first_name and last_name required'}), 400
    try:
        client = Client(firm_id=firm_id, first_name=first_name, last_name=last_name, email=data.get('email'),
                        phone=data.get('phone'), address=data.get('address'), company=data.get('company'))
        db.session.add(client)
        db.session.commit()
        return jsonify({'ok': True, 'id': client.id}), 201
    except Exception as e:
        return _service_error(e, 'api_client_create')


@app.route('/api/clients/<int:client_id>', methods=['PATCH'])
@requires_auth
def api_client_update(client_id):
    client = Client.query.filter_by(firm_id=_firm_id(), id=client_id).first_or_404()
    data = request.get_json() or {}
    try:
        for field in ['first_name', 'last_name', 'email', 'phone', 'address', 'company']:
            if field in data:
                setattr(client, field, data.get(field))
        db.session.commit()
        return jsonify({'ok': True})
    except Exception as e:
        return _service_error(e, 'api_client_update')


@app.route('/api/cases', methods=['GET'])
@requires_auth
def api_cases_list():
    firm_id = _firm_id()
    try:
        pagination = get_pagination(request.args.get('page'), request.args.get('per_page', 10))
        query = Case.query.filter_by(firm_id=firm_id).options(db.joinedload(Case.client))
        if request.args.get('status'):
            query = query.filter(Case.status.in_(request.args['status'].split(',')))
        if request.args.get('client_id', type=int):
            query = query.filter(Case.client_id == request.args.get('client_id', type=int))
        search = (request.args.get('search') or '').strip()
        if search:
            like = f"%{search}%"
            query = query.filter(db.or_(Case.title.ilike(like), Case.case_number.ilike(like)))
        user = get_acting_user()
        if user is not None and user.role != 'admin' and not has_permission(user, CAN_VIEW_ALL_CASES):
            query = query.filter(db.or_(Case.assigned_to_id == user.id, Case.created_by_id == user.id))
        paginated = query.order_by(Case.created_at.desc()).paginate(
            page=pagination['page'], per_page=pagination['per_page'], error_out=False)
        return jsonify({
            'items': [c.to_dict() for c in paginated.items],
            'page': paginated.page,
            'per_page': paginated.per_page,
            'total': paginated.total,
            'pages': paginated.pages,
        })
    except Exception as e:
        return _service_error(e, 'api_cases_list')


@app.route('/api/cases', methods=['POST'])
@requires_auth
@requires_permission(CAN_CREATE_CASES)
def api_case_create():
    firm_id = _firm_id()
    data = request.get_json() or {}
    title = (data.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'title required'}), 400
    client = None
    if data.get('client_id'):
        client = Client.query.filter_by(firm_id=firm_id, id=data['client_id']).first()
        if client is None:
            return jsonify({'error': 'Client not found'}), 404
    try:
        case = Case(
            firm_id=firm_id,
            client_id=client.id if client else None,
            title=title,
            description=data.get('description'),
            case_number=data.get('case_number'),
            case_type=data.get('case_type'),
            status=data.get('status') or 'open',
            priority=data.get('priority') or 'medium',
            court=data.get('court'),
            jurisdiction=data.get('jurisdiction'),
            assigned_to_id=_firm_ref(User, firm_id, data.get('assigned_to_id'), 'User'),
            created_by_id=_user_id(),
        )
        db.session.add(case)
        db.session.flush()
        record_audit(firm_id, 'case_created', title, user_id=_user_id(), entity_type='case', entity_id=case.id)
        db.session.commit()
        executions = workflow_engine.trigger_workflows(firm_id, 'case_created', _case_event(case))
        return jsonify({'ok': True, 'id': case.id, 'workflows_run': len(executions)}), 201
    except Exception as e:
        return _service_error(e, 'api_case_create')


@app.route('/api/cases/<int:case_id>', methods=['GET'])
@requires_auth
def api_case_detail(case_id):
    case = Case.query.filter_by(firm_id=_firm_id(), id=case_id).first_or_404()
    result = case.to_dict()
    result['documents'] = [d.to_dict() for d in case.documents]
    tickets = Ticket.query.filter_by(firm_id=case.firm_id, case_id=case.id).all()
    result['tickets'] = [t.to_dict() for t in tickets]
    return jsonify(result)


@app.route('/api/cases/<int:case_id>', methods=['PATCH'])
@requires_auth
def api_case_update(case_id):
    firm_id = _firm_id()
    case = Case.query.filter_by(firm_id=firm_id, id=case_id).first_or_404()
    data = request.get_json() or {}
    if data.get('status') and data['status'] not in ('open', 'in_progress', 'pending', 'closed'):
        return jsonify({'error': f"Invalid status: {data['status']}"}), 400
    try:
        if 'assigned_to_id' in data:
            data['assigned_to_id'] = _firm_ref(User, firm_id, data['assigned_to_id'], 'User')
        changes = {}
        for field in ('title', 'description', 'case_number', 'case_type', 'status', 'priority', 'court',
                      'jurisdiction', 'assigned_to_id'):
            if field in data and getattr(case, field) != data[field]:
                changes[field] = {'from': getattr(case, field), 'to': data[field]}
                setattr(case, field, data[field])
        if 'status' in changes:
            case.closed_at = datetime.utcnow() if case.status == 'closed' else None
        db.session.commit()
        if changes:
            event = _case_event(case)
            event['changes'] = changes
            workflow_engine.trigger_workflows(firm_id, 'case_updated', event)
        return jsonify({'ok': True, 'changes': sorted(changes)})
    except Exception as e:
        return _service_error(e, 'api_case_update')


def _document_created(document):
    event = {'document': document.to_dict()}
    if document.case is not None:
        event.update(_case_event(document.case))
    workflow_engine.trigger_workflows(document.firm_id, 'document_uploaded', event)


@app.route('/api/documents', methods=['GET'])
@requires_auth
def api_documents_list():
    firm_id = _firm_id()
    query = Document.query.filter_by(firm_id=firm_id)
    if request.args.get('case_id', type=int):
        query = query.filter_by(case_id=request.args.get('case_id', type=int))
    return jsonify([d.to_dict() for d in query.order_by(Document.created_at.desc()).all()])


@app.route('/api/documents', methods=['POST'])
@requires_auth
def api_documents_create():
    firm_id = _firm_id()
    data = request.get_json() or {}
    if not (data.get('name') or '').strip():
        return jsonify({'error': 'name required'}), 400
    try:
        case_id = _firm_ref(Case, firm_id, data.get('case_id'), 'Case')
        document = Document(firm_id=firm_id, case_id=case_id, name=data['name'].strip(),
                            description=data.get('description'), content=data.get('content'),
                            file_type=data.get('file_type') or 'TXT', tags=list(data.get('tags') or []),
                            uploaded_by_id=_user_id())
        db.session.add(document)
        db.session.commit()
        _document_created(document)
        return jsonify({'ok': True, 'id': document.id}), 201
    except Exception as e:
        return _service_error(e, 'api_documents_create')


@app.route('/api/documents/search', methods=['GET'])
@requires_auth
def api_documents_search():
    firm_id = _firm_id()
    query = request.args.get('q') or ''
    if not query.strip():
        return jsonify({'error': 'q required'}), 400
    return jsonify(DocumentSearchManager(firm_id).search_all(query, request.args.get('limit', 20, type=int)))


@app.route('/api/documents/<int:document_id>', methods=['GET'])
@requires_auth
def api_document_detail(document_id):
    document = Document.query.filter_by(firm_id=_firm_id(), id=document_id).first_or_404()
    result = document.to_dict()
    result['content'] = document.content
    return jsonify(result)


@app.route('/api/documents/<int:document_id>', methods=['PATCH'])
@requires_auth
def api_document_update(document_id):
    document = Document.query.filter_by(firm_id=_firm_id(), id=document_id).first_or_404()
    data = request.get_json() or {}
    try:
        if 'case_id' in data:
            document.case_id = _firm_ref(Case, document.firm_id, data['case_id'], 'Case')
        for field in ('name', 'description', 'content'):
            if field in data:
                setattr(document, field, data[field])
        if 'tags' in data:
            document.tags = list(data['tags'] or [])
        db.session.commit()
        return jsonify({'ok': True})
    except Exception as e:
        return _service_error(e, 'api_document_update')


@app.route('/api/documents/upload', methods=['POST'])
@requires_auth
def api_documents_upload():
    firm_id = _firm_id()
    # Expecting multipart/form-data with fields: file, case_id (optional), name (optional)
    if 'file' not in request.files:
        return jsonify({'error': 'No file part'}), 400
    file = request.files['file']
    if file.filename == '':
        return jsonify({'error': 'No selected file'}), 400
    try:
        case_id = _firm_ref(Case, firm_id, request.form.get('case_id', type=int), 'Case')
        saved = document_service.save_document(file.stream, file.filename, firm_id, case_id)
        document = Document(
            firm_id=firm_id,
            case_id=case_id,
            name=request.form.get('name') or saved['original_filename'],
            file_path=saved['file_path'],
            file_type=saved['file_type'],
            file_size=saved['file_size'],
            content=saved['content'],
            description=request.form.get('description'),
            uploaded_by_id=_user_id(),
        )
        db.session.add(document)
        db.session.commit()
        _document_created(document)
        return jsonify({'id': document.id, 'name': document.name}), 201
    except Exception as e:
        return _service_error(e, 'api_documents_upload')


@app.route('/api/calendar', methods=['GET'])
@requires_auth
def api_calendar_list():
    firm_id = _firm_id()
    start = parse_datetime(request.args.get('start')) or datetime.utcnow() - timedelta(days=1)
    end = parse_datetime(request.args.get('end')) or start + timedelta(days=30)
    events = (CalendarEvent.query
              .filter(CalendarEvent.firm_id == firm_id, CalendarEvent.status != 'cancelled',
                      CalendarEvent.start_at >= start, CalendarEvent.start_at <= end)
              .order_by(CalendarEvent.start_at.asc()).all())
    return jsonify([ev.to_dict() for ev in events])


@app.route('/api/calendar', methods=['POST'])
@requires_auth
def api_calendar_create():
    firm_id = _firm_id()
    data = request.get_json() or {}
    try:
        case_id = _firm_ref(Case, firm_id, data.get('case_id'), 'Case')
        client_id = _firm_ref(Client, firm_id, data.get('client_id'), 'Client')
        if data.get('integration_id'):
            integration = _integration(firm_id, data['integration_id'], 'calendar')
            if integration is None:
                return jsonify({'error': 'Calendar integration not found'}), 404
            event = CalendarService(integration).create_event(data, user_id=_user_id())
            return jsonify({'id': event.id, 'external_id': event.external_id}), 201

        title = data.get('title')
        if not (title and isinstance(title, str)):
            return jsonify({'error': 'title required'}), 400
        start_at = parse_datetime(data.get('start_at'))
        if start_at is None:
            return jsonify({'error': 'start_at required'}), 400
        end_at = parse_datetime(data.get('end_at')) or start_at + timedelta(hours=1)
        if end_at < start_at:
            return jsonify({'error': 'end_at must be after start_at'}), 400
        event_type = data.get('event_type') or 'other'
        if event_type not in EVENT_TYPES:
            return jsonify({'error': f"Unsupported event type: {event_type}"}), 400
        event = CalendarEvent(
            firm_id=firm_id,
            title=title,
            description=data.get('description'),
            start_at=start_at,
            end_at=end_at,
            all_day=bool(data.get('all_day')),
            location=data.get('location'),
            event_type=event_type,
            attendees=list(data.get('attendees') or []),
            case_id=case_id,
            client_id=client_id,
            created_by_id=_user_id(),
            reminder_minutes_before=int(data.get('reminder_minutes_before') or 0),
            status='scheduled',
            provider='internal',
        )
        db.session.add(event)
        db.session.commit()
        return jsonify({'id': event.id}), 201
    except Exception as e:
        return _service_error(e, 'api_calendar_create')


# ==================== ADMIN / ONBOARDING / ANALYTICS ====================

@app.route('/api/admin/users', methods=['GET'])
@requires_auth
@requires_permission(CAN_MANAGE_USERS)
def api_admin_users():
    users = list_users(_firm_id(), include_inactive=request.args.get('include_inactive', 'true') == 'true')
    items = []
    for user in users:
        item = user.to_dict()
        item['permissions'] = user_permissions(user)
        items.append(item)
    return jsonify(items)


@app.route('/api/admin/users', methods=['POST'])
@requires_auth
@requires_permission(CAN_MANAGE_USERS)
def api_admin_user_create():
    try:
        user = create_user(_firm_id(), request.get_json() or {}, acting_user_id=_user_id())
        return jsonify({'ok': True, 'id': user.id}), 201
    except Exception as e:
        return _service_error(e, 'api_admin_user_create')


@app.route('/api/admin/users/<int:user_id>', methods=['GET'])
@requires_auth
@requires_permission(CAN_MANAGE_USERS)
def api_admin_user_detail(user_id):
    try:
        user = get_user(_firm_id(), user_id)
    except LookupError:
        abort(404)
    result = user.to_dict()
    result['permissions'] = user_permissions(user)
    return jsonify(result)


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@requires_auth
@requires_permission(CAN_MANAGE_USERS)
def api_admin_user_update(user_id):
    try:
        user = update_user(_firm_id(), user_id, request.get_json() or {}, acting_user_id=_user_id())
        return jsonify({'ok': True, 'user': user.to_dict()})
    except Exception as e:
        return _service_error(e, 'api_admin_user_update')


@app.route('/api/admin/users/<int:user_id>', methods=['DELETE'])
@requires_auth
@requires_permission(CAN_MANAGE_USERS)
def api_admin_user_deactivate(user_id):
    try:
        deactivate_user(_firm_id(), user_id, acting_user_id=_user_id())
        return jsonify({'ok': True})
    except Exception as e:
        return _service_error(e, 'api_admin_user_deactivate')


@app.route('/api/onboarding', methods=['POST'])
@requires_auth
def api_onboarding():
    try:
        result = onboard_firm(request.get_json() or {})
        return jsonify({
            'ok': True,
            'created': result['created'],
            'firm': result['firm'].to_dict(),
            'admin': result['admin'].to_dict() if result['admin'] else None,
        }), 201 if result['created'] else 200
    except Exception as e:
        return _service_error(e, 'api_onboarding')


@app.route('/api/analytics', methods=['GET'])
@requires_auth
def api_analytics():
    firm_id = _firm_id()
    analytics_type = request.args.get('type') or 'overview'
    if analytics_type == 'revenue' and not has_permission(get_acting_user(), CAN_VIEW_FINANCIALS):
        return jsonify({'error': 'Forbidden', 'required_permission': CAN_VIEW_FINANCIALS}), 403
    try:
        return jsonify(analytics_service.get_analytics(firm_id, analytics_type, request.args.get('period') or '30d'))
    except Exception as e:
        return _service_error(e, 'api_analytics')


@app.route('/api/dashboard', methods=['GET'])
@requires_auth
def api_dashboard():
    firm_id = _firm_id()
    try:
        now = datetime.utcnow()
        upcoming = (CalendarEvent.query
                    .filter(CalendarEvent.firm_id == firm_id, CalendarEvent.status != 'cancelled',
                            CalendarEvent.start_at >= now, CalendarEvent.start_at <= now + timedelta(days=7))
                    .order_by(CalendarEvent.start_at.asc()).limit(10).all())
        recent = (Ticket.query.filter_by(firm_id=firm_id)
                  .order_by(Ticket.created_at.desc()).limit(5).all())
        pending_emails = EmailQueue.query.filter_by(firm_id=firm_id, status='pending').count()
        return jsonify({
            'cases': {
                'total': Case.query.filter_by(firm_id=firm_id).count(),
                'open': Case.query.filter(Case.firm_id == firm_id, Case.status != 'closed').count(),
            },
            'clients': Client.query.filter_by(firm_id=firm_id).count(),
            'documents': Document.query.filter_by(firm_id=firm_id).count(),
            'tickets': ticket_manager.get_ticket_stats(firm_id),
            'recent_tickets': [
                dict(t.to_dict(), age=time_ago(t.created_at, now)) for t in recent
            ],
            'upcoming_events': [
                dict(ev.to_dict(), when=format_date(ev.start_at, '%a %b %d, %I:%M %p')) for ev in upcoming
            ],
            'pending_emails': pending_emails,
            'pending_emails_label': pluralize(pending_emails, 'pending email'),
            'integrations': {
                'total': Integration.query.filter_by(firm_id=firm_id).count(),
                'connected': Integration.query.filter_by(firm_id=firm_id, status='connected').count(),
            },
        })
    except Exception as e:
        return _service_error(e, 'api_dashboard')


# Error handlers
@app.errorhandler(404)
def not_found_error(error):
    return jsonify({'error': 'Resource not found'}), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({'error': 'An internal error occurred'}), 500


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000, debug=True)
