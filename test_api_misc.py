import io
from datetime import datetime

from models import db, AuditLog, Case, Client, EmailQueue, EmailTemplate, Invoice, Ticket, WorkflowExecution
from services.onboarding import create_user, onboard_firm


def _client(client, headers, **data):
    data.setdefault('first_name', 'Ann')
    data.setdefault('last_name', 'Lee')
    res = client.post('/api/clients', json=data, headers=headers)
    assert res.status_code == 201
    return res.get_json()['id']


def test_session(client, auth_headers):
    body = client.get('/api/session', headers=auth_headers).get_json()
    assert body['firm']['name'] == 'Hale & Partners'
    assert body['user']['email'] == 'admin@hale.test'
    assert 'can_manage_users' in body['permissions']


def test_billing_webhook_health_needs_no_auth(client):
    res = client.get('/api/webhooks/billing')
    assert res.status_code == 200
    assert res.get_json()['status'] == 'ok'
    assert client.post('/api/webhooks/billing', json={}).status_code == 401


def test_billing_webhook_requires_provider(client, auth_headers):
    res = client.post('/api/webhooks/billing', json={'event_type': 'invoice.created'}, headers=auth_headers)
    assert res.status_code == 400


def test_clients_and_case_creation_runs_welcome_workflow(client, auth_headers, firm):
    assert client.post('/api/clients', json={'first_name': 'Ann'}, headers=auth_headers).status_code == 400
    client_id = _client(client, auth_headers, email='ann@lee.test')

    res = client.post('/api/cases', json={'title': 'Lease dispute', 'client_id': client_id}, headers=auth_headers)
    assert res.status_code == 201
    assert res.get_json()['workflows_run'] == 1
    queued = EmailQueue.query.filter_by(firm_id=firm.id).one()
    assert queued.to == 'ann@lee.test'
    assert queued.status == 'pending'
    assert WorkflowExecution.query.filter_by(firm_id=firm.id, status='completed').count() == 1
    assert AuditLog.query.filter_by(firm_id=firm.id, event_type='case_created').count() == 1

    detail = client.get(f'/api/clients/{client_id}', headers=auth_headers).get_json()
    assert [c['title'] for c in detail['cases']] == ['Lease dispute']

    assert client.patch(f'/api/clients/{client_id}', json={'phone': '0123'}, headers=auth_headers).status_code == 200
    assert client.post('/api/cases', json={'title': 'Ghost', 'client_id': 999},
                       headers=auth_headers).status_code == 404
    assert client.post('/api/cases', json={'title': ' '}, headers=auth_headers).status_code == 400


def test_cases_pagination_and_update(client, auth_headers):
    ids = [client.post('/api/cases', json={'title': f'Matter {n}'}, headers=auth_headers).get_json()['id']
           for n in range(3)]

    page = client.get('/api/cases?per_page=2&page=2', headers=auth_headers).get_json()
    assert page['total'] == 3
    assert page['pages'] == 2
    assert len(page['items']) == 1

    bad = client.patch(f'/api/cases/{ids[0]}', json={'status': 'archived'}, headers=auth_headers)
    assert bad.status_code == 400

    res = client.patch(f'/api/cases/{ids[0]}', json={'status': 'closed', 'priority': 'high'}, headers=auth_headers)
    assert res.get_json()['changes'] == ['priority', 'status']
    assert db.session.get(Case, ids[0]).closed_at is not None

    searched = client.get('/api/cases?search=Matter%201', headers=auth_headers).get_json()
    assert [c['id'] for c in searched['items']] == [ids[1]]
    assert client.get('/api/cases/9999', headers=auth_headers).status_code == 404


def test_other_firm_records_are_not_reachable(client, auth_headers, firm):
    other = onboard_firm({'firm_name': 'Reed LLP', 'admin_email': 'boss@reed.test'})
    their_client = Client(firm_id=other['firm'].id, first_name='Tom', last_name='Reed')
    their_case = Case(firm_id=other['firm'].id, title='Reed v Crown')
    db.session.add_all([their_client, their_case])
    db.session.commit()

    own_case = client.post('/api/cases', json={'title': 'Lease dispute'}, headers=auth_headers).get_json()['id']
    db.session.add(Ticket(firm_id=other['firm'].id, ticket_number='TKT-2020-00001', title='Leaked',
                          case_id=own_case))
    db.session.commit()
    assert client.get(f'/api/cases/{own_case}', headers=auth_headers).get_json()['tickets'] == []

    their_admin = other['admin'].id
    assert client.post('/api/cases', json={'title': 'Ghost', 'assigned_to_id': their_admin},
                       headers=auth_headers).status_code == 404
    assert client.patch(f'/api/cases/{own_case}', json={'assigned_to_id': their_admin},
                        headers=auth_headers).status_code == 404
    assert client.post('/api/documents', json={'name': 'Brief', 'case_id': their_case.id},
                       headers=auth_headers).status_code == 404
    assert client.post('/api/calendar', json={'title': 'Hearing', 'start_at': '2030-01-01T10:00:00',
                                              'client_id': their_client.id}, headers=auth_headers).status_code == 404
    assert client.post('/api/invoices', json={'client_id': their_client.id, 'amount': 100},
                       headers=auth_headers).status_code == 404
    assert client.post('/api/tickets', json={'title': 'Chase', 'case_id': their_case.id},
                       headers=auth_headers).status_code == 400
    assert Case.query.filter_by(firm_id=firm.id).count() == 1
    assert db.session.get(Case, own_case).assigned_to_id is None


def test_permissions_follow_role(client, auth_headers, firm):
    paralegal = create_user(firm.id, {'email': 'pat@hale.test', 'first_name': 'Pat', 'last_name': 'Kerr',
                                      'role': 'paralegal', 'department': 'Practice-Support'})
    headers = dict(auth_headers, **{'X-User-Id': str(paralegal.id)})

    res = client.get('/api/invoices', headers=headers)
    assert res.status_code == 403
    assert res.get_json()['required_permission'] == 'can_view_financials'
    assert client.get('/api/admin/users', headers=headers).status_code == 403
    assert client.get('/api/analytics?type=revenue', headers=headers).status_code == 403
    assert client.put('/api/ai', json={'preferred_provider': 'openai'}, headers=headers).status_code == 403
    assert client.post('/api/integrations', json={'name': 'X', 'type': 'billing', 'provider': 'xero'},
                       headers=headers).status_code == 403
    assert client.post('/api/cases', json={'title': 'Paralegal matter'}, headers=headers).status_code == 201


def test_invoice_and_payment(client, auth_headers, firm):
    client_id = _client(client, auth_headers)
    assert client.post('/api/invoices', json={'amount': 0}, headers=auth_headers).status_code == 400

    res = client.post('/api/invoices', json={'client_id': client_id, 'amount': 800, 'tax_amount': 200},
                      headers=auth_headers)
    assert res.status_code == 201
    invoice = res.get_json()['invoice']
    assert invoice['invoice_number'] == f"INV-{datetime.utcnow().year}-0001"
    assert invoice['total_amount'] == 1000.0

    bad = client.post(f"/api/invoices/{invoice['id']}/payments", json={'amount': -5}, headers=auth_headers)
    assert bad.status_code == 400
    paid = client.post(f"/api/invoices/{invoice['id']}/payments", json={'amount': 1000}, headers=auth_headers)
    assert paid.get_json()['invoice']['status'] == 'paid'
    assert db.session.get(Invoice, invoice['id']).paid_at is not None

    listed = client.get('/api/invoices?status=paid', headers=auth_headers).get_json()
    assert [i['id'] for i in listed] == [invoice['id']]

    revenue = client.get('/api/analytics?type=revenue', headers=auth_headers).get_json()
    assert revenue['collected'] == 1000.0
    assert revenue['period'] == '30d'


def test_invoice_numbers_follow_highest_suffix(client, auth_headers, firm):
    year = datetime.utcnow().year
    db.session.add(Invoice(firm_id=firm.id, invoice_number=f"INV-{year}-0005", total_amount=10.0))
    db.session.commit()

    res = client.post('/api/invoices', json={'amount': 250}, headers=auth_headers)
    assert res.get_json()['invoice']['invoice_number'] == f"INV-{year}-0006"
    duplicate = client.post('/api/invoices', json={'amount': 250, 'invoice_number': f"INV-{year}-0005"},
                            headers=auth_headers)
    assert duplicate.status_code == 400
    assert Invoice.query.filter_by(firm_id=firm.id).count() == 2


def test_integrations_lifecycle(client, auth_headers):
    bad = client.post('/api/integrations', json={'name': 'X', 'type': 'billing', 'provider': 'sage'},
                      headers=auth_headers)
    assert bad.status_code == 400

    res = client.post('/api/integrations', json={'name': 'Westlaw', 'type': 'legal_research',
                                                 'provider': 'westlaw'}, headers=auth_headers)
    assert res.status_code == 201
    integration_id = res.get_json()['id']

    tested = client.post('/api/integrations', json={'action': 'test_connection', 'id': integration_id},
                         headers=auth_headers).get_json()
    assert tested['connected'] is False
    assert tested['status'] == 'error'
    sync = client.post('/api/integrations', json={'action': 'sync', 'id': integration_id}, headers=auth_headers)
    assert sync.status_code == 400

    updated = client.put('/api/integrations', json={'id': integration_id, 'credentials': {'api_key': 'k'}},
                         headers=auth_headers).get_json()
    assert updated['integration']['status'] == 'pending'
    tested = client.post('/api/integrations', json={'action': 'test_connection', 'id': integration_id},
                         headers=auth_headers).get_json()
    assert tested['connected'] is True

    listed = client.get('/api/integrations', headers=auth_headers).get_json()
    assert [i['name'] for i in listed['integrations']] == ['Westlaw']
    assert 'westlaw' in listed['providers']['legal_research']

    assert client.delete(f'/api/integrations?id={integration_id}', headers=auth_headers).status_code == 200
    assert client.delete(f'/api/integrations?id={integration_id}', headers=auth_headers).status_code == 404


def test_legal_research_endpoint(client, auth_headers):
    assert client.post('/api/legal-research', json={'query': 'negligence'}, headers=auth_headers).status_code == 404
    client.post('/api/integrations', json={'name': 'Westlaw', 'type': 'legal_research', 'provider': 'westlaw',
                                           'credentials': {'api_key': 'k'}}, headers=auth_headers)

    assert client.post('/api/legal-research', json={'query': ' '}, headers=auth_headers).status_code == 400
    found = client.post('/api/legal-research', json={'query': 'contract interpretation'},
                        headers=auth_headers).get_json()
    assert found['provider'] == 'westlaw'
    assert found['results'][0]['id'] == 'case_1'

    details = client.post('/api/legal-research', json={'action': 'details', 'identifier': '123 N.Y.2d 456 (2023)'},
                          headers=auth_headers)
    assert details.get_json()['judge'] == 'Judge Williams'


def test_court_filing_and_receipt(client, auth_headers):
    assert client.post('/api/court-filings', json={'integration_id': 99}, headers=auth_headers).status_code == 404
    integration_id = client.post('/api/integrations', json={
        'name': 'PACER', 'type': 'court_filing', 'provider': 'cmecf',
        'credentials': {'username': 'u', 'password': 'p'}}, headers=auth_headers).get_json()['id']

    res = client.post('/api/court-filings', json={
        'integration_id': integration_id,
        'filing_type': 'Motion to Dismiss',
        'case_number': '1:24-CV-00123',
        'documents': [{'name': 'motion.pdf', 'type': 'motion'}],
        'fees': {'amount': 250},
    }, headers=auth_headers)
    assert res.status_code == 201
    filing_id = res.get_json()['id']

    receipt = client.get(f'/api/court-filings/{filing_id}/receipt', headers=auth_headers)
    assert receipt.mimetype == 'text/plain'
    assert 'Case Number: 1:24-cv-00123' in receipt.get_data(as_text=True)

    docket = client.post('/api/court-filings', json={'integration_id': integration_id, 'action': 'docket'},
                         headers=auth_headers)
    assert docket.status_code == 400
    assert len(client.get('/api/court-filings', headers=auth_headers).get_json()) == 1


def test_workflow_endpoints(client, auth_headers):
    rules = client.get('/api/workflows', headers=auth_headers).get_json()
    assert [r['name'] for r in rules] == ['New Case Welcome Email']

    bad = client.post('/api/workflows', json={'action': 'create_rule', 'name': 'X', 'trigger_type': 'whenever',
                                              'actions': []}, headers=auth_headers)
    assert bad.status_code == 400

    res = client.post('/api/workflows', json={'action': 'create_rule', 'rule': {
        'name': 'Notify on custom event', 'trigger_type': 'custom_event',
        'conditions': [{'field': 'kind', 'operator': 'equals', 'value': 'ping'}],
        'actions': [{'type': 'send_notification', 'config': {'message': 'pong'}}],
    }}, headers=auth_headers)
    assert res.status_code == 201
    rule_id = res.get_json()['id']

    dry = client.post('/api/workflows', json={'action': 'test_workflow', 'rule_id': rule_id,
                                              'sample_data': {'kind': 'ping'}}, headers=auth_headers).get_json()
    assert dry['conditions_met'] is True

    fired = client.post('/api/workflows', json={'action': 'trigger_workflow', 'event_type': 'custom_event',
                                                'event_data': {'kind': 'ping'}}, headers=auth_headers).get_json()
    assert [e['status'] for e in fired['executions']] == ['completed']
    executions = client.get(f'/api/workflows?type=executions&rule_id={rule_id}', headers=auth_headers).get_json()
    assert len(executions) == 1

    doc = client.post('/api/workflows', json={'action': 'generate_document', 'template_key': 'engagement_letter',
                                              'data': {'client': {'name': 'Ann Lee'}}}, headers=auth_headers)
    assert doc.status_code == 201
    assert 'Ann Lee' in doc.get_json()['content']

    assert client.put('/api/workflows', json={'enabled': False}, headers=auth_headers).status_code == 400
    updated = client.put('/api/workflows', json={'id': rule_id, 'enabled': False}, headers=auth_headers)
    assert updated.get_json()['rule']['enabled'] is False
    assert client.delete(f'/api/workflows?id={rule_id}', headers=auth_headers).status_code == 200
    assert client.get('/api/workflows?type=nonsense', headers=auth_headers).status_code == 400


def test_email_templates_soft_delete(client, auth_headers, firm):
    res = client.post('/api/templates/email', json={
        'name': 'Hearing notice', 'trigger_type': 'deadline_reminder',
        'subject': 'Hearing on {{hearing_date}}', 'body': 'Dear {{client_name}}, see you in court.'},
        headers=auth_headers)
    assert res.status_code == 201
    template_id = res.get_json()['id']

    rendered = client.post(f'/api/templates/email/{template_id}/render',
                           json={'variables': {'hearing_date': 'May 1', 'client_name': 'Ann'}},
                           headers=auth_headers).get_json()
    assert rendered['subject'] == 'Hearing on May 1'
    assert rendered['missing_variables'] == []

    assert client.delete(f'/api/templates/email/{template_id}', headers=auth_headers).status_code == 200
    assert db.session.get(EmailTemplate, template_id).is_active is False
    assert client.put('/api/templates/email/9999', json={'name': 'x'}, headers=auth_headers).status_code == 404
    assert client.post('/api/templates/email', json={'name': 'No body'}, headers=auth_headers).status_code == 400


def test_document_templates_and_automations(client, auth_headers):
    res = client.post('/api/templates/document', json={'name': 'Demand letter', 'category': 'letter',
                                                       'content': 'To {{debtor}}: pay now.'}, headers=auth_headers)
    template_id = res.get_json()['id']
    rendered = client.post(f'/api/templates/document/{template_id}/render', json={'variables': {'debtor': 'Acme'}},
                           headers=auth_headers).get_json()
    assert rendered['content'] == 'To Acme: pay now.'

    bad = client.post('/api/automations/calendar', json={'name': 'Oops', 'automation_type': 'deadline_tracking',
                                                         'schedule_pattern': 'whenever'}, headers=auth_headers)
    assert bad.status_code == 400
    res = client.post('/api/automations/calendar', json={
        'name': 'Deadline sweep', 'automation_type': 'deadline_tracking', 'schedule_pattern': 'daily_at_9am',
        'recipients': ['ops@hale.test']}, headers=auth_headers)
    assert res.status_code == 201
    automation_id = res.get_json()['id']

    run = client.post(f'/api/automations/calendar/{automation_id}/run', headers=auth_headers)
    assert run.status_code == 200
    assert client.delete(f'/api/automations/calendar/{automation_id}', headers=auth_headers).status_code == 200
    items = client.get('/api/automations/calendar?automation_type=deadline_tracking', headers=auth_headers).get_json()
    assert [a['is_active'] for a in items if a['id'] == automation_id] == [False]


def test_documents(client, auth_headers):
    assert client.post('/api/documents', json={'name': ' '}, headers=auth_headers).status_code == 400
    res = client.post('/api/documents', json={'name': 'Lease - 4 Mill Lane',
                                              'content': 'The tenant must give two months notice.'},
                      headers=auth_headers)
    assert res.status_code == 201
    document_id = res.get_json()['id']

    assert client.get('/api/documents/search', headers=auth_headers).status_code == 400
    found = client.get('/api/documents/search?q=notice', headers=auth_headers).get_json()
    assert [d['id'] for d in found['results']] == [document_id]
    assert 'notice' in found['results'][0]['excerpt']

    client.patch(f'/api/documents/{document_id}', json={'tags': ['lease']}, headers=auth_headers)
    detail = client.get(f'/api/documents/{document_id}', headers=auth_headers).get_json()
    assert detail['tags'] == ['lease']
    assert detail['content'].startswith('The tenant')

    upload = client.post('/api/documents/upload', headers=auth_headers, content_type='multipart/form-data',
                         data={'file': (io.BytesIO(b'Witness statement of J. Smith'), 'statement.txt')})
    assert upload.status_code == 201
    assert upload.get_json()['name'] == 'statement.txt'
    assert client.post('/api/documents/upload', headers=auth_headers, data={}).status_code == 400

    analysis = client.post('/api/ai', json={'action': 'analyze_document', 'document_id': document_id},
                           headers=auth_headers)
    assert analysis.status_code == 201
    stats = client.get('/api/ai?type=stats', headers=auth_headers).get_json()
    assert stats['total_analyses'] == 1


def test_calendar_local_events(client, auth_headers):
    assert client.post('/api/calendar', json={'start_at': '2030-01-01T10:00:00'},
                       headers=auth_headers).status_code == 400
    assert client.post('/api/calendar', json={'title': 'Hearing'}, headers=auth_headers).status_code == 400
    bad_type = client.post('/api/calendar', json={'title': 'Party', 'start_at': '2030-01-01T10:00:00',
                                                  'event_type': 'party'}, headers=auth_headers)
    assert bad_type.status_code == 400

    res = client.post('/api/calendar', json={'title': 'Directions hearing', 'start_at': '2030-01-01T10:00:00',
                                             'event_type': 'hearing'}, headers=auth_headers)
    assert res.status_code == 201
    events = client.get('/api/calendar?start=2029-12-31T00:00:00', headers=auth_headers).get_json()
    assert [(e['title'], e['provider']) for e in events] == [('Directions hearing', 'internal')]


def test_platforms(client, auth_headers):
    status = client.get('/api/platforms', headers=auth_headers).get_json()
    assert status['connected'] == []
    assert client.post('/api/platforms', json={'action': 'connect', 'platform': 'myspace'},
                       headers=auth_headers).status_code == 400
    assert client.post('/api/platforms', json={'action': 'disconnect', 'platform': 'slack'},
                       headers=auth_headers).status_code == 404
    assert client.post('/api/platforms', json={'action': 'search'}, headers=auth_headers).status_code == 400


def test_admin_users(client, auth_headers):
    res = client.post('/api/admin/users', json={'email': 'sam@hale.test', 'first_name': 'Sam', 'last_name': 'Reed',
                                                'role': 'associate', 'department': 'Fee-Earning'},
                      headers=auth_headers)
    assert res.status_code == 201
    user_id = res.get_json()['id']

    detail = client.get(f'/api/admin/users/{user_id}', headers=auth_headers).get_json()
    assert detail['permissions'] == ['can_create_cases', 'can_view_all_cases']

    updated = client.put(f'/api/admin/users/{user_id}', json={'role': 'partner'}, headers=auth_headers)
    assert updated.get_json()['user']['role'] == 'partner'
    assert client.put(f'/api/admin/users/{user_id}', json={'role': 'wizard'},
                      headers=auth_headers).status_code == 400

    assert client.delete(f'/api/admin/users/{user_id}', headers=auth_headers).status_code == 200
    users = client.get('/api/admin/users', headers=auth_headers).get_json()
    assert {u['email']: u['is_active'] for u in users}['sam@hale.test'] is False
    assert client.get('/api/admin/users/9999', headers=auth_headers).status_code == 404


def test_onboarding_is_idempotent(client, auth_headers):
    again = client.post('/api/onboarding', json={'firm_name': 'Hale & Partners', 'slug': 'hale-partners'},
                        headers=auth_headers)
    assert again.status_code == 200
    assert again.get_json()['created'] is False

    new = client.post('/api/onboarding', json={'firm_name': 'Reed LLP', 'admin_email': 'boss@reed.test'},
                      headers=auth_headers)
    assert new.status_code == 201
    assert new.get_json()['firm']['slug'] == 'reed-llp'
    assert client.post('/api/onboarding', json={}, headers=auth_headers).status_code == 400


def test_analytics_and_dashboard(client, auth_headers):
    client.post('/api/cases', json={'title': 'Lease dispute'}, headers=auth_headers)
    client.post('/api/tickets', json={'title': 'Draft defence'}, headers=auth_headers)

    overview = client.get('/api/analytics', headers=auth_headers).get_json()
    assert overview['overview']['total_cases'] == 1
    assert overview['period'] == '30d'
    assert client.get('/api/analytics?type=weather', headers=auth_headers).status_code == 400

    dashboard = client.get('/api/dashboard', headers=auth_headers).get_json()
    assert dashboard['cases'] == {'total': 1, 'open': 1}
    assert dashboard['tickets']['total'] == 1
    assert dashboard['recent_tickets'][0]['title'] == 'Draft defence'
    assert dashboard['pending_emails'] == 0
    assert dashboard['pending_emails_label'] == '0 pending emails'
