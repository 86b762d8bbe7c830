from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from models import db, Case, Document, DocumentTemplate, EmailQueue, Ticket, WorkflowExecution
from services.workflow_engine import (WorkflowEngine, WorkflowError, evaluate_condition, evaluate_conditions,
                                      workflow_engine)


def _case(firm, **fields):
    case = Case(firm_id=firm.id, title=fields.pop('title', 'Lease dispute'), **fields)
    db.session.add(case)
    db.session.commit()
    return case


def _event(case):
    return {
        'case': {'id': case.id, 'title': case.title, 'status': case.status, 'priority': case.priority},
        'client': {'name': 'Ann Lee', 'email': 'ann@lee.test', 'address': '1 High St'},
        'firm': {'name': 'Hale & Partners'},
        'attorney': {'name': 'Ada Hale'},
    }


def _rule(firm, actions, **data):
    data.setdefault('name', 'Test rule')
    data.setdefault('trigger_type', 'custom_event')
    return workflow_engine.create_rule(firm.id, dict(data, actions=actions))


def test_condition_operators():
    data = {'case': {'priority': 'high', 'amount': '250', 'tags': 'urgent,court'}}
    assert evaluate_condition({'field': 'case.priority', 'operator': 'equals', 'value': 'high'}, data)
    assert evaluate_condition({'field': 'case.tags', 'operator': 'contains', 'value': 'court'}, data)
    assert evaluate_condition({'field': 'case.amount', 'operator': 'greater_than', 'value': 100}, data)
    assert not evaluate_condition({'field': 'case.priority', 'operator': 'greater_than', 'value': 1}, data)
    assert evaluate_condition({'field': 'case.priority', 'operator': 'in', 'value': ['high', 'critical']}, data)
    assert evaluate_condition({'field': 'case.owner', 'operator': 'not_exists'}, data)
    assert not evaluate_condition({'field': 'case.priority', 'operator': 'shouting'}, data)


def test_conditions_fold_left_to_right():
    data = {'case': {'priority': 'low', 'status': 'closed'}}
    conditions = [
        {'field': 'case.priority', 'operator': 'equals', 'value': 'high', 'logical': 'OR'},
        {'field': 'case.status', 'operator': 'equals', 'value': 'closed'},
    ]
    assert evaluate_conditions(conditions, data) is True
    conditions[0]['logical'] = 'AND'
    assert evaluate_conditions(conditions, data) is False
    assert evaluate_conditions([], data) is True


def test_rule_validation(firm):
    with pytest.raises(WorkflowError) as exc:
        workflow_engine.create_rule(firm.id, {'name': '', 'trigger_type': 'whenever', 'actions': []})
    assert 'name required' in str(exc.value)
    assert 'valid trigger_type required' in str(exc.value)
    with pytest.raises(WorkflowError):
        _rule(firm, [{'type': 'fax'}])
    with pytest.raises(WorkflowError):
        _rule(firm, [{'type': 'send_notification'}], conditions=[{'field': 'x', 'operator': 'roughly'}])


def test_default_welcome_rule_queues_templated_email(firm):
    case = _case(firm)
    executions = workflow_engine.trigger_workflows(firm.id, 'case_created', _event(case))
    assert [e.status for e in executions] == ['completed']
    email = EmailQueue.query.filter_by(firm_id=firm.id, source='workflow').one()
    assert email.to == 'ann@lee.test'
    assert email.subject == 'Welcome to Hale & Partners - Your Case: Lease dispute'
    assert email.case_id == case.id


def test_missing_recipient_fails_execution(firm):
    case = _case(firm)
    data = _event(case)
    del data['client']
    execution = workflow_engine.trigger_workflows(firm.id, 'case_created', data)[0]
    assert execution.status == 'failed'
    assert execution.error_message == 'send_email has no recipient'
    assert execution.execution_log[0]['status'] == 'failed'


def test_failed_action_stops_later_actions(firm):
    case = _case(firm)
    rule = _rule(firm, [
        {'type': 'run_script', 'config': {'script_name': 'not_registered'}},
        {'type': 'create_task', 'config': {'title': 'Never created'}},
    ])
    execution = workflow_engine.execute_workflow(rule, _event(case))
    assert execution.status == 'failed'
    assert len(execution.execution_log) == 1
    assert Ticket.query.count() == 0


def test_email_delay_sets_send_after(firm):
    case = _case(firm)
    rule = _rule(firm, [{'type': 'send_email', 'delay': 3600,
                         'config': {'to': '{{client.email}}', 'subject': 'Chaser', 'body': 'Hello'}}])
    before = datetime.utcnow()
    workflow_engine.execute_workflow(rule, _event(case))
    email = EmailQueue.query.filter_by(subject='Chaser').one()
    assert email.send_after >= before + timedelta(minutes=59)


def test_case_task_and_document_actions(firm):
    case = _case(firm)
    rule = _rule(firm, [
        {'type': 'update_case', 'config': {'updates': {'status': 'closed', 'title': 'ignored'}}},
        {'type': 'create_task', 'config': {'title': 'Close file for {{case.title}}', 'priority': 'low'}},
        {'type': 'generate_document', 'config': {'template_key': 'engagement_letter'}},
        {'type': 'create_calendar_event', 'config': {'title': 'File review', 'days_from_now': 2}},
        {'type': 'send_notification', 'config': {'message': 'done'}},
    ])
    execution = workflow_engine.execute_workflow(rule, _event(case))
    assert execution.status == 'completed'
    assert case.status == 'closed'
    assert case.closed_at is not None
    assert case.title == 'Lease dispute'

    ticket = Ticket.query.filter_by(case_id=case.id).one()
    assert ticket.title == 'Close file for Lease dispute'
    assert ticket.tags == ['workflow']

    document = Document.query.filter_by(case_id=case.id).one()
    assert 'Dear Ann Lee,' in document.content
    assert 'Sincerely,\nAda Hale' in document.content
    assert DocumentTemplate.query.filter_by(key='engagement_letter').one().usage_count == 1
    assert execution.execution_log[3]['result']['title'] == 'File review'


def test_registered_script_runs(firm):
    case = _case(firm)
    engine = WorkflowEngine(scripts={'echo': lambda data, config: data['case']['title']})
    rule = _rule(firm, [{'type': 'run_script', 'config': {'script_name': 'echo'}}])
    execution = engine.execute_workflow(rule, _event(case))
    assert execution.execution_log[0]['result'] == {'executed': True, 'script': 'echo', 'result': 'Lease dispute'}


@patch('services.workflow_engine.requests.request')
def test_webhook_action(mock_request, firm):
    mock_request.return_value = Mock(status_code=202)
    case = _case(firm)
    rule = _rule(firm, [{'type': 'webhook', 'config': {'url': 'https://hooks.example.test/case'}}])
    execution = workflow_engine.execute_workflow(rule, _event(case))
    assert execution.execution_log[0]['result'] == {'called': True, 'status': 202}
    assert mock_request.call_args.args == ('POST', 'https://hooks.example.test/case')


def test_trigger_skips_disabled_and_unmatched_rules(firm):
    case = _case(firm, priority='high')
    _rule(firm, [{'type': 'send_notification', 'config': {}}], name='Disabled', enabled=False)
    _rule(firm, [{'type': 'send_notification', 'config': {}}], name='Low only',
          conditions=[{'field': 'case.priority', 'operator': 'equals', 'value': 'low'}])
    matched = _rule(firm, [{'type': 'send_notification', 'config': {}}], name='High only',
                    conditions=[{'field': 'case.priority', 'operator': 'equals', 'value': 'high'}])
    executions = workflow_engine.trigger_workflows(firm.id, 'custom_event', _event(case))
    assert [e.rule_id for e in executions] == [matched.id]
    with pytest.raises(WorkflowError):
        workflow_engine.trigger_workflows(firm.id, 'solar_eclipse', {})


def test_dry_run_has_no_side_effects(firm):
    rule = _rule(firm, [{'type': 'send_email', 'config': {'to': '{{client.email}}', 'subject': 'Hi {{client.name}}'}}])
    preview = workflow_engine.test_workflow(rule, {'client': {'name': 'Ann', 'email': 'ann@lee.test'}})
    assert preview['conditions_met'] is True
    assert preview['actions'][0]['config'] == {'to': 'ann@lee.test', 'subject': 'Hi Ann'}
    assert EmailQueue.query.count() == 0


def test_update_and_delete_rule(firm):
    rule = _rule(firm, [{'type': 'send_notification', 'config': {}}])
    workflow_engine.update_rule(firm.id, rule.id, {'enabled': False, 'priority': 5})
    assert rule.enabled is False
    with pytest.raises(WorkflowError):
        workflow_engine.update_rule(firm.id, rule.id, {'actions': []})

    execution = workflow_engine.execute_workflow(rule, {})
    workflow_engine.delete_rule(firm.id, rule.id)
    assert db.session.get(WorkflowExecution, execution.id).rule_id is None
    with pytest.raises(LookupError):
        workflow_engine.get_rule(firm.id, rule.id)
