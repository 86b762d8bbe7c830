from unittest.mock import Mock

import pytest

from models import db, AgentConversation, AgentMessage, Document
from services.agent import (IntelligentAgent, analyze_query_intent, extract_information, extract_questions,
                            intelligent_agent)

CUSTODY_EMAIL = {
    'from': '"Jane Doe" <jane@example.com>',
    'subject': 'Urgent: custody hearing next week',
    'body': 'My ex-partner has applied for custody and the hearing is next Tuesday. What should I do?',
}


def test_intent_rules():
    assert analyze_query_intent('Please draft an email to the client') == {'intent': 'email_assistance',
                                                                          'confidence': 0.9}
    assert analyze_query_intent('What are our chances to win this case?')['intent'] == 'case_analysis'
    assert analyze_query_intent('What does the law say on notice periods')['intent'] == 'legal_research'
    assert analyze_query_intent('find the lease') == {'intent': 'document_search', 'confidence': 0.7}


def test_extract_information():
    info = extract_information('Client Smith case ABC123 on 2024-01-15 about employment in England')
    assert info['mentioned_clients'] == ['Smith']
    assert info['mentioned_cases'] == ['ABC123']
    assert info['mentioned_dates'] == ['2024-01-15']
    assert info['legal_areas'] == ['employment']
    assert info['jurisdictions'] == ['england']


def test_extract_questions_strips_numbering():
    text = "A few questions:\n1. Who is the client?\n2. When was the contract signed?"
    assert extract_questions(text) == ['Who is the client?', 'When was the contract signed?']


def test_readiness_stops_asking_after_two_rounds():
    conversation = AgentConversation(required_info=['topic', 'context'], gathered_info={}, follow_up_rounds=0)
    assert intelligent_agent.assess_readiness(conversation)['needs_more_info'] is True
    assert intelligent_agent.assess_readiness(conversation, force=True)['ready_to_respond'] is True
    conversation.follow_up_rounds = 2
    assert intelligent_agent.assess_readiness(conversation)['needs_more_info'] is False


def test_follow_up_then_full_answer(firm, admin):
    db.session.add(Document(firm_id=firm.id, name='Lease - 4 Mill Lane', content='The lease runs for five years.'))
    db.session.commit()

    first = intelligent_agent.process_query(firm.id, admin.id, 'Find the lease')
    assert first['needs_more_info'] is True
    assert first['follow_up_questions'] == ['What date range should I search?']
    conversation = db.session.get(AgentConversation, first['conversation_id'])
    assert conversation.stage == 'gathering_info'
    assert conversation.follow_up_rounds == 1

    second = intelligent_agent.process_query(firm.id, admin.id, 'the lease from 2023-01-01',
                                             {'conversation_id': first['conversation_id']})
    assert second['needs_more_info'] is False
    assert second['conversation_id'] == first['conversation_id']
    search = next(a for a in second['actions_taken'] if a['type'] == 'document_search')
    assert search['result']['internal_documents'] == ['Lease - 4 Mill Lane']
    assert 'Cross-Platform Analysis' in second['content']
    assert second['context']['confidence_score'] == 0.5

    assert conversation.stage == 'completed'
    assert conversation.topic is None
    assert AgentMessage.query.filter_by(conversation_id=conversation.id).count() == 4


def test_force_response_skips_follow_up(firm, admin):
    result = intelligent_agent.process_query(firm.id, admin.id, 'Any precedent on repudiation?',
                                             {'force_response': True})
    assert result['needs_more_info'] is False
    research = next(a for a in result['actions_taken'] if a['type'] == 'legal_research')
    assert research['result'][0]['case_name'] == 'Smith v Jones [2023] EWCA Civ 123'


def test_query_validation(firm, admin):
    with pytest.raises(ValueError):
        intelligent_agent.process_query(firm.id, admin.id, '   ')
    with pytest.raises(LookupError):
        intelligent_agent.process_query(firm.id, admin.id, 'hello', {'conversation_id': 999})


def test_provider_failure_returns_apology(firm, admin):
    ai = Mock()
    ai.process_legal_query.side_effect = RuntimeError('provider down')
    agent = IntelligentAgent(ai=ai)
    result = agent.process_query(firm.id, admin.id, 'Summarise the lease', {'force_response': True})
    assert result['context'] == {'confidence_score': 0}
    assert result['content'].startswith('I apologize')
    roles = [m.role for m in AgentMessage.query.filter_by(conversation_id=result['conversation_id'])]
    assert roles == ['user']


def test_failed_ticket_action_keeps_conversation(firm, admin):
    result = intelligent_agent.process_query(firm.id, admin.id, 'What is the priority here?',
                                             {'ticket_id': 9999, 'force_response': True})
    assert result['needs_more_info'] is False
    assert db.session.get(AgentConversation, result['conversation_id']) is not None
    roles = sorted(m.role for m in AgentMessage.query.filter_by(conversation_id=result['conversation_id']))
    assert roles == ['agent', 'user']


def test_email_draft_falls_back_without_ai(firm):
    draft = intelligent_agent.draft_email_response(firm.id, {'original_email': CUSTODY_EMAIL})
    assert draft['subject'] == 'Re: Urgent: custody hearing next week'
    assert draft['body'].startswith('Dear Jane Doe,')
    assert draft['confidence_score'] == 0.85
    assert draft['requires_review'] is True
    assert draft['estimated_review_time'] == 15
    assert draft['draft_reasoning'] == 'Generated using fallback template (AI unavailable)'
    assert draft['legal_accuracy_check']['passed'] is True


def test_email_draft_flags_overpromising(firm):
    ai = Mock()
    ai.draft_legal_email.return_value = {
        'content': 'We guarantee you will keep custody. Please book a consultation.',
        'provider': 'openai',
        'confidence': 0.9,
    }
    draft = IntelligentAgent(ai=ai).draft_email_response(firm.id, {'original_email': CUSTODY_EMAIL})
    check = draft['legal_accuracy_check']
    assert check['passed'] is False
    assert check['warnings'] == ["Avoid promising outcomes ('guarantee')"]
    assert draft['requires_review'] is True
    assert draft['draft_reasoning'] == 'Generated using openai AI with 90% confidence'


def test_incoming_email_triage(firm):
    result = intelligent_agent.process_incoming_email(firm.id, {'original_email': CUSTODY_EMAIL})
    assert result['case_type'] == 'family_law'
    assert result['urgency'] == 'urgent'
    assert result['case_creation_recommended'] is True
    assert 'Respond within 24 hours' in result['next_actions']

    general = intelligent_agent.process_incoming_email(firm.id, {
        'subject': 'Opening hours', 'body': 'No rush, just wondering when you open.'})
    assert general['case_type'] == 'general_inquiry'
    assert general['urgency'] == 'low'
    assert general['next_actions'] == ['Review email draft before sending']

    with pytest.raises(ValueError):
        intelligent_agent.process_incoming_email(firm.id, {'original_email': {}})


def test_status(firm):
    status = intelligent_agent.get_status(firm.id)
    assert status['ai_providers'] == ['mock']
    assert status['legal_databases'] == {'bailii': 'available'}
    assert status['data_sources']['internal_documents'] == 'connected'
    assert status['data_sources']['slack'] == 'available'
