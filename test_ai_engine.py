from unittest.mock import Mock, patch

import pytest

from services.ai_engine import AIEngine, AIEngineError


def _openai_reply(content, status_code=200):
    res = Mock()
    res.status_code = status_code
    res.text = 'error body'
    res.json.return_value = {'choices': [{'message': {'content': content}}]}
    return res


def test_no_keys_means_mock_provider():
    engine = AIEngine(openai_api_key='', gemini_api_key='')
    assert engine.get_available_providers() == ['mock']
    result = engine.process_legal_query('Can my landlord keep the deposit?')
    assert result['provider'] == 'mock'
    assert result['confidence'] == 0.5
    assert 'Can my landlord keep the deposit?' in result['content']


@patch('services.ai_engine.requests.post')
def test_openai_success(mock_post):
    mock_post.return_value = _openai_reply('You may be entitled to a refund.')
    engine = AIEngine(openai_api_key='sk-test123456', gemini_api_key='')
    result = engine.process_legal_query('deposit question', context='assured shorthold tenancy')
    assert result == {'content': 'You may be entitled to a refund.', 'provider': 'openai', 'confidence': 0.9}
    payload = mock_post.call_args.kwargs['json']
    assert 'assured shorthold tenancy' in payload['messages'][1]['content']


@patch('services.ai_engine.requests.post')
def test_provider_error_falls_back_to_mock(mock_post):
    mock_post.return_value = _openai_reply('', status_code=500)
    engine = AIEngine(openai_api_key='sk-test123456', gemini_api_key='')
    result = engine.process_legal_query('deposit question')
    assert result['provider'] == 'mock'
    assert mock_post.call_count == 1


def test_preferred_provider_selection():
    engine = AIEngine(openai_api_key='sk-test123456', gemini_api_key='gm-test123456', preferred_provider='gemini')
    assert engine._select_provider() == 'gemini'
    engine.update_config({'preferred_provider': 'auto'})
    assert engine._select_provider() == 'openai'


def test_config_masks_keys_and_rejects_unknown_provider():
    engine = AIEngine(openai_api_key='sk-test123456', gemini_api_key='short')
    config = engine.get_current_config()
    assert config['openai_api_key'] == 'sk-...3456'
    assert config['gemini_api_key'] == '****'
    with pytest.raises(AIEngineError):
        engine.update_config({'openai_api_key': 'sk-other987654', 'preferred_provider': 'claude'})
    assert engine.config['preferred_provider'] == 'auto'
    assert engine.get_current_config()['openai_api_key'] == 'sk-...3456'


def test_analyze_document_fields():
    engine = AIEngine(openai_api_key='', gemini_api_key='')
    result = engine.analyze_document('7', 'nda.txt', 'This agreement contains a confidentiality clause.')
    assert result['document_id'] == '7'
    assert result['category'] == 'contract'
    assert result['provider'] == 'rules'
    assert set(result) >= {'findings', 'entities', 'risk_level', 'summary', 'processing_time_ms'}
