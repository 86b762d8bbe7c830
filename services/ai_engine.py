"""
LLM access for legal queries.

Calls OpenAI or Gemini over HTTP and falls back to a canned legal
response whenever no provider is configured or the provider call fails.
"""
import os
import time
import logging
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from utils import analyze_document_text

load_dotenv()

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent"
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4')
HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 30))

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional UK legal AI assistant. Provide accurate, helpful legal guidance "
    "while noting that this is not formal legal advice. Always recommend consulting with a "
    "qualified solicitor for specific legal matters. Include relevant disclaimers."
)

EMAIL_SYSTEM_PROMPT = (
    "You are a professional UK solicitor's assistant. Draft clear, professional and "
    "empathetic client emails. Never give definitive legal advice by email; recommend a "
    "consultation where appropriate."
)

PROVIDER_CONFIDENCE = {'openai': 0.9, 'gemini': 0.85, 'mock': 0.5}


class AIEngineError(Exception):
    pass


def _post_with_retry(url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
                     retries: int = 2, timeout: int = HTTP_TIMEOUT) -> requests.Response:
    last = None
    for i in range(retries + 1):
        try:
            return requests.post(url, headers=headers or {}, json=payload, timeout=timeout)
        except requests.RequestException as e:
            last = e
            if i < retries:
                time.sleep(min(2 ** i, 8))
    raise AIEngineError(str(last) if last else "request failed")


class AIEngine:
    """Routes legal prompts to the configured LLM provider."""

    def __init__(self, openai_api_key: Optional[str] = None, gemini_api_key: Optional[str] = None,
                 preferred_provider: Optional[str] = None):
        self.config = {
            'openai_api_key': openai_api_key if openai_api_key is not None else os.getenv('OPENAI_API_KEY', ''),
            'gemini_api_key': gemini_api_key if gemini_api_key is not None else os.getenv('GEMINI_API_KEY', ''),
            'preferred_provider': (preferred_provider or os.getenv('AI_PREFERRED_PROVIDER') or 'auto').lower(),
        }

    # ---- configuration ----

    def update_config(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        config = dict(self.config)
        for key in ('openai_api_key', 'gemini_api_key', 'preferred_provider'):
            if key in updates and updates[key] is not None:
                config[key] = updates[key]
        if config['preferred_provider'] not in ('openai', 'gemini', 'auto'):
            raise AIEngineError(f"Unsupported AI provider: {config['preferred_provider']}")
        self.config = config
        return self.get_current_config()

    def get_current_config(self) -> Dict[str, Any]:
        def mask(value):
            if not value:
                return ''
            return f"{value[:3]}...{value[-4:]}" if len(value) > 8 else '****'
        return {
            'openai_api_key': mask(self.config['openai_api_key']),
            'gemini_api_key': mask(self.config['gemini_api_key']),
            'preferred_provider': self.config['preferred_provider'],
            'available_providers': self.get_available_providers(),
        }

    def get_available_providers(self) -> List[str]:
        providers = []
        if (self.config.get('openai_api_key') or '').strip():
            providers.append('openai')
        if (self.config.get('gemini_api_key') or '').strip():
            providers.append('gemini')
        return providers or ['mock']

    def _select_provider(self) -> str:
        available = self.get_available_providers()
        preferred = self.config.get('preferred_provider', 'auto')
        if available == ['mock']:
            return 'mock'
        if preferred == 'auto':
            return 'openai' if 'openai' in available else available[0]
        if preferred in available:
            return preferred
        return available[0]

    # ---- queries ----

    def process_legal_query(self, prompt: str, context: Optional[str] = None,
                            system_prompt: Optional[str] = None) -> Dict[str, Any]:
        provider = self._select_provider()
        if provider == 'mock':
            return self._mock_response(prompt)
        try:
            if provider == 'openai':
                content = self._call_openai(prompt, context, system_prompt)
            else:
                content = self._call_gemini(prompt, context, system_prompt)
            return {'content': content, 'provider': provider, 'confidence': PROVIDER_CONFIDENCE[provider]}
        except (AIEngineError, requests.RequestException, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"AI provider {provider} failed, using fallback: {e}")
            return self._mock_response(prompt)

    def _call_openai(self, prompt: str, context: Optional[str], system_prompt: Optional[str]) -> str:
        headers = {
            'Authorization': f"Bearer {self.config['openai_api_key']}",
            'Content-Type': 'application/json',
        }
        payload = {
            'model': OPENAI_MODEL,
            'messages': [
                {'role': 'system', 'content': system_prompt or DEFAULT_SYSTEM_PROMPT},
                {'role': 'user', 'content': f"{prompt}\n\nContext: {context or 'No additional context provided'}"},
            ],
            'max_tokens': 1000,
            'temperature': 0.3,
        }
        res = _post_with_retry(OPENAI_URL, payload, headers=headers)
        if res.status_code != 200:
            raise AIEngineError(f"OpenAI error: {res.status_code} {res.text[:200]}")
        data = res.json()
        return data['choices'][0]['message']['content']

    def _call_gemini(self, prompt: str, context: Optional[str], system_prompt: Optional[str]) -> str:
        text = (
            f"{system_prompt or DEFAULT_SYSTEM_PROMPT}\n\n{prompt}\n\n"
            f"Context: {context or 'No additional context provided'}"
        )
        payload = {
            'contents': [{'parts': [{'text': text}]}],
            'generationConfig': {'temperature': 0.3, 'maxOutputTokens': 1000},
        }
        url = f"{GEMINI_URL}?key={self.config['gemini_api_key']}"
        res = _post_with_retry(url, payload, headers={'Content-Type': 'application/json'})
        if res.status_code != 200:
            raise AIEngineError(f"Gemini error: {res.status_code} {res.text[:200]}")
        data = res.json()
        return data['candidates'][0]['content']['parts'][0]['text']

    def _mock_response(self, prompt: str) -> Dict[str, Any]:
        preview = (prompt or '').strip()
        if len(preview) > 120:
            preview = preview[:117] + '...'
        content = (
            "**Legal Analysis Complete**\n\n"
            f"Based on your query: \"{preview}\"\n\n"
            "**Key Considerations:**\n"
            "- Review the relevant statutory framework and any applicable limitation periods\n"
            "- Gather supporting documentation and correspondence\n"
            "- Consider alternative dispute resolution before litigation\n\n"
            "**Recommended Next Steps:**\n"
            "1. Schedule a consultation with the responsible solicitor\n"
            "2. Collate all relevant documents\n"
            "3. Confirm key dates and deadlines\n\n"
            "*This analysis is for guidance only and does not constitute formal legal advice.*"
        )
        return {'content': content, 'provider': 'mock', 'confidence': PROVIDER_CONFIDENCE['mock']}

    def draft_legal_email(self, email_context: Dict[str, Any]) -> Dict[str, Any]:
        prompt = (
            "Draft a professional email response for a UK law firm.\n\n"
            f"Subject: {email_context.get('subject') or 'Client enquiry'}\n"
            f"Client name: {email_context.get('client_name') or 'Client'}\n"
            f"Case type: {email_context.get('case_type') or 'General'}\n"
            f"Original email:\n{email_context.get('original_email') or ''}\n\n"
            "The response should:\n"
            "1. Acknowledge the client's concerns\n"
            "2. Provide helpful general information\n"
            "3. Suggest next steps\n"
            "4. Include appropriate legal disclaimers\n"
            "5. Maintain a professional and empathetic tone"
        )
        return self.process_legal_query(prompt, email_context.get('context'), EMAIL_SYSTEM_PROMPT)

    def analyze_document(self, document_id: str, name: str, content: str,
                         analysis_type: str = 'document_classification') -> Dict[str, Any]:
        """Rule-based document analysis; returns the fields persisted on AIAnalysis."""
        started = time.time()
        result = analyze_document_text(content)
        return {
            'document_id': document_id,
            'document_name': name,
            'analysis_type': analysis_type,
            'category': result['category'],
            'confidence_score': round(result['confidence'], 2),
            'findings': result['findings'],
            'entities': result['entities'],
            'risk_level': result['risk_level'],
            'summary': result['summary'],
            'provider': 'rules',
            'processing_time_ms': int((time.time() - started) * 1000),
        }


ai_engine = AIEngine()
