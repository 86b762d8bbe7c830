import re
import logging
from typing import Any, Dict, List, Optional

from services.integrations import BaseIntegrationService, IntegrationError
from utils import parse_datetime

logger = logging.getLogger(__name__)

BASE_URLS = {
    'westlaw': 'https://api.westlaw.com/v1',
    'lexisnexis': 'https://api.lexisnexis.com/v1',
    'fastcase': 'https://api.fastcase.com/v1',
    'google_scholar': 'https://scholar.google.com/scholar',
}
WESTLAW_SANDBOX_URL = 'https://api-sandbox.westlaw.com/v1'

# Authorities served until a provider account is wired in.
SAMPLE_LIBRARY = [
    {
        'id': 'case_1',
        'title': 'Smith v. Johnson - Contract Interpretation',
        'type': 'case',
        'jurisdiction': 'New York',
        'court': 'Court of Appeals',
        'date': '2023-05-15',
        'citation': '123 N.Y.2d 456 (2023)',
        'snippet': 'The court held that contract interpretation is a question of law when the contract '
                   'language is unambiguous.',
        'key_topics': ['Contract Law', 'Interpretation', 'Commercial Disputes'],
        'status': 'positive',
        'details': {
            'judge': 'Judge Williams',
            'procedure_history': 'Appeal from Supreme Court, New York County',
            'facts': 'Plaintiff entered into a commercial contract with defendant for the sale of goods.',
            'holding': 'Contract interpretation is a question of law when the language is unambiguous.',
            'outcome': 'Judgment for plaintiff affirmed',
            'headnotes': [
                'Contract interpretation is a question of law when the contract language is unambiguous.',
                "Parties' intent must be determined from the four corners of the agreement.",
            ],
            'citing_cases': [{'title': 'Brown v. Davis', 'citation': '124 N.Y.2d 789 (2023)',
                              'treatment': 'followed'}],
        },
    },
    {
        'id': 'statute_1',
        'title': 'Commercial Code Section 2-207',
        'type': 'statute',
        'jurisdiction': 'New York',
        'court': None,
        'date': '2024-01-01',
        'citation': 'N.Y. UCC § 2-207',
        'snippet': 'Additional terms in acceptance or confirmation. A definite and seasonable expression of '
                   'acceptance operates as an acceptance.',
        'key_topics': ['UCC', 'Contract Formation', 'Commercial Law'],
        'status': 'neutral',
        'details': {},
    },
    {
        'id': 'case_2',
        'title': 'Garcia v. Metro Transit Authority - Premises Liability',
        'type': 'case',
        'jurisdiction': 'California',
        'court': 'Court of Appeal',
        'date': '2022-09-12',
        'citation': '78 Cal.App.5th 210 (2022)',
        'snippet': 'A public entity owes a duty of care for dangerous conditions of property where it had '
                   'notice of the condition and time to remedy it.',
        'key_topics': ['Personal Injury', 'Negligence', 'Premises Liability'],
        'status': 'positive',
        'details': {
            'holding': 'Constructive notice may be shown by the duration of the dangerous condition.',
            'outcome': 'Reversed and remanded',
        },
    },
    {
        'id': 'case_3',
        'title': 'In re Marriage of Thompson - Child Custody',
        'type': 'case',
        'jurisdiction': 'Texas',
        'court': 'Court of Appeals',
        'date': '2021-03-04',
        'citation': '612 S.W.3d 88 (Tex. App. 2021)',
        'snippet': "The best interest of the child is the primary consideration in custody and "
                   "visitation determinations.",
        'key_topics': ['Family Law', 'Custody', 'Best Interest'],
        'status': 'positive',
        'details': {'holding': 'Trial courts have wide latitude in determining the best interest of a child.'},
    },
    {
        'id': 'regulation_1',
        'title': '8 C.F.R. § 214.2 - Nonimmigrant Classes',
        'type': 'regulation',
        'jurisdiction': 'Federal',
        'court': None,
        'date': '2023-10-01',
        'citation': '8 C.F.R. § 214.2',
        'snippet': 'Special requirements for admission, extension, and maintenance of status for '
                   'nonimmigrant visa classes.',
        'key_topics': ['Immigration', 'Visa', 'Nonimmigrant Status'],
        'status': 'neutral',
        'details': {},
    },
    {
        'id': 'case_4',
        'title': 'People v. Alvarez - Suppression of Evidence',
        'type': 'case',
        'jurisdiction': 'California',
        'court': 'Supreme Court',
        'date': '2020-06-18',
        'citation': '9 Cal.5th 120 (2020)',
        'snippet': 'Evidence obtained from a warrantless search must be suppressed absent a recognised exception '
                   'to the warrant requirement.',
        'key_topics': ['Criminal Law', 'Fourth Amendment', 'Search and Seizure'],
        'status': 'caution',
        'details': {'holding': 'The automobile exception did not apply on these facts.'},
    },
]


def _terms(text: str) -> List[str]:
    return [t for t in re.findall(r'[a-z0-9§.\-]+', (text or '').lower()) if len(t) > 1]


def score_document(doc: Dict[str, Any], terms: List[str]) -> float:
    if not terms:
        return 0.0
    title = doc['title'].lower()
    snippet = doc['snippet'].lower()
    topics = ' '.join(doc.get('key_topics') or []).lower()
    citation = doc['citation'].lower()
    hits = 0.0
    for term in terms:
        if term in title:
            hits += 3
        if term in topics:
            hits += 2
        if term in snippet:
            hits += 1
        if term in citation:
            hits += 2
    return round(min(hits / (len(terms) * 4.0), 1.0), 2)


class LegalResearchService(BaseIntegrationService):
    PROVIDERS = ('westlaw', 'lexisnexis', 'fastcase', 'google_scholar', 'custom')

    @property
    def base_url(self) -> str:
        if self.provider == 'custom':
            url = self.settings.get('base_url')
            if not url:
                raise IntegrationError('Custom legal research provider requires a base_url')
            return url
        if self.provider == 'westlaw' and self.sandbox:
            return WESTLAW_SANDBOX_URL
        return BASE_URLS[self.provider]

    def search(self, query: str, jurisdiction: Optional[List[str]] = None, document_types: Optional[List[str]] = None,
               date_from=None, date_to=None, max_results: Optional[int] = None,
               sort_by: str = 'relevance') -> List[Dict[str, Any]]:
        terms = _terms(query)
        limit = max_results or self.settings.get('max_results') or 10
        wanted_jurisdictions = {j.lower() for j in jurisdiction or []}
        start = parse_datetime(date_from)
        end = parse_datetime(date_to)

        results = []
        for doc in SAMPLE_LIBRARY:
            if wanted_jurisdictions and doc['jurisdiction'].lower() not in wanted_jurisdictions:
                continue
            if document_types and doc['type'] not in document_types:
                continue
            decided = parse_datetime(doc['date'])
            if (start and decided < start) or (end and decided > end):
                continue
            score = score_document(doc, terms)
            if score <= 0:
                continue
            item = {k: v for k, v in doc.items() if k != 'details'}
            item['relevance_score'] = score
            results.append(item)

        if sort_by == 'date':
            results.sort(key=lambda d: d['date'], reverse=True)
        elif sort_by == 'court':
            results.sort(key=lambda d: (d['court'] or '', -d['relevance_score']))
        else:
            results.sort(key=lambda d: -d['relevance_score'])
        logger.info(f"Legal research on {self.provider} for '{query}' returned {len(results)} results")
        return results[:int(limit)]

    def get_case_details(self, identifier: str) -> Optional[Dict[str, Any]]:
        for doc in SAMPLE_LIBRARY:
            if identifier in (doc['id'], doc['citation']):
                details = {k: v for k, v in doc.items() if k != 'details'}
                details.update(doc.get('details') or {})
                return details
        return None

    def test_connection(self) -> bool:
        return bool(self.credentials.get('api_key') or self.credentials.get('username'))
