import logging
from datetime import datetime
from typing import Any, Dict, List

from models import db, Integration

logger = logging.getLogger(__name__)

INTEGRATION_TYPES = ('billing', 'court_filing', 'legal_research', 'calendar', 'platform')
INTEGRATION_STATUSES = ('connected', 'disconnected', 'error', 'pending')

STATUS_LABELS = {
    'connected': 'Connected',
    'disconnected': 'Disconnected',
    'error': 'Error',
    'pending': 'Pending',
}


class IntegrationError(Exception):
    pass


class BaseIntegrationService:
    """Common state for a configured integration row."""
    PROVIDERS = ()

    def __init__(self, integration: Integration):
        if integration.provider not in self.PROVIDERS:
            raise IntegrationError(f"Unsupported {integration.type} provider: {integration.provider}")
        self.integration = integration
        self.firm_id = integration.firm_id
        self.provider = integration.provider
        self.credentials = integration.credentials or {}
        self.settings = integration.settings or {}

    @property
    def sandbox(self) -> bool:
        return bool(self.settings.get('sandbox'))

    def test_connection(self) -> bool:
        raise NotImplementedError


def provider_choices() -> Dict[str, tuple]:
    # Import here to avoid circular imports
    from services.billing_service import BillingService
    from services.court_filing_service import CourtFilingService
    from services.legal_research_service import LegalResearchService
    from services.calendar_service import CalendarService
    from services.platform_connectors import CONNECTORS
    return {
        'billing': BillingService.PROVIDERS,
        'court_filing': CourtFilingService.PROVIDERS,
        'legal_research': LegalResearchService.PROVIDERS,
        'calendar': CalendarService.PROVIDERS,
        'platform': tuple(CONNECTORS),
    }


def create_integration_service(integration: Integration) -> BaseIntegrationService:
    """Factory returning the service for an integration's type."""
    from services.billing_service import BillingService
    from services.court_filing_service import CourtFilingService
    from services.legal_research_service import LegalResearchService
    from services.calendar_service import CalendarService

    services = {
        'billing': BillingService,
        'court_filing': CourtFilingService,
        'legal_research': LegalResearchService,
        'calendar': CalendarService,
    }
    service_class = services.get(integration.type)
    if service_class is None:
        raise ValueError(f"Unsupported integration type: {integration.type}")
    return service_class(integration)


def get_integration_status(status: str) -> str:
    return STATUS_LABELS.get(status, 'Unknown')


def is_integration_healthy(integration: Integration) -> bool:
    return integration.status == 'connected'


def validate_integration_config(data: Dict[str, Any]) -> List[str]:
    errors = []
    if not (data.get('name') or '').strip():
        errors.append('Integration name is required')
    if not data.get('type'):
        errors.append('Integration type is required')
    elif data['type'] not in INTEGRATION_TYPES:
        errors.append(f"Unsupported integration type: {data['type']}")
    if not data.get('provider'):
        errors.append('Provider is required')
    elif data.get('type') in INTEGRATION_TYPES and data['provider'] not in provider_choices()[data['type']]:
        errors.append(f"Unsupported provider for {data['type']}: {data['provider']}")
    return errors


def test_integration(integration: Integration) -> bool:
    """Run the provider connection test and persist the resulting status."""
    if integration.type == 'platform':
        from services.platform_connectors import CONNECTORS
        ok = CONNECTORS[integration.provider](integration.credentials or {}).test_connection()
    else:
        try:
            ok = create_integration_service(integration).test_connection()
        except IntegrationError as e:
            logger.error(f"Integration {integration.id} test failed: {e}")
            ok = False
    integration.status = 'connected' if ok else 'error'
    integration.error_status = None if ok else 'Connection test failed'
    db.session.commit()
    return ok


def sync_integration(integration: Integration) -> Dict[str, Any]:
    """Pull data from the provider where the type supports it."""
    if not is_integration_healthy(integration):
        raise IntegrationError('Integration is not connected')
    result: Dict[str, Any] = {'type': integration.type, 'provider': integration.provider}
    if integration.type == 'billing':
        result.update(create_integration_service(integration).sync_clients())
    elif integration.type == 'calendar':
        service = create_integration_service(integration)
        result['events'] = len(service.get_events())
    else:
        result['connected'] = test_integration(integration)
    integration.last_sync_at = datetime.utcnow()
    db.session.commit()
    return result
