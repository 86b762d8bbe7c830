import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from models import db, CalendarEvent
from services.integrations import BaseIntegrationService, IntegrationError
from utils import parse_datetime

logger = logging.getLogger(__name__)

BASE_URLS = {
    'google': 'https://www.googleapis.com/calendar/v3',
    'outlook': 'https://graph.microsoft.com/v1.0',
    'apple': 'https://caldav.icloud.com',
}
EVENT_TYPES = ('court_date', 'hearing', 'meeting', 'deadline', 'reminder', 'other')
EVENT_STATUSES = ('scheduled', 'confirmed', 'tentative', 'cancelled')


class CalendarService(BaseIntegrationService):
    PROVIDERS = ('google', 'outlook', 'apple', 'ical', 'caldav', 'custom')

    @property
    def base_url(self) -> str:
        if self.provider in BASE_URLS:
            return BASE_URLS[self.provider]
        return self.settings.get('base_url') or ''

    def create_event(self, data: Dict[str, Any], user_id: Optional[int] = None) -> CalendarEvent:
        title = (data.get('title') or '').strip()
        start = parse_datetime(data.get('start_at') or data.get('start_time'))
        if not title or start is None:
            raise IntegrationError('title and start_at are required')
        end = parse_datetime(data.get('end_at') or data.get('end_time')) or start + timedelta(hours=1)
        if end < start:
            raise IntegrationError('end_at must be after start_at')
        event_type = data.get('event_type') or 'other'
        if event_type not in EVENT_TYPES:
            raise IntegrationError(f"Unsupported event type: {event_type}")

        event = CalendarEvent(
            firm_id=self.firm_id,
            title=title,
            description=data.get('description'),
            start_at=start,
            end_at=end,
            all_day=bool(data.get('all_day')),
            location=data.get('location'),
            event_type=event_type,
            attendees=list(data.get('attendees') or []),
            status=data.get('status') or 'scheduled',
            provider=self.provider,
            external_id=f"{self.provider}-{uuid.uuid4().hex[:12]}",
            case_id=data.get('case_id'),
            client_id=data.get('client_id'),
            created_by_id=user_id,
            reminder_minutes_before=int(data.get('reminder_minutes_before') or 0),
        )
        db.session.add(event)
        db.session.commit()
        logger.info(f"Created {self.provider} event '{title}' at {start.isoformat()}")
        return event

    def get_events(self, start=None, end=None) -> List[CalendarEvent]:
        start = parse_datetime(start) or datetime.utcnow() - timedelta(days=1)
        end = parse_datetime(end) or start + timedelta(days=30)
        return (CalendarEvent.query
                .filter(CalendarEvent.firm_id == self.firm_id,
                        CalendarEvent.provider == self.provider,
                        CalendarEvent.status != 'cancelled',
                        CalendarEvent.start_at >= start,
                        CalendarEvent.start_at <= end)
                .order_by(CalendarEvent.start_at.asc())
                .all())

    def cancel_event(self, event_id: int) -> CalendarEvent:
        event = CalendarEvent.query.filter_by(id=event_id, firm_id=self.firm_id).first()
        if event is None:
            raise LookupError('Event not found')
        event.status = 'cancelled'
        db.session.commit()
        return event

    def test_connection(self) -> bool:
        return bool(self.credentials.get('access_token') or self.credentials.get('api_key'))
