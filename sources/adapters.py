"""Source adapters: bulk pull and single-record push for each provider."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Union

from canonical.errors import InvalidPayload
from canonical.mapper import CanonicalMapper
from canonical.models import Attendee, CanonicalEvent
from config import CalendarConfig
from sources.ical_feed import ICalFeedReader
from sources.luma_client import LumaClient

logger = logging.getLogger(__name__)


@dataclass
class SourceItem:
    """One raw event pulled from a provider, with its raw guests."""
    raw_event: Dict[str, Any]
    raw_guests: Iterable[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PushedRecord:
    """One mapped record decoded from a webhook body."""
    event_type: str
    candidate: Optional[Union[CanonicalEvent, Attendee]] = None


class SourceAdapter:
    """Interface shared by provider adapters."""

    provider = ''

    def __init__(self, mapper: Optional[CanonicalMapper] = None):
        self.mapper = mapper or CanonicalMapper()

    def pull(self, calendar: CalendarConfig, window_start: Optional[datetime] = None) -> Iterator[SourceItem]:
        raise NotImplementedError

    def map_event(self, raw: Dict[str, Any], calendar: CalendarConfig) -> CanonicalEvent:
        raise NotImplementedError

    def map_guest(self, raw: Dict[str, Any]) -> Attendee:
        raise InvalidPayload(f"Provider '{self.provider}' has no guest records")

    def parse_push(self, payload: Any) -> PushedRecord:
        raise InvalidPayload(f"Provider '{self.provider}' does not push records")


class _LazyGuests:
    """Iterable that fetches guests only when iterated."""

    def __init__(self, fetch: Callable[[], Iterator[Dict[str, Any]]]):
        self._fetch = fetch

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self._fetch())


class LumaAdapter(SourceAdapter):
    """Adapter over the Luma REST API and Luma webhooks."""

    provider = 'luma'

    EVENT_UPSERT_TYPES = ('event.created', 'event.updated')
    EVENT_CANCEL_TYPES = ('event.canceled', 'event.cancelled')
    GUEST_TYPES = ('guest.registered', 'guest.updated')

    def __init__(
        self,
        client: Optional[LumaClient] = None,
        mapper: Optional[CanonicalMapper] = None,
        include_guests: bool = True
    ):
        super().__init__(mapper)
        self.client = client or LumaClient()
        self.include_guests = include_guests

    def pull(self, calendar: CalendarConfig, window_start: Optional[datetime] = None) -> Iterator[SourceItem]:
        """
        Pull every event of a Luma calendar.

        Args:
            calendar: Calendar whose credential is the Luma API key
            window_start: Only events starting after this instant

        Yields:
            SourceItem per event; guests are fetched when iterated
        """
        after = window_start.isoformat() if window_start else None
        logger.info(f"Fetching events from Luma calendar '{calendar.name}'")

        for raw_event in self.client.list_events(calendar.credential, after=after):
            guests = []
            if self.include_guests and raw_event.get('api_id'):
                event_id = raw_event['api_id']
                guests = _LazyGuests(
                    lambda event_id=event_id: self.client.get_guests(calendar.credential, event_id)
                )
            yield SourceItem(raw_event=raw_event, raw_guests=guests)

    def map_event(self, raw: Dict[str, Any], calendar: CalendarConfig) -> CanonicalEvent:
        return self.mapper.map_luma_event(raw, calendar.calendar_id)

    def map_guest(self, raw: Dict[str, Any]) -> Attendee:
        return self.mapper.map_luma_guest(raw)

    def parse_push(self, payload: Any) -> PushedRecord:
        """
        Decode a Luma webhook body without any network call.

        Args:
            payload: Decoded JSON body ({"type": ..., "data": {...}})

        Returns:
            PushedRecord with a mapped candidate, or with no candidate
            for event types this adapter ignores

        Raises:
            InvalidPayload: If the body does not match the webhook schema
        """
        if not isinstance(payload, dict):
            raise InvalidPayload("Webhook body must be a JSON object")

        event_type = payload.get('type')
        data = payload.get('data')
        if not isinstance(event_type, str) or not isinstance(data, dict):
            raise InvalidPayload("Webhook body missing 'type' or 'data'")

        if event_type in self.EVENT_UPSERT_TYPES or event_type in self.EVENT_CANCEL_TYPES:
            raw_event = data.get('event')
            if not isinstance(raw_event, dict):
                raise InvalidPayload(f"'{event_type}' webhook missing event object")
            if event_type in self.EVENT_CANCEL_TYPES:
                # Carries no source timestamp, so it always applies to a stored event.
                candidate = self.mapper.map_luma_cancellation(raw_event)
            else:
                candidate = self.mapper.map_luma_event(raw_event)
            return PushedRecord(event_type=event_type, candidate=candidate)

        if event_type in self.GUEST_TYPES:
            raw_guest = data.get('guest')
            if not isinstance(raw_guest, dict):
                raise InvalidPayload(f"'{event_type}' webhook missing guest object")
            return PushedRecord(event_type=event_type, candidate=self.mapper.map_luma_guest(raw_guest))

        return PushedRecord(event_type=event_type)


class ICalAdapter(SourceAdapter):
    """Adapter over plain iCal feeds."""

    provider = 'ical'

    def __init__(self, reader: Optional[ICalFeedReader] = None, mapper: Optional[CanonicalMapper] = None):
        super().__init__(mapper)
        self.reader = reader or ICalFeedReader()

    def pull(self, calendar: CalendarConfig, window_start: Optional[datetime] = None) -> Iterator[SourceItem]:
        """
        Pull every event of an iCal feed.

        Args:
            calendar: Calendar whose url points at the feed
            window_start: Only events starting after this instant

        Yields:
            SourceItem per VEVENT (feeds carry no guests)
        """
        logger.info(f"Fetching iCal feed for calendar '{calendar.name}'")
        for raw_event in self.reader.fetch_events(calendar.url):
            if window_start and not self._starts_after(raw_event, window_start):
                continue
            yield SourceItem(raw_event=raw_event)

    def map_event(self, raw: Dict[str, Any], calendar: CalendarConfig) -> CanonicalEvent:
        return self.mapper.map_ical_event(raw, calendar.calendar_id)

    def _starts_after(self, raw_event: Dict[str, Any], window_start: datetime) -> bool:
        try:
            starts_at = self.mapper.normalize_timestamp(raw_event.get('dtstart'), raw_event.get('timezone'))
        except InvalidPayload:
            return True
        return starts_at is None or starts_at >= window_start


def build_adapters(
    luma_client: Optional[LumaClient] = None,
    ical_reader: Optional[ICalFeedReader] = None,
    mapper: Optional[CanonicalMapper] = None
) -> Dict[str, SourceAdapter]:
    """Create one adapter per supported provider, keyed by provider name."""
    mapper = mapper or CanonicalMapper()
    return {
        LumaAdapter.provider: LumaAdapter(client=luma_client, mapper=mapper),
        ICalAdapter.provider: ICalAdapter(reader=ical_reader, mapper=mapper),
    }
