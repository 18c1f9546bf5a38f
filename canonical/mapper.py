"""Mapper from provider payloads to canonical events and attendees."""
import hashlib
import json
import logging
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from dateutil import parser as date_parser
from dateutil import tz

from canonical.errors import InvalidPayload
from canonical.models import ABSENT, Attendee, CanonicalEvent, RsvpStatus, Source

logger = logging.getLogger(__name__)


def _present(raw: Dict[str, Any], key: str) -> Any:
    """
    Read an optional key, keeping "missing" and "empty" apart.

    Returns ABSENT when the key is not in the payload, None when it is
    present but empty, and the value otherwise.
    """
    if key not in raw:
        return ABSENT
    value = raw[key]
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return value


def _to_float(value: Any) -> Optional[float]:
    if value is None or value is ABSENT or value == '':
        return None
    try:
        return float(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None


class CanonicalMapper:
    """Translate provider shapes into CanonicalEvent and Attendee records."""

    DEFAULT_CATEGORY = 'community'
    DEFAULT_CULTURE = 'default'
    FINGERPRINT_LENGTH = 12

    GUEST_STATUS_MAP = {
        'registered': RsvpStatus.GOING,
        'approved': RsvpStatus.GOING,
        'going': RsvpStatus.GOING,
        'checked_in': RsvpStatus.GOING,
        'invited': RsvpStatus.INVITED,
        'maybe': RsvpStatus.MAYBE,
        'interested': RsvpStatus.MAYBE,
        'declined': RsvpStatus.DECLINED,
        'not_going': RsvpStatus.DECLINED,
        'waitlist': RsvpStatus.WAITLISTED,
        'pending_approval': RsvpStatus.WAITLISTED,
    }

    APPROVAL_STATUS_MAP = {
        'approved': RsvpStatus.GOING,
        'pending': RsvpStatus.WAITLISTED,
        'pending_approval': RsvpStatus.WAITLISTED,
        'waitlist': RsvpStatus.WAITLISTED,
        'rejected': RsvpStatus.DECLINED,
        'declined': RsvpStatus.DECLINED,
        'invited': RsvpStatus.INVITED,
        'session': RsvpStatus.GOING,
    }

    # Approval outcomes that override whatever the guest status says.
    OVERRIDING_APPROVALS = (RsvpStatus.WAITLISTED, RsvpStatus.DECLINED)

    FALLBACK_STATUS = RsvpStatus.INVITED

    CANCELLED_STATUSES = ('cancelled', 'canceled')

    def translate_status(
        self,
        guest_status: Optional[str],
        approval_status: Optional[str] = None
    ) -> RsvpStatus:
        """
        Translate a provider guest status into the canonical RSVP status.

        Args:
            guest_status: Provider guest status (e.g. "registered")
            approval_status: Optional provider approval status

        Returns:
            Canonical RsvpStatus; unknown values fall back to INVITED
        """
        approval = None
        if approval_status:
            approval = self.APPROVAL_STATUS_MAP.get(approval_status.lower())
            if approval is None:
                logger.warning(
                    f"Unknown approval status '{approval_status}', ignoring",
                    extra={'approval_status': approval_status}
                )
            elif approval in self.OVERRIDING_APPROVALS:
                return approval

        if guest_status:
            status = self.GUEST_STATUS_MAP.get(guest_status.lower())
            if status is not None:
                return status
            logger.warning(
                f"Unknown guest status '{guest_status}', "
                f"falling back to '{self.FALLBACK_STATUS.value}'",
                extra={'guest_status': guest_status}
            )

        if approval is not None:
            return approval
        return self.FALLBACK_STATUS

    def normalize_timestamp(self, value: Any, tz_name: Optional[str] = None) -> Optional[datetime]:
        """
        Normalize a provider timestamp to a UTC instant.

        Args:
            value: ISO-8601 string, datetime or date
            tz_name: IANA zone used for naive values (UTC when missing)

        Returns:
            Timezone-aware UTC datetime, or None for empty input

        Raises:
            InvalidPayload: If the value cannot be parsed
        """
        if value is None or value is ABSENT or value == '':
            return None

        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime.combine(value, time.min)
        elif isinstance(value, str):
            try:
                parsed = date_parser.isoparse(value.strip())
            except (ValueError, OverflowError) as e:
                raise InvalidPayload(f"Invalid timestamp '{value}': {e}")
        else:
            raise InvalidPayload(f"Unsupported timestamp type: {type(value).__name__}")

        if parsed.tzinfo is None:
            zone = tz.gettz(tz_name) if tz_name else None
            parsed = parsed.replace(tzinfo=zone or timezone.utc)

        return parsed.astimezone(timezone.utc)

    def map_luma_event(self, raw: Dict[str, Any], calendar_id: Optional[str] = None) -> CanonicalEvent:
        """
        Map a Luma API event object to a CanonicalEvent.

        Args:
            raw: Event object from the Luma API or a webhook
            calendar_id: Configured calendar the event was pulled from

        Returns:
            CanonicalEvent with ABSENT for fields Luma did not send

        Raises:
            InvalidPayload: If required fields are missing or malformed
        """
        if not isinstance(raw, dict):
            raise InvalidPayload("Luma event must be an object")
        for required in ('api_id', 'name', 'start_at'):
            if not raw.get(required):
                raise InvalidPayload(f"Luma event missing required field: {required}")

        tz_name = raw.get('timezone') or None
        geo = raw.get('geo_address_json') or {}
        if not isinstance(geo, dict):
            geo = {}

        lat = _to_float(raw.get('geo_latitude') or geo.get('latitude'))
        lng = _to_float(raw.get('geo_longitude') or geo.get('longitude'))

        if 'geo_address_json' in raw:
            location_name = geo.get('description') or geo.get('full_address') or None
            location_raw = geo.get('full_address') or None
        else:
            location_name = ABSENT
            location_raw = ABSENT

        ends_at = _present(raw, 'end_at')
        if ends_at:
            ends_at = self.normalize_timestamp(ends_at, tz_name)

        updated_raw = raw.get('updated_at') or None

        return CanonicalEvent(
            source=Source.LUMA.value,
            source_id=str(raw['api_id']),
            calendar_id=calendar_id or raw.get('calendar_api_id') or ABSENT,
            title=str(raw['name']).strip(),
            description=_present(raw, 'description_md'),
            starts_at=self.normalize_timestamp(raw['start_at'], tz_name),
            ends_at=ends_at,
            timezone=tz_name if 'timezone' in raw else ABSENT,
            location_name=location_name,
            location_raw=location_raw,
            lat=lat if ('geo_latitude' in raw or 'geo_address_json' in raw) else ABSENT,
            lng=lng if ('geo_longitude' in raw or 'geo_address_json' in raw) else ABSENT,
            host=self._luma_host(raw),
            cover_image_url=_present(raw, 'cover_url'),
            meeting_url=_present(raw, 'meeting_url'),
            external_url=_present(raw, 'url'),
            category=self.DEFAULT_CATEGORY,
            culture=raw.get('culture') or self.DEFAULT_CULTURE,
            cancelled=self._is_cancelled(raw.get('status'), raw.get('is_canceled')),
            source_updated_at=self.normalize_timestamp(updated_raw),
            source_updated_raw=updated_raw,
        )

    def map_luma_cancellation(self, raw: Dict[str, Any]) -> CanonicalEvent:
        """
        Map the event object of a Luma cancellation webhook.

        Only the event id is required. The result marks the event cancelled
        and leaves every other stored field as it is.

        Raises:
            InvalidPayload: If the event id is missing
        """
        if not isinstance(raw, dict):
            raise InvalidPayload("Luma event must be an object")
        if not raw.get('api_id'):
            raise InvalidPayload("Luma event missing required field: api_id")

        return CanonicalEvent(
            source=Source.LUMA.value,
            source_id=str(raw['api_id']),
            title=ABSENT,
            starts_at=ABSENT,
            calendar_id=ABSENT,
            cancelled=True,
        )

    def map_luma_guest(self, raw: Dict[str, Any]) -> Attendee:
        """
        Map a Luma guest object to an Attendee.

        Args:
            raw: Guest object from the Luma API or a webhook

        Returns:
            Attendee keyed by lower-cased email, else by guest id

        Raises:
            InvalidPayload: If required fields are missing
        """
        if not isinstance(raw, dict):
            raise InvalidPayload("Luma guest must be an object")
        for required in ('api_id', 'event_api_id'):
            if not raw.get(required):
                raise InvalidPayload(f"Luma guest missing required field: {required}")

        email = raw.get('email') or raw.get('user_email')
        identifier = email.strip().lower() if email else str(raw['api_id'])

        status = self.translate_status(raw.get('status'), raw.get('approval_status'))

        registered = raw.get('registered_at') or raw.get('created_at')
        updated_raw = raw.get('updated_at') or None

        return Attendee(
            event_source=Source.LUMA.value,
            event_source_id=str(raw['event_api_id']),
            attendee_identifier=identifier,
            status=status,
            provider_guest_id=str(raw['api_id']),
            name=_present(raw, 'name'),
            email=email.strip().lower() if email else ABSENT,
            registered_at=self.normalize_timestamp(registered) if registered else ABSENT,
            checked_in_at=(
                self.normalize_timestamp(raw['checked_in_at'])
                if raw.get('checked_in_at') else _present(raw, 'checked_in_at')
            ),
            source_updated_at=self.normalize_timestamp(updated_raw),
            source_updated_raw=updated_raw,
        )

    def map_ical_event(self, raw: Dict[str, Any], calendar_id: Optional[str] = None) -> CanonicalEvent:
        """
        Map a parsed iCal VEVENT to a CanonicalEvent.

        Args:
            raw: Dict produced by ICalFeedReader.parse
            calendar_id: Configured calendar the feed belongs to

        Returns:
            CanonicalEvent keyed by UID, or by a content fingerprint
            when the feed omits UIDs

        Raises:
            InvalidPayload: If summary or start are missing
        """
        if not raw.get('summary') or not raw.get('dtstart'):
            raise InvalidPayload("iCal event missing SUMMARY or DTSTART")

        tz_name = raw.get('timezone')
        starts_at = self.normalize_timestamp(raw['dtstart'], tz_name)
        location = raw.get('location')

        source_id = raw.get('uid') or self.fingerprint(raw['summary'], location, starts_at)

        geo = raw.get('geo')
        lat, lng = (geo if geo else (None, None))

        categories = raw.get('categories') or []
        updated_raw = raw.get('last_modified') or None

        return CanonicalEvent(
            source=Source.ICAL.value,
            source_id=str(source_id),
            calendar_id=calendar_id,
            title=str(raw['summary']).strip(),
            # Feeds carry full state, so a missing DESCRIPTION clears.
            description=raw.get('description') or None,
            starts_at=starts_at,
            ends_at=self.normalize_timestamp(raw.get('dtend'), tz_name),
            timezone=tz_name or ABSENT,
            location_name=location or None,
            location_raw=location or None,
            lat=_to_float(lat),
            lng=_to_float(lng),
            host=raw.get('organizer') or ABSENT,
            cover_image_url=ABSENT,
            meeting_url=ABSENT,
            external_url=raw.get('url') or None,
            category=categories[0] if categories else self.DEFAULT_CATEGORY,
            culture=self.DEFAULT_CULTURE,
            cancelled=self._is_cancelled(raw.get('status')),
            source_updated_at=self.normalize_timestamp(updated_raw),
            source_updated_raw=updated_raw,
        )

    def fingerprint(self, title: str, location: Optional[str], starts_at: datetime) -> str:
        """
        Generate a deterministic identifier from event content.

        Used when a feed has no UID so re-ingesting the same event still
        resolves to the same natural key.

        Args:
            title: Event title
            location: Free-text location or URL
            starts_at: Start instant

        Returns:
            First 12 characters of a SHA256 hex digest
        """
        normalized = {
            'location': self._normalize_location(location),
            'startsAt': starts_at.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
            'title': self._normalize_title(title),
        }
        composite = json.dumps(normalized, sort_keys=True, separators=(',', ':'))
        digest = hashlib.sha256(composite.encode('utf-8')).hexdigest()
        return digest[:self.FINGERPRINT_LENGTH]

    def _normalize_title(self, title: Optional[str]) -> str:
        if not title:
            return ''
        value = re.sub(r'\s+', ' ', title.lower().strip())
        value = value.replace('‘', "'").replace('’', "'")
        value = value.replace('“', '"').replace('”', '"')
        value = value.replace('–', '-')
        return re.sub(r'[!?.]+$', '', value)

    def _normalize_location(self, location: Optional[str]) -> str:
        if not location:
            return ''
        value = re.sub(r'\s+', ' ', location.lower().strip())
        value = re.sub(r',\s*', ',', value)
        value = re.sub(r'https?://(www\.)?lu\.ma/', 'luma/', value)
        return value.rstrip('/')

    def _luma_host(self, raw: Dict[str, Any]) -> Any:
        if 'hosts' not in raw and 'host' not in raw:
            return ABSENT
        hosts = raw.get('hosts') or ([raw['host']] if raw.get('host') else [])
        if not hosts:
            return None
        first = hosts[0]
        if isinstance(first, dict):
            return first.get('email') or first.get('name') or first.get('api_id')
        return str(first)

    def _is_cancelled(self, status: Optional[str], flag: Optional[bool] = None) -> bool:
        if flag:
            return True
        return bool(status) and str(status).lower() in self.CANCELLED_STATUSES
