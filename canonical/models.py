"""Data models for canonical events, attendees and sync runs."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class _Absent:
    """Marker for a field the provider did not supply at all."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return 'ABSENT'


ABSENT = _Absent()


class Source(str, Enum):
    """Providers that feed the canonical store."""
    LUMA = 'luma'
    ICAL = 'ical'


class RsvpStatus(str, Enum):
    """Canonical attendance status."""
    GOING = 'going'
    MAYBE = 'maybe'
    DECLINED = 'declined'
    WAITLISTED = 'waitlisted'
    INVITED = 'invited'


class SyncMode(str, Enum):
    DRY_RUN = 'dry-run'
    APPLY = 'apply'


class Classification(str, Enum):
    CREATED = 'created'
    UPDATED = 'updated'
    SKIPPED = 'skipped'
    ERROR = 'error'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def event_natural_key(source: str, source_id: str) -> str:
    """Build the external identity string of an event."""
    return f"{Source(source).value}#{source_id}"


@dataclass
class CanonicalEvent:
    """Deduplicated internal representation of an event."""
    source: str
    source_id: str
    title: str
    starts_at: datetime
    calendar_id: Any = None
    description: Any = ABSENT
    ends_at: Any = ABSENT
    timezone: Any = ABSENT
    location_name: Any = ABSENT
    location_raw: Any = ABSENT
    lat: Any = ABSENT
    lng: Any = ABSENT
    host: Any = ABSENT
    cover_image_url: Any = ABSENT
    meeting_url: Any = ABSENT
    external_url: Any = ABSENT
    category: Any = ABSENT
    culture: Any = ABSENT
    cancelled: bool = False
    source_updated_at: Optional[datetime] = None
    source_updated_raw: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def natural_key(self) -> str:
        return event_natural_key(self.source, self.source_id)


# Fields compared and merged by the reconciler, in write order.
EVENT_MERGE_FIELDS = (
    'calendar_id',
    'title',
    'description',
    'starts_at',
    'ends_at',
    'timezone',
    'location_name',
    'location_raw',
    'lat',
    'lng',
    'host',
    'cover_image_url',
    'meeting_url',
    'external_url',
    'category',
    'culture',
    'cancelled',
)


@dataclass
class Attendee:
    """RSVP record of one guest for one event."""
    event_source: str
    event_source_id: str
    attendee_identifier: str
    status: RsvpStatus
    provider_guest_id: Optional[str] = None
    event_id: Optional[str] = None
    name: Any = ABSENT
    email: Any = ABSENT
    registered_at: Any = ABSENT
    checked_in_at: Any = ABSENT
    source_updated_at: Optional[datetime] = None
    source_updated_raw: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def event_natural_key(self) -> str:
        return event_natural_key(self.event_source, self.event_source_id)

    @property
    def natural_key(self) -> str:
        return f"{self.event_natural_key}/{self.attendee_identifier}"


ATTENDEE_MERGE_FIELDS = (
    'status',
    'provider_guest_id',
    'name',
    'email',
    'registered_at',
    'checked_in_at',
)


@dataclass
class ReconcileOutcome:
    """Classification of one reconcile call."""
    kind: str
    classification: Classification
    natural_key: str
    record_id: Optional[str] = None
    reason: Optional[str] = None
    changes: List[str] = field(default_factory=list)
    applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'classification': self.classification.value,
            'natural_key': self.natural_key,
            'record_id': self.record_id,
            'reason': self.reason,
            'changes': self.changes,
            'applied': self.applied,
        }


@dataclass
class RecordCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, classification: Classification) -> None:
        if classification is Classification.CREATED:
            self.created += 1
        elif classification is Classification.UPDATED:
            self.updated += 1
        elif classification is Classification.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def add(self, other: 'RecordCounts') -> None:
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors

    def to_dict(self) -> Dict[str, int]:
        return {
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'errors': self.errors,
        }


@dataclass
class CalendarResult:
    """Outcome of syncing one configured calendar."""
    calendar_key: str
    name: str
    provider: str
    events: RecordCounts = field(default_factory=RecordCounts)
    attendees: RecordCounts = field(default_factory=RecordCounts)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    outcomes: List[ReconcileOutcome] = field(default_factory=list)

    def record(self, outcome: ReconcileOutcome, keep: bool = False) -> None:
        counts = self.events if outcome.kind == 'event' else self.attendees
        counts.record(outcome.classification)
        if outcome.classification is Classification.ERROR:
            self.errors.append(f"{outcome.natural_key}: {outcome.reason}")
        if keep:
            self.outcomes.append(outcome)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        data = {
            'calendar': self.calendar_key,
            'name': self.name,
            'provider': self.provider,
            'events': self.events.to_dict(),
            'attendees': self.attendees.to_dict(),
            'errors': self.errors,
            'error': self.error,
        }
        if verbose:
            data['outcomes'] = [outcome.to_dict() for outcome in self.outcomes]
        return data


@dataclass
class SyncRun:
    """Ephemeral record of one sync invocation, owned by the caller."""
    mode: SyncMode
    calendar_filter: Optional[str] = None
    verbose: bool = False
    calendars: List[CalendarResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    success: bool = True
    disabled: bool = False

    @property
    def dry_run(self) -> bool:
        return self.mode is SyncMode.DRY_RUN

    @property
    def partial_failure(self) -> bool:
        return any(result.failed or result.errors for result in self.calendars)

    @property
    def duration_ms(self) -> int:
        end = self.finished_at or utc_now()
        return int((end - self.started_at).total_seconds() * 1000)

    def finish(self) -> 'SyncRun':
        self.finished_at = utc_now()
        return self

    def totals(self) -> Dict[str, Any]:
        events = RecordCounts()
        attendees = RecordCounts()
        for result in self.calendars:
            events.add(result.events)
            attendees.add(result.attendees)
        return {
            'events': events.to_dict(),
            'attendees': attendees.to_dict(),
            'calendars_processed': len(self.calendars),
            'calendars_failed': sum(1 for result in self.calendars if result.failed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'calendar_filter': self.calendar_filter,
            'success': self.success,
            'disabled': self.disabled,
            'partial_failure': self.partial_failure,
            'perCalendar': [result.to_dict(self.verbose) for result in self.calendars],
            'totals': self.totals(),
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_ms': self.duration_ms,
        }
