"""Reconciliation engine: the only writer of canonical state."""
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Union

from canonical.errors import WriteConflict
from canonical.models import (
    ABSENT,
    ATTENDEE_MERGE_FIELDS,
    EVENT_MERGE_FIELDS,
    Attendee,
    CanonicalEvent,
    Classification,
    ReconcileOutcome,
    SyncMode,
    event_natural_key,
)
from storage.canonical_store import CanonicalStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    Mutual exclusion per natural key.

    A key's lock lives only while some thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def is_newer(candidate: Optional[datetime], stored: Optional[datetime]) -> bool:
    """
    Decide whether a candidate supersedes the stored row.

    Missing timestamps on either side defer the decision to the content
    diff; otherwise the candidate must be strictly newer.
    """
    if candidate is None or stored is None:
        return True
    return candidate > stored


def advances(candidate: Optional[datetime], stored: Optional[datetime]) -> bool:
    """Whether the candidate carries a source timestamp later than the stored one."""
    return candidate is not None and (stored is None or candidate > stored)


def diff_fields(existing: Any, candidate: Any, fields) -> Dict[str, Any]:
    """
    Compute the field-level changes a candidate brings.

    ABSENT candidate values keep the stored value; None clears it.

    Returns:
        Mapping of changed field name to new value
    """
    changes = {}
    for name in fields:
        new = getattr(candidate, name)
        if new is ABSENT:
            continue
        old = getattr(existing, name)
        if old is ABSENT:
            old = None
        if new != old:
            changes[name] = new
    return changes


class Reconciler:
    """
    Classify and apply candidate records against the canonical store.

    One instance serves a whole sync run or webhook call. In dry-run mode
    it keeps a shadow of the rows it would have written, so later records
    in the same run (repeated events, guests of new events) classify
    exactly as they would in apply mode, without touching the store.
    """

    def __init__(self, store: CanonicalStore, locks: Optional[KeyedLock] = None):
        self.store = store
        self.locks = locks if locks is not None else KeyedLock()
        self._shadow: Dict[str, Any] = {}
        self._shadow_guard = threading.Lock()

    def reconcile(
        self,
        candidate: Union[CanonicalEvent, Attendee],
        mode: SyncMode = SyncMode.DRY_RUN
    ) -> ReconcileOutcome:
        """
        Reconcile one candidate record.

        Args:
            candidate: Mapped CanonicalEvent or Attendee
            mode: DRY_RUN classifies only; APPLY also writes

        Returns:
            ReconcileOutcome; failures come back classified as ERROR
        """
        kind = 'event' if isinstance(candidate, CanonicalEvent) else 'attendee'
        natural_key = candidate.natural_key

        try:
            with self.locks.hold(natural_key):
                if kind == 'event':
                    return self._reconcile_event(candidate, mode is SyncMode.APPLY)
                return self._reconcile_attendee(candidate, mode is SyncMode.APPLY)
        except Exception as e:
            logger.error(
                f"Failed to reconcile {kind} {natural_key}: {e}",
                extra={'error_type': type(e).__name__, 'natural_key': natural_key}
            )
            return ReconcileOutcome(
                kind=kind,
                classification=Classification.ERROR,
                natural_key=natural_key,
                reason=f"{type(e).__name__}: {e}",
            )

    def _reconcile_event(self, candidate: CanonicalEvent, apply: bool) -> ReconcileOutcome:
        existing = self._find_event(candidate.source, candidate.source_id, apply)

        if existing is None:
            if candidate.title is ABSENT or candidate.starts_at is ABSENT:
                # Partial records (e.g. a bare cancellation) can only amend a stored event.
                return self._outcome(
                    'event', Classification.SKIPPED, candidate.natural_key, reason='event-not-found'
                )
            if not apply:
                self._remember(candidate.natural_key, candidate)
                return self._outcome('event', Classification.CREATED, candidate.natural_key)
            try:
                stored = self.store.insert_event(candidate)
            except WriteConflict:
                # Another writer created the row first; continue as an update.
                logger.info(f"Insert race on {candidate.natural_key}, retrying as update")
                existing = self.store.get_event(candidate.source, candidate.source_id)
                if existing is None:
                    raise
            else:
                return self._outcome(
                    'event', Classification.CREATED, candidate.natural_key,
                    record_id=stored.id, applied=True
                )

        return self._update(
            'event', existing, candidate, EVENT_MERGE_FIELDS, apply,
            self.store.update_event, existing.id
        )

    def _reconcile_attendee(self, candidate: Attendee, apply: bool) -> ReconcileOutcome:
        event = self._find_event(candidate.event_source, candidate.event_source_id, apply)
        if event is None:
            return self._outcome(
                'attendee', Classification.SKIPPED, candidate.natural_key,
                reason='event-not-found'
            )

        candidate.event_id = event.id
        existing = self._find_attendee(candidate, apply)

        if existing is None:
            if not apply:
                self._remember(candidate.natural_key, candidate)
                return self._outcome(
                    'attendee', Classification.CREATED, candidate.natural_key, record_id=event.id
                )
            try:
                self.store.insert_attendee(candidate)
            except WriteConflict:
                logger.info(f"Insert race on {candidate.natural_key}, retrying as update")
                existing = self.store.get_attendee(event.id, candidate.attendee_identifier)
                if existing is None:
                    raise
            else:
                return self._outcome(
                    'attendee', Classification.CREATED, candidate.natural_key,
                    record_id=event.id, applied=True
                )

        return self._update(
            'attendee', existing, candidate, ATTENDEE_MERGE_FIELDS, apply,
            self.store.update_attendee, event.id
        )

    def _update(self, kind, existing, candidate, fields, apply, write, record_id) -> ReconcileOutcome:
        natural_key = candidate.natural_key

        if not is_newer(candidate.source_updated_at, existing.source_updated_at):
            logger.debug(f"Skipping stale {kind} {natural_key}")
            return self._outcome(kind, Classification.SKIPPED, natural_key, record_id=record_id, reason='stale')

        changes = diff_fields(existing, candidate, fields)
        if not changes:
            if advances(candidate.source_updated_at, existing.source_updated_at):
                # Keep the stored timestamp current so a late older payload stays stale.
                if apply:
                    try:
                        write(existing, {}, candidate.source_updated_at, candidate.source_updated_raw)
                    except WriteConflict:
                        return self._outcome(
                            kind, Classification.SKIPPED, natural_key, record_id=record_id, reason='stale'
                        )
                else:
                    self._remember(natural_key, replace(
                        existing,
                        source_updated_at=candidate.source_updated_at,
                        source_updated_raw=candidate.source_updated_raw
                    ))
            return self._outcome(kind, Classification.SKIPPED, natural_key, record_id=record_id, reason='unchanged')

        if apply:
            try:
                write(existing, changes, candidate.source_updated_at, candidate.source_updated_raw)
            except WriteConflict:
                return self._outcome(
                    kind, Classification.SKIPPED, natural_key, record_id=record_id, reason='stale'
                )
        else:
            self._remember(natural_key, replace(
                existing,
                source_updated_at=candidate.source_updated_at or existing.source_updated_at,
                **changes
            ))

        return self._outcome(
            kind, Classification.UPDATED, natural_key,
            record_id=record_id, changes=sorted(changes), applied=apply
        )

    def _find_event(self, source: str, source_id: str, apply: bool) -> Optional[CanonicalEvent]:
        if not apply:
            shadow = self._recall(event_natural_key(source, source_id))
            if shadow is not None:
                return shadow
        return self.store.get_event(source, source_id)

    def _find_attendee(self, candidate: Attendee, apply: bool) -> Optional[Attendee]:
        if not apply:
            shadow = self._recall(candidate.natural_key)
            if shadow is not None:
                return shadow
        if candidate.event_id is None:
            return None
        return self.store.get_attendee(candidate.event_id, candidate.attendee_identifier)

    def _remember(self, natural_key: str, record: Any) -> None:
        with self._shadow_guard:
            self._shadow[natural_key] = record

    def _recall(self, natural_key: str) -> Any:
        with self._shadow_guard:
            return self._shadow.get(natural_key)

    def _outcome(
        self,
        kind: str,
        classification: Classification,
        natural_key: str,
        record_id: Optional[str] = None,
        reason: Optional[str] = None,
        changes=None,
        applied: bool = False
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            kind=kind,
            classification=classification,
            natural_key=natural_key,
            record_id=record_id,
            reason=reason,
            changes=changes or [],
            applied=applied,
        )
