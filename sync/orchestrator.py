"""Sync orchestrator: pull every configured calendar and reconcile it."""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from canonical.errors import InvalidPayload, SourceUnavailable, UnknownCalendar
from canonical.models import (
    CalendarResult,
    Classification,
    ReconcileOutcome,
    SyncMode,
    SyncRun,
    utc_now,
)
from config import CalendarConfig, CalendarDirectory, FeatureFlags
from sources.adapters import SourceAdapter
from storage.canonical_store import CanonicalStore
from sync.reconciler import KeyedLock, Reconciler

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """
    Drive a full sync across all configured calendars.

    Each calendar is isolated: a provider outage or a malformed feed is
    recorded on that calendar's result and the run moves on.
    """

    def __init__(
        self,
        store: CanonicalStore,
        directory: CalendarDirectory,
        adapters: Dict[str, SourceAdapter],
        flags: Optional[FeatureFlags] = None,
        max_workers: int = 1,
        days_back: Optional[int] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Canonical store shared by every calendar
            directory: Source of configured calendars
            adapters: Adapter per provider name
            flags: Feature switches (sync on, writes off by default)
            max_workers: Calendars processed concurrently
            days_back: Only pull events starting at most this many days ago
        """
        self.store = store
        self.directory = directory
        self.adapters = adapters
        self.flags = flags or FeatureFlags()
        self.max_workers = max(1, max_workers)
        self.days_back = days_back
        self.locks = KeyedLock()

    def run_sync(
        self,
        dry_run: bool = True,
        calendar_filter: Optional[str] = None,
        verbose: bool = False
    ) -> SyncRun:
        """
        Run one sync over the configured calendars.

        Args:
            dry_run: Classify without writing (default)
            calendar_filter: Calendar key or provider calendar id
            verbose: Keep per-record outcomes on the result

        Returns:
            SyncRun with per-calendar results and totals

        Raises:
            UnknownCalendar: If calendar_filter matches no active calendar
        """
        mode = SyncMode.DRY_RUN if dry_run else SyncMode.APPLY

        if not self.flags.sync_enabled:
            logger.warning("Sync is disabled by feature flag, nothing to do")
            return SyncRun(mode=mode, calendar_filter=calendar_filter, verbose=verbose, disabled=True).finish()

        if mode is SyncMode.APPLY and not self.flags.write_enabled:
            logger.warning("Canonical writes are disabled, downgrading run to dry-run")
            mode = SyncMode.DRY_RUN

        calendars = self._select_calendars(calendar_filter)
        run = SyncRun(mode=mode, calendar_filter=calendar_filter, verbose=verbose)
        reconciler = Reconciler(self.store, self.locks)
        window_start = self._window_start()

        logger.info(
            f"Starting {mode.value} sync of {len(calendars)} calendar(s)",
            extra={'mode': mode.value, 'calendar_filter': calendar_filter}
        )

        workers = min(self.max_workers, len(calendars))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(self._sync_calendar, calendar, reconciler, mode, window_start, verbose)
                    for calendar in calendars
                ]
                run.calendars = [future.result() for future in futures]
        else:
            run.calendars = [
                self._sync_calendar(calendar, reconciler, mode, window_start, verbose)
                for calendar in calendars
            ]

        run.finish()
        totals = run.totals()
        logger.info(
            f"Sync finished in {run.duration_ms}ms: "
            f"events {totals['events']}, attendees {totals['attendees']}",
            extra={'mode': mode.value, 'calendars_failed': totals['calendars_failed']}
        )
        return run

    def _select_calendars(self, calendar_filter: Optional[str]) -> List[CalendarConfig]:
        calendars = self.directory.list_configured_calendars()
        if not calendar_filter:
            return calendars

        selected = [calendar for calendar in calendars if calendar.matches(calendar_filter)]
        if not selected:
            raise UnknownCalendar(
                f"Unknown calendar '{calendar_filter}'. "
                f"Available: {', '.join(calendar.key for calendar in calendars) or 'none'}"
            )
        return selected

    def _window_start(self) -> Optional[datetime]:
        if self.days_back is None:
            return None
        return utc_now() - timedelta(days=self.days_back)

    def _sync_calendar(
        self,
        calendar: CalendarConfig,
        reconciler: Reconciler,
        mode: SyncMode,
        window_start: Optional[datetime],
        verbose: bool
    ) -> CalendarResult:
        """
        Pull, map and reconcile one calendar.

        Returns:
            CalendarResult; provider failures are recorded, never raised
        """
        result = CalendarResult(calendar_key=calendar.key, name=calendar.name, provider=calendar.provider)
        adapter = self.adapters.get(calendar.provider)
        if adapter is None:
            result.error = f"No adapter for provider '{calendar.provider}'"
            logger.error(result.error, extra={'calendar': calendar.key})
            return result

        logger.info(f"Syncing calendar '{calendar.name}' ({calendar.provider})")

        try:
            for item in adapter.pull(calendar, window_start):
                event_outcome = self._reconcile_event(adapter, calendar, item.raw_event, reconciler, mode)
                result.record(event_outcome, keep=verbose)
                if event_outcome.classification is Classification.ERROR:
                    continue

                try:
                    for raw_guest in item.raw_guests:
                        result.record(
                            self._reconcile_guest(adapter, raw_guest, reconciler, mode),
                            keep=verbose
                        )
                except (SourceUnavailable, InvalidPayload) as e:
                    # Guest failures stay with their event; the calendar carries on.
                    result.errors.append(f"{event_outcome.natural_key}: guests {type(e).__name__}: {e}")
                    logger.error(
                        f"Guests of {event_outcome.natural_key} failed: {e}",
                        extra={'calendar': calendar.key, 'error_type': type(e).__name__}
                    )

        except (SourceUnavailable, InvalidPayload) as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.error(
                f"Calendar '{calendar.key}' failed: {e}",
                extra={'calendar': calendar.key, 'error_type': type(e).__name__}
            )

        logger.info(
            f"Calendar '{calendar.key}' done: events {result.events.to_dict()}, "
            f"attendees {result.attendees.to_dict()}"
        )
        return result

    def _reconcile_event(
        self,
        adapter: SourceAdapter,
        calendar: CalendarConfig,
        raw_event: Dict[str, Any],
        reconciler: Reconciler,
        mode: SyncMode
    ) -> ReconcileOutcome:
        try:
            candidate = adapter.map_event(raw_event, calendar)
        except InvalidPayload as e:
            return self._mapping_error('event', raw_event, e)
        return reconciler.reconcile(candidate, mode)

    def _reconcile_guest(
        self,
        adapter: SourceAdapter,
        raw_guest: Dict[str, Any],
        reconciler: Reconciler,
        mode: SyncMode
    ) -> ReconcileOutcome:
        try:
            candidate = adapter.map_guest(raw_guest)
        except InvalidPayload as e:
            return self._mapping_error('attendee', raw_guest, e)
        return reconciler.reconcile(candidate, mode)

    def _mapping_error(self, kind: str, raw: Any, error: Exception) -> ReconcileOutcome:
        identifier = raw.get('api_id') or raw.get('uid') if isinstance(raw, dict) else None
        logger.warning(
            f"Could not map {kind} {identifier or '<unknown>'}: {error}",
            extra={'kind': kind}
        )
        return ReconcileOutcome(
            kind=kind,
            classification=Classification.ERROR,
            natural_key=str(identifier or '<unknown>'),
            reason=f"InvalidPayload: {error}",
        )
