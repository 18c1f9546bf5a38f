"""Tests for SyncOrchestrator against a mocked Luma client and moto tables."""
from unittest.mock import Mock

import pytest

from canonical.errors import InvalidPayload, SourceUnavailable, UnknownCalendar
from canonical.models import SyncMode
from config import CalendarConfig, FeatureFlags, StaticCalendarDirectory
from sources.adapters import ICalAdapter, LumaAdapter
from sync.orchestrator import SyncOrchestrator

BLR = CalendarConfig(key='blr', name='BLR', provider='luma', calendar_id='cal-blr', credential='key-blr')
ZO = CalendarConfig(key='zo_events', name='Zo', provider='luma', calendar_id='cal-zo', credential='key-zo')
GOA = CalendarConfig(key='goa', name='Goa', provider='luma', calendar_id='cal-goa', credential='key-goa')


def fake_client(events_by_key, guests_by_event=None):
    """Mock LumaClient serving canned events per API key."""
    guests_by_event = guests_by_event or {}
    client = Mock()

    def list_events(api_key, after=None, before=None):
        events = events_by_key[api_key]
        if isinstance(events, Exception):
            raise events
        for event in events:
            if isinstance(event, Exception):
                raise event
            yield dict(event)

    def get_guests(api_key, event_id):
        guests = guests_by_event.get(event_id, [])
        if isinstance(guests, Exception):
            raise guests
        for guest in guests:
            yield dict(guest, event_api_id=event_id)

    client.list_events.side_effect = list_events
    client.get_guests.side_effect = get_guests
    return client


def make_orchestrator(store, client, calendars=(BLR,), flags=None, max_workers=1):
    return SyncOrchestrator(
        store=store,
        directory=StaticCalendarDirectory(list(calendars)),
        adapters={'luma': LumaAdapter(client=client), 'ical': ICalAdapter(reader=Mock())},
        flags=flags or FeatureFlags(sync_enabled=True, write_enabled=True),
        max_workers=max_workers
    )


class TestSyncOrchestrator:
    """Test cases for full sync runs."""

    def test_apply_creates_events_and_attendees(self, store, luma_event, luma_guest):
        client = fake_client({'key-blr': [luma_event]}, {'evt-abc123': [luma_guest]})

        run = make_orchestrator(store, client).run_sync(dry_run=False)

        totals = run.totals()
        assert run.mode is SyncMode.APPLY
        assert totals['events'] == {'created': 1, 'updated': 0, 'skipped': 0, 'errors': 0}
        assert totals['attendees']['created'] == 1
        assert len(store.scan_events()) == 1
        assert len(store.scan_attendees()) == 1
        assert run.finished_at is not None

    def test_meetup_rename_end_to_end(self, store, luma_event):
        """Test create, rename, then a quiet re-run."""
        luma_event['name'] = 'Meetup'
        events = {'key-blr': [luma_event]}
        orchestrator = make_orchestrator(store, fake_client(events))

        created = orchestrator.run_sync(dry_run=False).totals()['events']

        events['key-blr'] = [dict(luma_event, name='Meetup v2', updated_at='2026-02-05T10:00:00.000Z')]
        updated = orchestrator.run_sync(dry_run=False).totals()['events']
        quiet = orchestrator.run_sync(dry_run=False).totals()['events']

        assert created['created'] == 1
        assert updated['updated'] == 1
        assert quiet['skipped'] == 1
        stored = store.get_event('luma', 'evt-abc123')
        assert stored.title == 'Meetup v2'
        assert len(store.scan_events()) == 1

    def test_dry_run_matches_apply_without_writing(self, store, luma_event, luma_guest):
        """Test dry-run counts equal apply counts and nothing is written."""
        second = dict(luma_event, api_id='evt-def456', name='Workshop')
        client = fake_client(
            {'key-blr': [luma_event, second, luma_event]},
            {'evt-abc123': [luma_guest], 'evt-def456': []}
        )
        orchestrator = make_orchestrator(store, client)

        dry = orchestrator.run_sync(dry_run=True)
        assert store.scan_events() == {}
        assert store.scan_attendees() == []

        applied = orchestrator.run_sync(dry_run=False)

        assert dry.mode is SyncMode.DRY_RUN
        assert dry.totals()['events'] == applied.totals()['events']
        assert dry.totals()['attendees'] == applied.totals()['attendees']

    def test_calendar_failure_is_isolated(self, store, luma_event):
        """Test one unreachable calendar does not stop the others."""
        client = fake_client({
            'key-blr': [luma_event],
            'key-zo': SourceUnavailable('Luma API error: 503 after retries', status_code=503),
            'key-goa': [dict(luma_event, api_id='evt-goa')],
        })

        run = make_orchestrator(store, client, calendars=(BLR, ZO, GOA)).run_sync(dry_run=False)

        blr, zo, goa = run.calendars
        assert zo.failed
        assert 'SourceUnavailable' in zo.error
        assert blr.error is None and goa.error is None
        assert blr.events.created == 1
        assert goa.events.created == 1
        assert run.partial_failure
        assert run.totals()['calendars_failed'] == 1

    def test_mid_stream_failure_keeps_earlier_counts(self, store, luma_event):
        client = fake_client({'key-blr': [luma_event, InvalidPayload("missing 'entries'")]})

        run = make_orchestrator(store, client).run_sync(dry_run=False)

        result = run.calendars[0]
        assert result.events.created == 1
        assert 'InvalidPayload' in result.error

    def test_guest_failure_keeps_calendar_going(self, store, luma_event, luma_guest):
        """Test a guest list outage on one event does not stop the rest of the calendar."""
        client = fake_client(
            {'key-blr': [
                luma_event,
                dict(luma_event, api_id='evt-second'),
                dict(luma_event, api_id='evt-third'),
            ]},
            {
                'evt-abc123': SourceUnavailable('Luma API error: 503 after retries', status_code=503),
                'evt-third': [luma_guest],
            }
        )

        run = make_orchestrator(store, client).run_sync(dry_run=False)

        result = run.calendars[0]
        assert result.error is None
        assert result.events.created == 3
        assert result.attendees.created == 1
        assert len(store.scan_events()) == 3
        assert len(result.errors) == 1
        assert result.errors[0].startswith('luma#evt-abc123: guests SourceUnavailable')

    def test_unmappable_record_counts_as_error(self, store, luma_event):
        broken = {'api_id': 'evt-broken', 'name': 'No start'}
        client = fake_client({'key-blr': [broken, luma_event]})

        run = make_orchestrator(store, client).run_sync(dry_run=False)

        result = run.calendars[0]
        assert result.events.errors == 1
        assert result.events.created == 1
        assert result.error is None
        assert result.errors[0].startswith('evt-broken')

    def test_calendar_filter_by_key_or_provider_id(self, store, luma_event):
        client = fake_client({'key-blr': [luma_event], 'key-zo': []})
        orchestrator = make_orchestrator(store, client, calendars=(BLR, ZO))

        by_key = orchestrator.run_sync(calendar_filter='zo_events')
        by_id = orchestrator.run_sync(calendar_filter='cal-blr')

        assert [result.calendar_key for result in by_key.calendars] == ['zo_events']
        assert [result.calendar_key for result in by_id.calendars] == ['blr']

    def test_unknown_calendar_raises(self, store):
        orchestrator = make_orchestrator(store, fake_client({}))

        with pytest.raises(UnknownCalendar):
            orchestrator.run_sync(calendar_filter='nope')

    def test_sync_disabled_returns_empty_run(self, store):
        client = fake_client({'key-blr': []})
        orchestrator = make_orchestrator(store, client, flags=FeatureFlags(sync_enabled=False))

        run = orchestrator.run_sync(dry_run=False)

        assert run.disabled is True
        assert run.calendars == []
        client.list_events.assert_not_called()

    def test_apply_downgraded_when_writes_disabled(self, store, luma_event):
        client = fake_client({'key-blr': [luma_event]})
        flags = FeatureFlags(sync_enabled=True, write_enabled=False)

        run = make_orchestrator(store, client, flags=flags).run_sync(dry_run=False)

        assert run.mode is SyncMode.DRY_RUN
        assert run.totals()['events']['created'] == 1
        assert store.scan_events() == {}

    def test_parallel_calendars_keep_configuration_order(self, store, luma_event):
        other = dict(luma_event, api_id='evt-zo')
        client = fake_client({'key-blr': [luma_event], 'key-zo': [other]})

        run = make_orchestrator(store, client, calendars=(BLR, ZO), max_workers=4).run_sync(dry_run=False)

        assert [result.calendar_key for result in run.calendars] == ['blr', 'zo_events']
        assert run.totals()['events']['created'] == 2
        assert len(store.scan_events()) == 2

    def test_verbose_keeps_outcomes(self, store, luma_event):
        client = fake_client({'key-blr': [luma_event]})

        run = make_orchestrator(store, client).run_sync(verbose=True)

        data = run.to_dict()
        outcomes = data['perCalendar'][0]['outcomes']
        assert outcomes[0]['natural_key'] == 'luma#evt-abc123'
        assert outcomes[0]['classification'] == 'created'
        assert data['totals']['calendars_processed'] == 1
