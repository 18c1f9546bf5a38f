"""Tests for WebhookReceiver."""
import base64
import json
import logging
from unittest.mock import Mock

import pytest

from canonical.models import RsvpStatus
from config import FeatureFlags
from sources.adapters import build_adapters
from sync.webhook import WebhookReceiver

SECRET = 'shh-its-a-secret'
HEADERS = {'X-Luma-Webhook-Secret': SECRET}


@pytest.fixture
def receiver(store):
    return WebhookReceiver(
        store=store,
        adapters=build_adapters(luma_client=Mock(), ical_reader=Mock()),
        flags=FeatureFlags(sync_enabled=True, write_enabled=True),
        secrets={'luma': SECRET}
    )


def body(event_type, **data):
    return json.dumps({'type': event_type, 'data': data})


class TestWebhookReceiver:
    """Test cases for webhook handling."""

    def test_event_created_is_applied(self, receiver, store, luma_event):
        result = receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        assert result == {'ok': True}
        assert store.get_event('luma', 'evt-abc123').title == 'Meetup'

    def test_event_canceled_marks_cancelled(self, receiver, store, luma_event):
        receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        cancelled = dict(luma_event, updated_at='2026-02-09T00:00:00.000Z')
        receiver.handle('luma', HEADERS, body('event.canceled', event=cancelled))

        assert store.get_event('luma', 'evt-abc123').cancelled is True

    def test_cancellation_with_only_event_id(self, receiver, store, luma_event):
        """Test a minimal cancellation body cancels and keeps the stored fields."""
        receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        receiver.handle('luma', HEADERS, body('event.cancelled', event={'api_id': 'evt-abc123'}))

        stored = store.get_event('luma', 'evt-abc123')
        assert stored.cancelled is True
        assert stored.title == 'Meetup'

    def test_cancellation_with_unchanged_timestamp(self, receiver, store, luma_event):
        receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        receiver.handle('luma', HEADERS, body('event.canceled', event=luma_event))

        assert store.get_event('luma', 'evt-abc123').cancelled is True

    def test_cancellation_of_unknown_event_creates_nothing(self, receiver, store):
        receiver.handle('luma', HEADERS, body('event.canceled', event={'api_id': 'evt-missing'}))

        assert store.scan_events() == {}

    def test_guest_registered_creates_attendee(self, receiver, store, luma_event, luma_guest):
        receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        receiver.handle('luma', HEADERS, body('guest.registered', guest=luma_guest))

        event = store.get_event('luma', 'evt-abc123')
        assert store.get_attendee(event.id, 'alice@example.com').status is RsvpStatus.GOING

    def test_header_lookup_is_case_insensitive(self, receiver, store, luma_event):
        receiver.handle('luma', {'x-luma-webhook-secret': SECRET}, body('event.updated', event=luma_event))

        assert store.get_event('luma', 'evt-abc123') is not None

    def test_base64_body(self, receiver, store, luma_event):
        encoded = base64.b64encode(body('event.created', event=luma_event).encode('utf-8')).decode('ascii')

        result = receiver.handle('luma', HEADERS, encoded, is_base64_encoded=True)

        assert result == {'ok': True}
        assert store.get_event('luma', 'evt-abc123') is not None

    @pytest.mark.parametrize('headers', [{}, {'X-Luma-Webhook-Secret': 'wrong'}])
    def test_bad_secret_acks_without_writing(self, receiver, store, luma_event, headers, caplog):
        """Test authentication failures still acknowledge the provider."""
        with caplog.at_level(logging.WARNING, logger='sync.webhook'):
            result = receiver.handle('luma', headers, body('event.created', event=luma_event))

        assert result == {'ok': True}
        assert store.scan_events() == {}
        assert any('Rejected luma webhook' in record.message for record in caplog.records)

    def test_missing_secret_configuration_fails_closed(self, store, luma_event):
        receiver = WebhookReceiver(
            store=store,
            adapters=build_adapters(luma_client=Mock(), ical_reader=Mock()),
            flags=FeatureFlags(sync_enabled=True, write_enabled=True),
            secrets={}
        )

        assert receiver.handle('luma', HEADERS, body('event.created', event=luma_event)) == {'ok': True}
        assert store.scan_events() == {}

    @pytest.mark.parametrize('payload', [
        None,
        '',
        'not json',
        '[1, 2, 3]',
        json.dumps({'type': 'event.created'}),
        json.dumps({'type': 'event.created', 'data': {'event': {'api_id': 'evt-1'}}}),
    ])
    def test_malformed_bodies_are_acknowledged(self, receiver, store, payload):
        assert receiver.handle('luma', HEADERS, payload) == {'ok': True}
        assert store.scan_events() == {}

    def test_unknown_type_is_ignored(self, receiver, store, caplog):
        with caplog.at_level(logging.INFO, logger='sync.webhook'):
            result = receiver.handle('luma', HEADERS, body('calendar.updated', calendar={}))

        assert result == {'ok': True}
        assert any("type 'calendar.updated'" in record.message for record in caplog.records)

    def test_unknown_provider_is_ignored(self, receiver, store):
        assert receiver.handle('eventbrite', HEADERS, '{}') == {'ok': True}

    def test_disabled_sync_ignores_delivery(self, store, luma_event):
        receiver = WebhookReceiver(
            store=store,
            adapters=build_adapters(luma_client=Mock(), ical_reader=Mock()),
            flags=FeatureFlags(sync_enabled=False, write_enabled=True),
            secrets={'luma': SECRET}
        )

        receiver.handle('luma', HEADERS, body('event.created', event=luma_event))

        assert store.scan_events() == {}

    def test_writes_disabled_runs_dry(self, store, luma_event):
        receiver = WebhookReceiver(
            store=store,
            adapters=build_adapters(luma_client=Mock(), ical_reader=Mock()),
            flags=FeatureFlags(sync_enabled=True, write_enabled=False),
            secrets={'luma': SECRET}
        )

        assert receiver.handle('luma', HEADERS, body('event.created', event=luma_event)) == {'ok': True}
        assert store.scan_events() == {}

    def test_unexpected_failure_still_acks(self, luma_event):
        store = Mock()
        store.get_event.side_effect = RuntimeError('boom')
        receiver = WebhookReceiver(
            store=store,
            adapters=build_adapters(luma_client=Mock(), ical_reader=Mock()),
            flags=FeatureFlags(sync_enabled=True, write_enabled=True),
            secrets={'luma': SECRET}
        )

        assert receiver.handle('luma', HEADERS, body('event.created', event=luma_event)) == {'ok': True}
