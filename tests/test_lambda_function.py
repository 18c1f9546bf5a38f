"""Integration tests for Lambda handler."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest

from canonical.errors import ConfigurationError, UnknownCalendar
from canonical.models import CalendarResult, SyncMode, SyncRun
from lambda_function import JsonFormatter, lambda_handler, setup_logging


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'EVENTS_TABLE_NAME': 'test-canonical-events',
        'ATTENDEES_TABLE_NAME': 'test-canonical-attendees',
        'LOG_LEVEL': 'INFO',
        'TIMEOUT_SECONDS': '30',
        'LUMA_API_SYNC': 'true',
        'CANONICAL_EVENTS_WRITE': 'true',
        'LUMA_BLR_API_KEY': 'key-blr',
        'LUMA_WEBHOOK_SECRET': 'shh',
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def sample_run():
    """A finished apply run over one calendar."""
    result = CalendarResult(calendar_key='blr', name='BLRxZo (Bangalore)', provider='luma')
    result.events.created = 2
    result.attendees.updated = 3
    return SyncRun(mode=SyncMode.APPLY, calendars=[result]).finish()


def api_event(method, path, params=None, body=None, headers=None):
    return {
        'httpMethod': method,
        'path': path,
        'queryStringParameters': params,
        'headers': headers or {},
        'body': body,
        'isBase64Encoded': False,
    }


class TestLambdaHandler:
    """Test cases for Lambda handler."""

    @patch('lambda_function.build_orchestrator')
    def test_post_sync_runs_apply(self, mock_build, mock_env, mock_context, sample_run):
        """Test successful end-to-end sync request."""
        mock_orchestrator = Mock()
        mock_orchestrator.run_sync.return_value = sample_run
        mock_build.return_value = mock_orchestrator

        response = lambda_handler(
            api_event('POST', '/sync', {'apply': 'true', 'calendar': 'blr', 'verbose': '1'}),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['success'] is True
        assert body['mode'] == 'apply'
        assert body['stats']['totals']['events']['created'] == 2
        assert body['stats']['perCalendar'][0]['calendar'] == 'blr'
        assert body['config']['feature_flags'] == {'luma_api_sync': True, 'canonical_events_write': True}
        assert 'duration_ms' in body
        assert 'timestamp' in body
        mock_orchestrator.run_sync.assert_called_once_with(dry_run=False, calendar_filter='blr', verbose=True)

    @patch('lambda_function.build_orchestrator')
    def test_post_sync_defaults_to_dry_run(self, mock_build, mock_env, mock_context, sample_run):
        mock_build.return_value.run_sync.return_value = sample_run

        lambda_handler(api_event('POST', '/sync'), mock_context)

        mock_build.return_value.run_sync.assert_called_once_with(dry_run=True, calendar_filter=None, verbose=False)

    @patch('lambda_function.build_orchestrator')
    def test_unknown_calendar_is_bad_request(self, mock_build, mock_env, mock_context):
        mock_build.return_value.run_sync.side_effect = UnknownCalendar("Unknown calendar 'nope'")

        response = lambda_handler(api_event('POST', '/sync', {'calendar': 'nope'}), mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['success'] is False
        assert 'nope' in body['error']

    @patch('lambda_function.build_orchestrator')
    def test_unexpected_error_is_server_error(self, mock_build, mock_env, mock_context):
        mock_build.return_value.run_sync.side_effect = RuntimeError('DynamoDB exploded')

        response = lambda_handler(api_event('POST', '/sync'), mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['error'] == 'DynamoDB exploded'
        assert body['error_type'] == 'RuntimeError'

    def test_configuration_error_is_server_error(self, mock_env, mock_context):
        with patch('lambda_function.load_settings', side_effect=ConfigurationError('SYNC_CALENDARS is not valid JSON')):
            response = lambda_handler(api_event('POST', '/sync'), mock_context)

        assert response['statusCode'] == 500
        assert json.loads(response['body'])['error_type'] == 'ConfigurationError'

    def test_get_sync_reports_status(self, mock_env, mock_context):
        response = lambda_handler(api_event('GET', '/sync'), mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['status'] == 'ready'
        assert body['worker'] == 'canonical-event-sync'
        assert [calendar['key'] for calendar in body['calendars']] == ['blr']
        assert 'credential' not in body['calendars'][0]
        assert 'usage' in body

    @patch('lambda_function.build_webhook_receiver')
    def test_webhook_route(self, mock_build, mock_env, mock_context):
        mock_build.return_value.handle.return_value = {'ok': True}

        response = lambda_handler(
            api_event('POST', '/webhooks/luma', body='{}', headers={'x-luma-webhook-secret': 'shh'}),
            mock_context
        )

        assert response['statusCode'] == 200
        assert json.loads(response['body']) == {'ok': True}
        mock_build.return_value.handle.assert_called_once_with(
            'luma', {'x-luma-webhook-secret': 'shh'}, '{}', is_base64_encoded=False
        )

    def test_unknown_route_is_not_found(self, mock_env, mock_context):
        response = lambda_handler(api_event('DELETE', '/events'), mock_context)

        assert response['statusCode'] == 404
        assert json.loads(response['body']) == {'message': 'Not found'}

    @patch('lambda_function.build_orchestrator')
    def test_scheduled_event_uses_scheduled_apply(self, mock_build, mock_env, mock_context, sample_run):
        """Test EventBridge invocations run a sync without HTTP routing."""
        mock_build.return_value.run_sync.return_value = sample_run
        scheduled = {'source': 'aws.events', 'detail-type': 'Scheduled Event', 'detail': {}}

        with patch.dict(os.environ, {'SCHEDULED_APPLY': 'true'}):
            response = lambda_handler(scheduled, mock_context)

        assert response['statusCode'] == 200
        mock_build.return_value.run_sync.assert_called_once_with(dry_run=False, calendar_filter=None, verbose=False)


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord('sync.orchestrator', logging.INFO, __file__, 1, 'Sync finished', None, None)
        record.calendar = 'blr'

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'Sync finished'
        assert data['level'] == 'INFO'
        assert data['logger'] == 'sync.orchestrator'
        assert data['calendar'] == 'blr'
