"""AWS Lambda handler for the canonical event sync worker."""
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from canonical.errors import UnknownCalendar
from config import Settings, load_settings
from sources.adapters import build_adapters
from sources.ical_feed import ICalFeedReader
from sources.luma_client import LumaClient
from storage.canonical_store import CanonicalStore
from sync.orchestrator import SyncOrchestrator
from sync.webhook import WebhookReceiver

WORKER_NAME = 'canonical-event-sync'

WEBHOOK_PATH = re.compile(r'^/webhooks/(?P<provider>[A-Za-z0-9_-]+)/?$')

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> CanonicalStore:
    return CanonicalStore(
        events_table_name=settings.events_table,
        attendees_table_name=settings.attendees_table,
        region_name=settings.region_name
    )


def build_orchestrator(settings: Settings) -> SyncOrchestrator:
    """Wire the orchestrator from settings."""
    adapters = build_adapters(
        luma_client=LumaClient(timeout=settings.timeout_seconds),
        ical_reader=ICalFeedReader(timeout=settings.timeout_seconds)
    )
    return SyncOrchestrator(
        store=build_store(settings),
        directory=settings.calendar_directory(),
        adapters=adapters,
        flags=settings.flags,
        max_workers=settings.max_workers,
        days_back=settings.days_back
    )


def build_webhook_receiver(settings: Settings) -> WebhookReceiver:
    """Wire the webhook receiver from settings."""
    return WebhookReceiver(
        store=build_store(settings),
        adapters=build_adapters(),
        flags=settings.flags,
        secrets=settings.webhook_secrets
    )


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truthy(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _method(event: Dict[str, Any]) -> Optional[str]:
    method = event.get('httpMethod')
    if method is None:
        method = event.get('requestContext', {}).get('http', {}).get('method')
    return method.upper() if method else None


def _path(event: Dict[str, Any]) -> str:
    return (event.get('path') or event.get('rawPath') or '/').rstrip('/') or '/'


def handle_sync(settings: Settings, dry_run: bool, calendar_filter: Optional[str], verbose: bool) -> Dict[str, Any]:
    """
    Run a sync and shape the HTTP response.

    Args:
        settings: Worker settings
        dry_run: Classify only when true
        calendar_filter: Optional calendar key or provider calendar id
        verbose: Include per-record outcomes

    Returns:
        Response dict with statusCode and the run summary
    """
    orchestrator = build_orchestrator(settings)

    try:
        run = orchestrator.run_sync(dry_run=dry_run, calendar_filter=calendar_filter, verbose=verbose)
    except UnknownCalendar as e:
        logger.warning(f"Rejected sync request: {e}", extra={'calendar_filter': calendar_filter})
        return _response(400, {'success': False, 'error': str(e), 'timestamp': _timestamp()})

    summary = run.to_dict()
    return _response(200, {
        'success': run.success,
        'mode': summary['mode'],
        'dry_run': run.dry_run,
        'disabled': run.disabled,
        'partial_failure': summary['partial_failure'],
        'stats': {
            'perCalendar': summary['perCalendar'],
            'totals': summary['totals'],
        },
        'duration_ms': summary['duration_ms'],
        'config': {
            'feature_flags': settings.flags.to_dict(),
            'calendar_filter': calendar_filter,
            'verbose': verbose,
        },
        'timestamp': _timestamp()
    })


def handle_status(settings: Settings) -> Dict[str, Any]:
    return _response(200, {
        'status': 'ready',
        'worker': WORKER_NAME,
        'feature_flags': settings.flags.to_dict(),
        'calendars': [calendar.describe() for calendar in settings.calendar_directory().list_configured_calendars()],
        'usage': {
            'dry_run': 'POST /sync',
            'apply': 'POST /sync?apply=true',
            'single_calendar': 'POST /sync?calendar=<key>',
            'verbose': 'POST /sync?verbose=true',
            'webhook': 'POST /webhooks/<provider>',
        },
        'timestamp': _timestamp()
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the canonical event sync.

    Routes API Gateway proxy requests (POST/GET /sync, POST
    /webhooks/{provider}) and runs a full sync for EventBridge
    scheduled events.

    Args:
        event: API Gateway proxy event or EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    start_time = time.time()
    event = event or {}

    try:
        settings = load_settings()
        setup_logging(settings.log_level)

        method = _method(event)
        path = _path(event)
        params = event.get('queryStringParameters') or {}

        logger.info(
            "Lambda execution started",
            extra={'method': method, 'path': path if method else None}
        )

        if method is None:
            return handle_sync(settings, dry_run=not settings.scheduled_apply, calendar_filter=None, verbose=False)

        if path == '/sync' and method == 'POST':
            return handle_sync(
                settings,
                dry_run=not _truthy(params.get('apply')),
                calendar_filter=params.get('calendar') or None,
                verbose=_truthy(params.get('verbose'))
            )

        if path == '/sync' and method == 'GET':
            return handle_status(settings)

        match = WEBHOOK_PATH.match(path)
        if match and method == 'POST':
            provider = (event.get('pathParameters') or {}).get('provider') or match.group('provider')
            receiver = build_webhook_receiver(settings)
            return _response(200, receiver.handle(
                provider,
                event.get('headers') or {},
                event.get('body'),
                is_base64_encoded=bool(event.get('isBase64Encoded'))
            ))

        return _response(404, {'message': 'Not found'})

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'success': False,
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })
