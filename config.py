"""Configuration for the canonical event sync, read from environment variables."""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from canonical.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ('luma', 'ical')

# Luma calendars always known to the worker; keys come from the environment.
BUILTIN_LUMA_CALENDARS = (
    {
        'key': 'blr',
        'name': 'BLRxZo (Bangalore)',
        'calendar_id': 'cal-ZVonmjVxLk7F2oM',
        'credential_env': 'LUMA_BLR_API_KEY',
    },
    {
        'key': 'zo_events',
        'name': 'Zo Events (Global)',
        'calendar_id': 'cal-3YNnBTToy9fnnjQ',
        'credential_env': 'LUMA_ZO_EVENTS_API_KEY',
    },
)


def _flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'")


@dataclass(frozen=True)
class CalendarConfig:
    """One configured source calendar."""
    key: str
    name: str
    provider: str
    calendar_id: Optional[str] = None
    credential: str = ''
    url: Optional[str] = None

    @property
    def active(self) -> bool:
        if self.provider == 'ical':
            return bool(self.url)
        return bool(self.credential)

    def matches(self, calendar_filter: str) -> bool:
        return calendar_filter in (self.key, self.calendar_id)

    def describe(self) -> Dict[str, Optional[str]]:
        """Public view of the calendar, without its credential."""
        return {
            'key': self.key,
            'name': self.name,
            'provider': self.provider,
            'calendar_id': self.calendar_id,
        }


@dataclass(frozen=True)
class FeatureFlags:
    """Feature switches passed explicitly to the orchestrator and receiver."""
    sync_enabled: bool = True
    write_enabled: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            'luma_api_sync': self.sync_enabled,
            'canonical_events_write': self.write_enabled,
        }


class CalendarDirectory:
    """Source of configured calendars and their credentials."""

    def list_configured_calendars(self) -> List[CalendarConfig]:
        raise NotImplementedError


class StaticCalendarDirectory(CalendarDirectory):
    """Directory over a fixed list, returning active calendars only."""

    def __init__(self, calendars: List[CalendarConfig]):
        self.calendars = list(calendars)

    def list_configured_calendars(self) -> List[CalendarConfig]:
        active = []
        for calendar in self.calendars:
            if calendar.active:
                active.append(calendar)
            else:
                logger.debug(f"Calendar '{calendar.key}' has no credential, skipping")
        return active


@dataclass(frozen=True)
class Settings:
    """Runtime settings of the worker."""
    events_table: str = 'canonical-events'
    attendees_table: str = 'canonical-attendees'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    max_workers: int = 1
    days_back: Optional[int] = None
    scheduled_apply: bool = False
    flags: FeatureFlags = field(default_factory=FeatureFlags)
    webhook_secrets: Dict[str, str] = field(default_factory=dict)
    calendars: List[CalendarConfig] = field(default_factory=list)

    def calendar_directory(self) -> StaticCalendarDirectory:
        return StaticCalendarDirectory(self.calendars)


def load_calendars(environ: Mapping[str, str]) -> List[CalendarConfig]:
    """
    Build the calendar list from built-in Luma calendars and SYNC_CALENDARS.

    Args:
        environ: Environment mapping

    Returns:
        All calendars, active or not

    Raises:
        ConfigurationError: If SYNC_CALENDARS is malformed
    """
    calendars = []
    for entry in BUILTIN_LUMA_CALENDARS:
        calendars.append(CalendarConfig(
            key=entry['key'],
            name=entry['name'],
            provider='luma',
            calendar_id=entry['calendar_id'],
            credential=environ.get(entry['credential_env'], ''),
        ))

    raw = environ.get('SYNC_CALENDARS', '').strip()
    if not raw:
        return calendars

    try:
        entries = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(f"SYNC_CALENDARS is not valid JSON: {e}")
    if not isinstance(entries, list):
        raise ConfigurationError("SYNC_CALENDARS must be a JSON list")

    known = {calendar.key for calendar in calendars}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get('key'):
            raise ConfigurationError(f"Calendar entry needs a 'key': {entry!r}")
        provider = entry.get('provider', 'luma')
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported provider '{provider}' for calendar '{entry['key']}'")
        if entry['key'] in known:
            raise ConfigurationError(f"Duplicate calendar key '{entry['key']}'")

        credential = entry.get('credential', '')
        if entry.get('credential_env'):
            credential = environ.get(entry['credential_env'], '')

        calendars.append(CalendarConfig(
            key=entry['key'],
            name=entry.get('name', entry['key']),
            provider=provider,
            calendar_id=entry.get('calendar_id'),
            credential=credential,
            url=entry.get('url'),
        ))
        known.add(entry['key'])

    return calendars


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read worker settings from the environment.

    Args:
        environ: Environment mapping (default: os.environ)

    Returns:
        Settings instance
    """
    environ = os.environ if environ is None else environ

    days_back = environ.get('SYNC_DAYS_BACK', '').strip()
    webhook_secrets = {}
    if environ.get('LUMA_WEBHOOK_SECRET'):
        webhook_secrets['luma'] = environ['LUMA_WEBHOOK_SECRET']

    return Settings(
        events_table=environ.get('EVENTS_TABLE_NAME', 'canonical-events'),
        attendees_table=environ.get('ATTENDEES_TABLE_NAME', 'canonical-attendees'),
        region_name=environ.get('AWS_REGION') or None,
        log_level=environ.get('LOG_LEVEL', 'INFO'),
        timeout_seconds=_int(environ, 'TIMEOUT_SECONDS', 30),
        max_workers=max(1, _int(environ, 'SYNC_MAX_WORKERS', 1)),
        days_back=_int(environ, 'SYNC_DAYS_BACK', 0) if days_back else None,
        scheduled_apply=_flag(environ, 'SCHEDULED_APPLY', False),
        flags=FeatureFlags(
            sync_enabled=_flag(environ, 'LUMA_API_SYNC', True),
            write_enabled=_flag(environ, 'CANONICAL_EVENTS_WRITE', False),
        ),
        webhook_secrets=webhook_secrets,
        calendars=load_calendars(environ),
    )
