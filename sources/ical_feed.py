"""Fetcher and parser for iCal calendar feeds."""
import logging
import re
import time
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from icalendar import Calendar

from canonical.errors import InvalidPayload, SourceUnavailable

logger = logging.getLogger(__name__)

LUMA_URL_PATTERN = re.compile(r'https://(?:lu\.ma|luma\.com)/[^\s<>"\\]+')
ADDRESS_PATTERN = re.compile(r'Address:\s*([^\n]+)')
HTML_PATTERN = re.compile(r'<[a-zA-Z][^>]*>')


class ICalFeedReader:
    """Reader for iCal (.ics) feeds such as Luma calendar exports."""

    def __init__(self, timeout: int = 30, max_retries: int = 3, base_delay: float = 1.0):
        """
        Initialize the feed reader.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            max_retries: Attempts per feed before giving up (default: 3)
            base_delay: First backoff delay in seconds (default: 1)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    def fetch_events(self, url: str) -> List[Dict[str, Any]]:
        """Fetch a feed and parse its events."""
        return self.parse(self.fetch(url))

    def fetch(self, url: str) -> str:
        """
        Fetch feed text with retry logic.

        Args:
            url: Feed URL

        Returns:
            Feed body as text

        Raises:
            SourceUnavailable: If all retry attempts fail
        """
        headers = {'Accept': 'text/calendar, text/plain, */*'}

        for attempt in range(self.max_retries):
            try:
                logger.info(f"Fetching iCal feed (attempt {attempt + 1}/{self.max_retries})")
                response = requests.get(url, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                return response.text

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    status = getattr(getattr(e, 'response', None), 'status_code', None)
                    raise SourceUnavailable(f"iCal feed unavailable: {e}", status_code=status, url=url)

        raise SourceUnavailable("iCal feed was not attempted", url=url)

    def parse(self, ics_text: str) -> List[Dict[str, Any]]:
        """
        Parse feed text into raw event dicts.

        Args:
            ics_text: iCalendar document

        Returns:
            List of raw event dicts (see _parse_component)

        Raises:
            InvalidPayload: If the text is not an iCalendar document
        """
        if not ics_text or 'BEGIN:VCALENDAR' not in ics_text:
            raise InvalidPayload("Response does not appear to be iCal data")

        try:
            calendar = Calendar.from_ical(ics_text)
        except ValueError as e:
            raise InvalidPayload(f"Unparseable iCal data: {e}")

        default_tz = self._text(calendar.get('X-WR-TIMEZONE'))
        events = []

        for component in calendar.walk('VEVENT'):
            try:
                event = self._parse_component(component, default_tz)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Failed to parse iCal event: {e}")
                continue
            if event:
                events.append(event)

        logger.info(f"Parsed {len(events)} events from iCal feed")
        return events

    def _parse_component(self, component, default_tz: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Extract one VEVENT into a plain dict.

        Returns:
            Dict with uid, summary, description, location, url, geo,
            dtstart, dtend, timezone, status, organizer, categories and
            last_modified, or None when SUMMARY or DTSTART is missing
        """
        summary = self._text(component.get('SUMMARY'))
        dtstart_prop = component.get('DTSTART')
        if not summary or dtstart_prop is None:
            logger.warning(f"Skipping iCal event without SUMMARY or DTSTART: {summary!r}")
            return None

        description = self._description(component.get('DESCRIPTION'))
        location = self._text(component.get('LOCATION'))

        if description and (not location or location.startswith('http')):
            address = ADDRESS_PATTERN.search(description)
            if address:
                location = address.group(1).strip()

        url = self._text(component.get('URL'))
        if not url and description:
            match = LUMA_URL_PATTERN.search(description)
            if match:
                url = match.group(0).rstrip('\\')

        dtend_prop = component.get('DTEND')
        last_modified = component.get('LAST-MODIFIED') or component.get('DTSTAMP')

        return {
            'uid': self._text(component.get('UID')),
            'summary': summary,
            'description': description,
            'location': location,
            'url': url,
            'geo': self._geo(component.get('GEO')),
            'dtstart': dtstart_prop.dt,
            'dtend': dtend_prop.dt if dtend_prop is not None else None,
            'timezone': dtstart_prop.params.get('TZID') or default_tz,
            'status': self._text(component.get('STATUS')),
            'organizer': self._organizer(component.get('ORGANIZER')),
            'categories': self._categories(component.get('CATEGORIES')),
            'last_modified': last_modified.to_ical().decode('utf-8') if last_modified is not None else None,
        }

    def _text(self, value) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _description(self, value) -> Optional[str]:
        text = self._text(value)
        if not text or not HTML_PATTERN.search(text):
            return text

        soup = BeautifulSoup(text, 'html.parser')
        links = [a.get('href') for a in soup.find_all('a') if a.get('href')]
        plain = soup.get_text('\n', strip=True)
        # Keep Luma links discoverable after stripping the markup.
        for link in links:
            if LUMA_URL_PATTERN.match(link) and link not in plain:
                plain = f"{plain}\n{link}"
        return plain or None

    def _geo(self, value):
        if value is None:
            return None
        latitude = getattr(value, 'latitude', None)
        longitude = getattr(value, 'longitude', None)
        if latitude is None or longitude is None:
            return None
        return (float(latitude), float(longitude))

    def _organizer(self, value) -> Optional[str]:
        text = self._text(value)
        if not text:
            return None
        if text.lower().startswith('mailto:'):
            text = text[len('mailto:'):]
        return text or None

    def _categories(self, value) -> List[str]:
        if value is None:
            return []
        values = value if isinstance(value, list) else [value]
        categories = []
        for item in values:
            cats = getattr(item, 'cats', None)
            if cats is None:
                cats = [item]
            categories.extend(str(cat).strip() for cat in cats if str(cat).strip())
        return categories
