"""DynamoDB-backed store for canonical events and attendees."""
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from canonical.errors import ReconciliationWriteError, WriteConflict
from canonical.models import (
    ABSENT,
    ATTENDEE_MERGE_FIELDS,
    EVENT_MERGE_FIELDS,
    Attendee,
    CanonicalEvent,
    RsvpStatus,
    event_natural_key,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fixed width so string comparison in condition expressions orders correctly.
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

EVENT_TIMESTAMP_FIELDS = ('starts_at', 'ends_at', 'source_updated_at', 'created_at', 'updated_at')
ATTENDEE_TIMESTAMP_FIELDS = ('registered_at', 'checked_in_at', 'source_updated_at', 'created_at', 'updated_at')
FLOAT_FIELDS = ('lat', 'lng')


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _to_attribute(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return Decimal(str(value))
    return value


class CanonicalStore:
    """Single store of canonical events and attendees."""

    def __init__(
        self,
        events_table_name: str,
        attendees_table_name: str,
        region_name: Optional[str] = None
    ):
        """
        Initialize table references.

        Args:
            events_table_name: Table keyed by natural_key
            attendees_table_name: Table keyed by (event_id, attendee_identifier)
            region_name: Optional AWS region
        """
        self.events_table_name = events_table_name
        self.attendees_table_name = attendees_table_name
        self.region_name = region_name
        self._local = threading.local()
        logger.info(
            f"Initialized CanonicalStore for tables: {events_table_name}, {attendees_table_name}"
        )

    @property
    def events_table(self):
        return self._tables()['events']

    @property
    def attendees_table(self):
        return self._tables()['attendees']

    def _tables(self) -> Dict[str, Any]:
        # boto3 sessions and resources are not thread-safe, so each thread gets its own.
        tables = getattr(self._local, 'tables', None)
        if tables is None:
            dynamodb = boto3.session.Session().resource('dynamodb', region_name=self.region_name)
            tables = {
                'events': dynamodb.Table(self.events_table_name),
                'attendees': dynamodb.Table(self.attendees_table_name),
            }
            self._local.tables = tables
        return tables

    # Events

    def get_event(self, source: str, source_id: str) -> Optional[CanonicalEvent]:
        """
        Look up an event by its natural key.

        Args:
            source: Provider name
            source_id: Provider's event id

        Returns:
            CanonicalEvent or None if absent
        """
        key = event_natural_key(source, source_id)
        response = self.events_table.get_item(Key={'natural_key': key}, ConsistentRead=True)
        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def insert_event(self, event: CanonicalEvent) -> CanonicalEvent:
        """
        Insert a new event, failing if its natural key already exists.

        Args:
            event: Candidate event (id is assigned here)

        Returns:
            Stored event with id and bookkeeping timestamps

        Raises:
            WriteConflict: If a row with the same natural key exists
            ReconciliationWriteError: On any other write failure
        """
        now = utc_now()
        stored = replace(event, id=uuid.uuid4().hex, created_at=now, updated_at=now)
        item = self._event_to_item(stored)

        self._write(
            lambda: self.events_table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(natural_key)'
            ),
            stored.natural_key
        )
        logger.info(f"Inserted canonical event {stored.natural_key} as {stored.id}")
        return stored

    def update_event(
        self,
        existing: CanonicalEvent,
        changes: Dict[str, Any],
        source_updated_at: Optional[datetime] = None,
        source_updated_raw: Optional[str] = None
    ) -> None:
        """
        Apply a field-level diff to a stored event.

        Args:
            existing: Stored event being updated
            changes: Field name to new value; None removes the attribute
            source_updated_at: Candidate source timestamp, if any
            source_updated_raw: Candidate source timestamp, verbatim

        Raises:
            WriteConflict: If the stored source timestamp is not older
            ReconciliationWriteError: On any other write failure
        """
        self._update(
            self.events_table,
            {'natural_key': existing.natural_key},
            'natural_key',
            changes,
            source_updated_at,
            source_updated_raw,
            existing.natural_key
        )
        logger.info(f"Updated canonical event {existing.natural_key}: {sorted(changes)}")

    def scan_events(self) -> Dict[str, CanonicalEvent]:
        """
        Retrieve all events using a paginated Scan.

        Returns:
            Dictionary mapping natural_key to CanonicalEvent
        """
        return {
            event.natural_key: event
            for event in (self._item_to_event(item) for item in self._scan(self.events_table))
        }

    # Attendees

    def get_attendee(self, event_id: str, attendee_identifier: str) -> Optional[Attendee]:
        """Look up an attendee by (event_id, attendee_identifier)."""
        response = self.attendees_table.get_item(
            Key={'event_id': event_id, 'attendee_identifier': attendee_identifier},
            ConsistentRead=True
        )
        item = response.get('Item')
        return self._item_to_attendee(item) if item else None

    def insert_attendee(self, attendee: Attendee) -> Attendee:
        """
        Insert a new attendee record for a resolved event.

        Raises:
            WriteConflict: If the attendee already exists
            ReconciliationWriteError: On any other write failure
        """
        if not attendee.event_id:
            raise ReconciliationWriteError(f"Attendee {attendee.natural_key} has no event_id")

        now = utc_now()
        stored = replace(attendee, created_at=now, updated_at=now)
        item = self._attendee_to_item(stored)

        self._write(
            lambda: self.attendees_table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(attendee_identifier)'
            ),
            stored.natural_key
        )
        logger.info(f"Inserted attendee {stored.natural_key}")
        return stored

    def update_attendee(
        self,
        existing: Attendee,
        changes: Dict[str, Any],
        source_updated_at: Optional[datetime] = None,
        source_updated_raw: Optional[str] = None
    ) -> None:
        """Apply a field-level diff to a stored attendee."""
        self._update(
            self.attendees_table,
            {'event_id': existing.event_id, 'attendee_identifier': existing.attendee_identifier},
            'attendee_identifier',
            changes,
            source_updated_at,
            source_updated_raw,
            existing.natural_key
        )
        logger.info(f"Updated attendee {existing.natural_key}: {sorted(changes)}")

    def scan_attendees(self, event_id: Optional[str] = None) -> List[Attendee]:
        """
        Retrieve attendees, optionally for one event only.

        Args:
            event_id: Internal event id to query

        Returns:
            List of Attendee objects
        """
        if event_id is None:
            items = self._scan(self.attendees_table)
        else:
            items = []
            kwargs = {'KeyConditionExpression': Key('event_id').eq(event_id)}
            while True:
                response = self.attendees_table.query(**kwargs)
                items.extend(response.get('Items', []))
                if 'LastEvaluatedKey' not in response:
                    break
                kwargs['ExclusiveStartKey'] = response['LastEvaluatedKey']
        return [self._item_to_attendee(item) for item in items]

    # Internals

    def _scan(self, table) -> List[Dict[str, Any]]:
        try:
            response = table.scan()
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = table.scan(ExclusiveStartKey=response['LastEvaluatedKey'])
                items.extend(response.get('Items', []))

            logger.info(f"Retrieved {len(items)} items from {table.name}")
            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
            raise

    def _write(self, operation, natural_key: str) -> None:
        try:
            operation()
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code == 'ConditionalCheckFailedException':
                raise WriteConflict(f"Conditional write rejected for {natural_key}")
            logger.error(f"Error writing {natural_key}: {e}")
            raise ReconciliationWriteError(f"Write failed for {natural_key}: {e}")
        except BotoCoreError as e:
            logger.error(f"Error writing {natural_key}: {e}")
            raise ReconciliationWriteError(f"Write failed for {natural_key}: {e}")

    def _update(
        self,
        table,
        key: Dict[str, str],
        key_attribute: str,
        changes: Dict[str, Any],
        source_updated_at: Optional[datetime],
        source_updated_raw: Optional[str],
        natural_key: str
    ) -> None:
        names = {'#key': key_attribute}
        values = {}
        sets = []
        removes = []

        # A bare timestamp advance leaves updated_at alone.
        if changes:
            names['#updated_at'] = 'updated_at'
            values[':now'] = format_timestamp(utc_now())
            sets.append('#updated_at = :now')

        for index, (name, value) in enumerate(sorted(changes.items())):
            alias = f'#f{index}'
            names[alias] = name
            if value is None:
                removes.append(alias)
            else:
                values[f':v{index}'] = _to_attribute(value)
                sets.append(f'{alias} = :v{index}')

        condition = 'attribute_exists(#key)'
        if source_updated_at is not None:
            names['#src_ts'] = 'source_updated_at'
            values[':src_ts'] = format_timestamp(source_updated_at)
            sets.append('#src_ts = :src_ts')
            condition += ' AND (attribute_not_exists(#src_ts) OR #src_ts < :src_ts)'
            if source_updated_raw:
                names['#src_raw'] = 'source_updated_raw'
                values[':src_raw'] = source_updated_raw
                sets.append('#src_raw = :src_raw')

        if not sets and not removes:
            return

        clauses = []
        if sets:
            clauses.append('SET ' + ', '.join(sets))
        if removes:
            clauses.append('REMOVE ' + ', '.join(removes))
        expression = ' '.join(clauses)

        self._write(
            lambda: table.update_item(
                Key=key,
                UpdateExpression=expression,
                ConditionExpression=condition,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values
            ),
            natural_key
        )

    def _event_to_item(self, event: CanonicalEvent) -> Dict[str, Any]:
        """
        Convert a CanonicalEvent to a DynamoDB item.

        Absent and None fields are left out of the item.
        """
        item = {
            'natural_key': event.natural_key,
            'id': event.id,
            'source': event.source,
            'source_id': event.source_id,
        }
        for name in EVENT_MERGE_FIELDS + ('source_updated_at', 'source_updated_raw', 'created_at', 'updated_at'):
            value = getattr(event, name)
            if value is None or value is ABSENT:
                continue
            item[name] = _to_attribute(value)
        return item

    def _item_to_event(self, item: Dict[str, Any]) -> CanonicalEvent:
        """
        Convert a DynamoDB item to a CanonicalEvent.

        Attributes missing from the item come back as None.
        """
        values = {}
        for name in EVENT_MERGE_FIELDS + ('source_updated_at', 'source_updated_raw', 'created_at', 'updated_at'):
            value = item.get(name)
            if value is not None and name in EVENT_TIMESTAMP_FIELDS:
                value = parse_timestamp(value)
            elif value is not None and name in FLOAT_FIELDS:
                value = float(value)
            values[name] = value
        values['cancelled'] = bool(values.get('cancelled'))

        return CanonicalEvent(
            id=item.get('id'),
            source=item['source'],
            source_id=item['source_id'],
            **values
        )

    def _attendee_to_item(self, attendee: Attendee) -> Dict[str, Any]:
        item = {
            'event_id': attendee.event_id,
            'attendee_identifier': attendee.attendee_identifier,
            'event_source': attendee.event_source,
            'event_source_id': attendee.event_source_id,
        }
        for name in ATTENDEE_MERGE_FIELDS + ('source_updated_at', 'source_updated_raw', 'created_at', 'updated_at'):
            value = getattr(attendee, name)
            if value is None or value is ABSENT:
                continue
            item[name] = _to_attribute(value)
        return item

    def _item_to_attendee(self, item: Dict[str, Any]) -> Attendee:
        values = {}
        for name in ATTENDEE_MERGE_FIELDS + ('source_updated_at', 'source_updated_raw', 'created_at', 'updated_at'):
            value = item.get(name)
            if value is not None and name in ATTENDEE_TIMESTAMP_FIELDS:
                value = parse_timestamp(value)
            values[name] = value
        values['status'] = RsvpStatus(values['status']) if values.get('status') else RsvpStatus.INVITED

        return Attendee(
            event_id=item['event_id'],
            attendee_identifier=item['attendee_identifier'],
            event_source=item['event_source'],
            event_source_id=item['event_source_id'],
            **values
        )
