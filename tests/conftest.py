"""Shared fixtures for the canonical event sync tests."""
import boto3
import pytest
from moto import mock_aws

from storage.canonical_store import CanonicalStore

EVENTS_TABLE = 'test-canonical-events'
ATTENDEES_TABLE = 'test-canonical-attendees'


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_tables(aws_credentials):
    """Create mock events and attendees tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        events = dynamodb.create_table(
            TableName=EVENTS_TABLE,
            KeySchema=[
                {'AttributeName': 'natural_key', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'natural_key', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        attendees = dynamodb.create_table(
            TableName=ATTENDEES_TABLE,
            KeySchema=[
                {'AttributeName': 'event_id', 'KeyType': 'HASH'},
                {'AttributeName': 'attendee_identifier', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'event_id', 'AttributeType': 'S'},
                {'AttributeName': 'attendee_identifier', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield {'events': events, 'attendees': attendees}


@pytest.fixture
def store(dynamodb_tables):
    """CanonicalStore over the mock tables."""
    return CanonicalStore(EVENTS_TABLE, ATTENDEES_TABLE, region_name='us-east-1')


@pytest.fixture
def luma_event():
    """Raw Luma event as returned by list-events."""
    return {
        'api_id': 'evt-abc123',
        'calendar_api_id': 'cal-ZVonmjVxLk7F2oM',
        'name': 'Meetup',
        'description_md': 'Monthly builders meetup',
        'start_at': '2026-03-01T18:00:00.000Z',
        'end_at': '2026-03-01T20:00:00.000Z',
        'timezone': 'Asia/Kolkata',
        'geo_address_json': {
            'description': 'Zo House',
            'full_address': '100 Feet Rd, Bengaluru',
            'latitude': '12.9716',
            'longitude': '77.5946',
        },
        'cover_url': 'https://images.lu.ma/cover.png',
        'url': 'https://lu.ma/meetup',
        'hosts': [{'api_id': 'usr-1', 'name': 'Host One', 'email': 'host@example.com'}],
        'updated_at': '2026-02-01T10:00:00.000Z',
    }


@pytest.fixture
def luma_guest():
    """Raw Luma guest as returned by get-guests."""
    return {
        'api_id': 'gst-1',
        'event_api_id': 'evt-abc123',
        'name': 'Alice',
        'email': 'Alice@Example.com',
        'approval_status': 'approved',
        'registered_at': '2026-02-02T09:00:00.000Z',
        'updated_at': '2026-02-02T09:00:00.000Z',
    }
