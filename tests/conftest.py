import pytest
from unittest.mock import AsyncMock, MagicMock
import sys
import uuid
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

from postgrest.exceptions import APIError

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.routes import create_app
from api.services.sms import SMSService
from api.services.storage import StorageService
from lib.config import Settings
from lib.dates import utcnow
from lib.encryption import ContentCipher

# (columns, predicate deciding whether a row takes part in the constraint)
UNIQUE_CONSTRAINTS = {
    'sms_messages': [(('provider_message_id',), None)],
    'journal_entries': [(('user_id', 'entry_date', 'source'), lambda row: row.get('source') == 'sms')],
    'milestone_messages': [(('user_id', 'milestone'), None)],
    'subscribers': [(('email',), None)],
    'phone_verifications': [(('phone_number',), None)],
    'rate_limits': [(('identifier', 'endpoint'), None)],
    'account_lockouts': [(('email',), None)],
}

def _comparable(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return value
    return value

class FakeQuery:
    """Just enough of the postgrest query builder for StorageService."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.operation = 'select'
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.order_by = None
        self.max_rows = None

    def select(self, *columns):
        return self

    def insert(self, payload):
        self.operation, self.payload = 'insert', payload
        return self

    def update(self, payload):
        self.operation, self.payload = 'update', payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.operation, self.payload, self.on_conflict = 'upsert', payload, on_conflict
        return self

    def delete(self):
        self.operation = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None
                            and _comparable(row[column]) > _comparable(value))
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None
                            and _comparable(row[column]) >= _comparable(value))
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None
                            and _comparable(row[column]) <= _comparable(value))
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def _matches(self):
        return [row for row in self.db.rows(self.table) if all(f(row) for f in self.filters)]

    def execute(self):
        if self.operation == 'insert':
            data = [self.db.insert(self.table, self.payload)]
        elif self.operation == 'upsert':
            data = [self.db.upsert(self.table, self.payload, self.on_conflict)]
        elif self.operation == 'update':
            data = []
            for row in self._matches():
                candidate = dict(row, **self.payload)
                self.db.check_unique(self.table, candidate, ignore=row)
                row.update(self.payload)
                data.append(dict(row))
        elif self.operation == 'delete':
            data = self._matches()
            for row in data:
                self.db.rows(self.table).remove(row)
        else:
            data = [dict(row) for row in self._matches()]
            if self.order_by:
                column, desc = self.order_by
                data.sort(key=lambda row: str(row.get(column) or ''), reverse=desc)
            if self.max_rows is not None:
                data = data[:self.max_rows]
        return SimpleNamespace(data=data, count=None)

class FakeBucket:
    def __init__(self, name, files):
        self.name = name
        self.files = files

    def upload(self, path, data, file_options=None):
        self.files[path] = {'data': data, 'options': file_options or {}}
        return {'Key': f"{self.name}/{path}"}

    def remove(self, paths):
        for path in paths:
            self.files.pop(path, None)
        return []

    def create_signed_url(self, path, expires_in):
        return {'signedURL': f"https://test.supabase.co/storage/v1/object/sign/{self.name}/{path}?token=t"}

class FakeStorage:
    def __init__(self):
        self.buckets = {}

    def from_(self, bucket):
        return FakeBucket(bucket, self.buckets.setdefault(bucket, {}))

class FakeAuth:
    def __init__(self):
        self.tokens = {}

    def get_user(self, token):
        if token not in self.tokens:
            raise Exception("invalid JWT")
        return SimpleNamespace(user=self.tokens[token])

class FakeSupabase:
    """In-memory stand-in for the Supabase client: tables, storage buckets and auth."""

    def __init__(self):
        self.tables = {}
        self.storage = FakeStorage()
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.setdefault(name, [])

    def check_unique(self, table, row, ignore=None):
        for columns, applies in UNIQUE_CONSTRAINTS.get(table, []):
            if applies and not applies(row):
                continue
            key = tuple(row.get(c) for c in columns)
            if any(v is None for v in key):
                continue
            for other in self.rows(table):
                if other is ignore or (applies and not applies(other)):
                    continue
                if tuple(other.get(c) for c in columns) == key:
                    raise APIError({
                        'code': '23505',
                        'message': f'duplicate key value violates unique constraint on {table}',
                        'details': None,
                        'hint': None,
                    })

    def insert(self, table, payload):
        row = dict(payload)
        row.setdefault('id', str(uuid.uuid4()))
        row.setdefault('created_at', utcnow().isoformat())
        self.check_unique(table, row)
        self.rows(table).append(row)
        return dict(row)

    def upsert(self, table, payload, on_conflict):
        columns = [c.strip() for c in (on_conflict or 'id').split(',')]
        for row in self.rows(table):
            if all(row.get(c) == payload.get(c) for c in columns):
                row.update(payload)
                return dict(row)
        return self.insert(table, payload)

    # Test helpers

    def add(self, table, **fields):
        return self.insert(table, fields)

    def add_user(self, token, user_id, email):
        self.auth.tokens[token] = SimpleNamespace(id=user_id, email=email)

@pytest.fixture
def fake_supabase():
    return FakeSupabase()

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        supabase_url='https://test.supabase.co',
        supabase_key='service-role-key',
        twilio_account_sid='AC_test',
        twilio_auth_token='twilio-token',
        twilio_phone_number='+15550000000',
        validate_twilio_signature=False,
        stripe_secret_key='sk_test_123',
        stripe_webhook_secret='whsec_test',
        stripe_checkout_url='https://checkout.example.com/journal',
        encryption_secret='test-secret',
        cron_secret='cron-secret',
        public_base_url='https://journal.example.com',
    )

@pytest.fixture
def twilio_client():
    client = MagicMock()
    client.phone_number = '+15550000000'
    client.auth = ('AC_test', 'twilio-token')
    counter = iter(range(1, 10_000))
    client.send_message.side_effect = lambda to, body: f"SM_out_{next(counter)}"
    client.validate_request.return_value = True
    return client

@pytest.fixture
def storage(fake_supabase):
    return StorageService(fake_supabase)

@pytest.fixture
def cipher():
    return ContentCipher('test-secret')

@pytest.fixture
def sms_service(twilio_client, storage):
    return SMSService(twilio_client, storage)

@pytest.fixture
def photo_service():
    photos = MagicMock()
    photos.download = AsyncMock(return_value=b'\xff\xd8\xff fake jpeg')
    photos.signed_url.side_effect = lambda path, expires_in=3600: f"https://signed.example.com/{path}"
    photos.extract_storage_path.return_value = None
    return photos

@pytest.fixture
def profile(fake_supabase):
    return fake_supabase.add(
        'profiles',
        id='user-1',
        email='writer@example.com',
        phone_number='15551234567',
        phone_verified=True,
        timezone='UTC',
        current_streak=0,
        longest_streak=0,
    )

@pytest.fixture
def app(settings, fake_supabase, twilio_client):
    app = create_app(settings, supabase_client=fake_supabase, twilio_client=twilio_client)
    app.config['TESTING'] = True
    app.extensions['journal_services'].photos.download = AsyncMock(return_value=b'\xff\xd8\xff fake jpeg')
    return app

@pytest.fixture
def services(app):
    return app.extensions['journal_services']

@pytest.fixture
def test_client(app):
    return app.test_client()

@pytest.fixture
def auth_headers(fake_supabase):
    fake_supabase.add_user('token-1', 'user-1', 'writer@example.com')
    return {'Authorization': 'Bearer token-1'}
