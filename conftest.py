# conftest.py
import asyncio
import itertools

import pytest

from apps.sync.backend import BackendError
from apps.sync.events import Snapshot, SnapshotLoaded
from apps.sync.realtime import RealtimeMessage
from apps.sync.store import ClassroomStore
from apps.classroom.serializers import parse_record


class FakeBackend:
    """In-memory stand-in for BackendClient; rows are plain dicts per table."""

    def __init__(self, tables=None):
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.calls = []
        self.failures = {}
        self.delays = {}
        self.uploads = {}
        self.removed = []
        self.rpc_results = {}
        self.access_token = None
        self.realtime_url = 'ws://backend.test/realtime/v1/websocket'
        self._ids = itertools.count(1)

    def fail(self, method, table=None, error=None):
        self.failures[(method, table)] = error or BackendError('boom', status=500)

    async def _call(self, method, table, *args):
        self.calls.append((method, table) + args)
        delay = self.delays.get((method, table))
        if delay:
            await asyncio.sleep(delay)
        error = self.failures.get((method, table)) or self.failures.get((method, None))
        if error is not None:
            raise error

    def _rows(self, table):
        return self.tables.setdefault(table, [])

    @staticmethod
    def _matches(row, filters):
        return all(str(row.get(k)) == str(v) for k, v in filters.items())

    async def select(self, table, columns='*', **filters):
        await self._call('select', table, filters)
        return [dict(row) for row in self._rows(table) if self._matches(row, filters)]

    async def select_one(self, table, record_id, columns='*'):
        rows = await self.select(table, columns, id=record_id)
        return rows[0] if rows else None

    async def insert(self, table, row):
        await self._call('insert', table, row)
        row = dict(row)
        row.setdefault('id', f"{table}-{next(self._ids)}")
        self._rows(table).append(row)
        return dict(row)

    async def upsert(self, table, row, on_conflict=None):
        await self._call('upsert', table, row)
        keys = on_conflict.split(',') if on_conflict else ['id']
        for existing in self._rows(table):
            if all(existing.get(k) == row.get(k) for k in keys):
                existing.update(row)
                return dict(existing)
        return await self.insert(table, row)

    async def update(self, table, record_id, fields):
        await self._call('update', table, record_id, fields)
        for row in self._rows(table):
            if str(row.get('id')) == str(record_id):
                row.update(fields)
                return dict(row)
        return None

    async def delete(self, table, **filters):
        await self._call('delete', table, filters)
        self.tables[table] = [r for r in self._rows(table) if not self._matches(r, filters)]

    async def rpc(self, function, params):
        await self._call('rpc', function, params)
        return self.rpc_results.get(function)

    def public_url(self, bucket, path):
        return f"https://backend.test/storage/v1/object/public/{bucket}/{path}"

    async def upload(self, bucket, path, content, content_type='application/octet-stream'):
        await self._call('upload', bucket, path)
        self.uploads[(bucket, path)] = content
        return self.public_url(bucket, path)

    async def remove(self, bucket, paths):
        await self._call('remove', bucket, list(paths))
        self.removed.extend((bucket, p) for p in paths)

    def methods(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeTransport:
    """Scripted realtime transport; ``messages()`` replays the queued frames."""

    def __init__(self, frames=(), fail_connect=False):
        self.frames = list(frames)
        self.fail_connect = fail_connect
        self.sent = []
        self.connected = False
        self.closed = False

    async def connect(self):
        if self.fail_connect:
            raise ConnectionError('refused')
        self.connected = True

    async def join(self, topic, config):
        self.sent.append(('join', topic, config))

    async def track(self, topic, meta):
        self.sent.append(('track', topic, meta))

    async def broadcast(self, topic, event, payload):
        self.sent.append(('broadcast', topic, event, payload))

    async def messages(self):
        for frame in self.frames:
            if callable(frame):
                await frame()
                continue
            yield frame
        self.connected = False
        raise ConnectionError('closed')

    async def close(self):
        self.connected = False
        self.closed = True


def change(table, kind, record=None, old_record=None):
    data = {'table': table, 'type': kind, 'record': record or {}, 'old_record': old_record or {}}
    return RealtimeMessage('realtime:all-db-changes', 'postgres_changes', {'data': data})


def unit_row(unit_id='U1', unlocked=False, unit_number=1, rounds=None):
    return {
        'id': unit_id,
        'title': f"Unit {unit_number}",
        'description': '',
        'icon': '',
        'unlocked': unlocked,
        'unit_number': unit_number,
        'rounds': rounds if rounds is not None else [],
    }


def round_row(round_id='R1', unit_id='U1', words=None):
    return {'id': round_id, 'unit_id': unit_id, 'title': f"Round {round_id}", 'words': words or []}


def word_row(word_id='W1', round_id='R1', english='apple', russian='яблоко', image_url=None):
    return {
        'id': word_id,
        'round_id': round_id,
        'english': english,
        'russian': russian,
        'transcription': '',
        'image_url': image_url or f"https://img.test/{word_id}.png",
    }


def profile_row(user_id='u1', role='student', name=None, avatar_url=''):
    return {
        'id': user_id,
        'name': name or user_id.upper(),
        'email': f"{user_id}@school.test",
        'role': role,
        'avatar_url': avatar_url,
    }


def load_rows(store, **tables):
    """Load a snapshot built from raw rows (table name -> list of rows)."""
    attrs = {
        'profiles': 'users', 'units': 'units', 'round_progress': 'round_progress',
        'unit_tests': 'unit_tests', 'chat_groups': 'chat_groups', 'chat_messages': 'chat_messages',
    }
    snapshot = Snapshot(**{
        attrs[table]: tuple(parse_record(table, row) for row in rows)
        for table, rows in tables.items()
    })
    return store.dispatch(SnapshotLoaded(snapshot))


@pytest.fixture
def store():
    return ClassroomStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def cleanup_calls():
    return []


@pytest.fixture
def cleanup(cleanup_calls):
    async def record(bucket, url):
        cleanup_calls.append((bucket, url))
    return record


@pytest.fixture
def classroom_rows():
    """One unit with two rounds and four words, a teacher and two students."""
    words_r1 = [word_row('W1', 'R1', 'apple', 'яблоко'), word_row('W2', 'R1', 'pear', 'груша')]
    words_r2 = [word_row('W3', 'R2', 'plum', 'слива'), word_row('W4', 'R2', 'grape', 'виноград')]
    return {
        'profiles': [
            profile_row('t1', 'teacher', 'Teacher'),
            profile_row('s1', 'student', 'Alice'),
            profile_row('s2', 'student', 'Bob'),
        ],
        'units': [
            unit_row('U1', True, 1, [round_row('R1', 'U1', words_r1), round_row('R2', 'U1', words_r2)]),
        ],
    }
