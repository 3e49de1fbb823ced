#!/usr/bin/env python3
# apps/sync/listener.py

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

import aiohttp
from django.conf import settings
from django.utils import timezone
from rest_framework import serializers

from apps.classroom.serializers import (
    CHAT_GROUPS, CHAT_MESSAGES, PROFILES, ROUND_PROGRESS, SERIALIZERS, UNIT_TESTS, UNITS,
    parse_record, parse_row,
)

from .backend import BackendClient, BackendError
from .events import (
    PresenceJoined, PresenceLeft, PresenceSynced, RowDeleted, RowUpserted, SessionFailed,
    SessionStarted, Snapshot, SnapshotLoaded,
)
from .realtime import RealtimeMessage, RealtimeTransport
from .store import ClassroomStore

logger = logging.getLogger(__name__)

DB_TOPIC = 'realtime:all-db-changes'
PRESENCE_TOPIC = 'realtime:online-users'
BROADCAST_TOPIC = 'realtime:test-updates'

# Broadcast events that only say "unit test X changed, go look"
TEST_HINT_EVENTS = {'submission', 'student_join', 'test_activated'}

# (table, select expression, Snapshot attribute)
SNAPSHOT_READS = (
    (PROFILES, '*', 'users'),
    (UNITS, '*,rounds(*,words(*))', 'units'),
    (ROUND_PROGRESS, '*', 'round_progress'),
    (UNIT_TESTS, '*', 'unit_tests'),
    (CHAT_GROUPS, '*', 'chat_groups'),
    (CHAT_MESSAGES, '*', 'chat_messages'),
)

NETWORK_ERRORS = (BackendError, aiohttp.ClientError, asyncio.TimeoutError)


class SnapshotLoadError(Exception):
    """The initial bulk read failed; the session cannot start."""


class ProfileNotFoundError(Exception):
    """The signed-in identity has no profile row."""


class ChangeFeedListener:
    """
    Bridges backend pushes into store events.

    Row changes are only applied once a snapshot is in place; anything that
    arrives earlier is dropped because the snapshot supersedes it.
    """

    def __init__(self, store: ClassroomStore, backend: BackendClient,
                 transport_factory: Optional[Callable[[], RealtimeTransport]] = None,
                 snapshot_timeout: Optional[float] = None,
                 reconnect_delay: Optional[float] = None,
                 reconnect_max_delay: Optional[float] = None,
                 non_critical: Optional[Set[str]] = None,
                 persist_last_seen: bool = True):
        self.store = store
        self.backend = backend
        self.transport_factory = transport_factory or self._default_transport
        self.snapshot_timeout = snapshot_timeout or settings.SNAPSHOT_TIMEOUT
        self.reconnect_delay = reconnect_delay or settings.RECONNECT_DELAY
        self.reconnect_max_delay = reconnect_max_delay or settings.RECONNECT_MAX_DELAY
        self.non_critical = set(settings.NON_CRITICAL_COLLECTIONS if non_critical is None else non_critical)
        self.persist_last_seen = persist_last_seen

        self._ready = False
        self._stopping = False
        self._transport: Optional[RealtimeTransport] = None
        self._tasks: Set[asyncio.Task] = set()
        # user id -> phx_ref -> presence meta
        self._presence: Dict[str, Dict[str, Dict]] = {}

    def _default_transport(self) -> RealtimeTransport:
        return RealtimeTransport(self.backend.realtime_url, access_token=self.backend.access_token)

    @property
    def ready(self) -> bool:
        return self._ready

    # ------------------------------------------------------------------
    # session bootstrap
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str):
        """Load the signed-in user's profile and record it as the session user."""
        try:
            row = await self.backend.select_one(PROFILES, user_id)
        except NETWORK_ERRORS as e:
            logger.error(f"Profile lookup failed for {user_id}: {str(e)}", exc_info=True)
            row = None
            reason = str(e)
        else:
            reason = 'no profile row'

        user = None
        if row is not None:
            try:
                user = parse_record(PROFILES, row)
            except serializers.ValidationError as e:
                reason = f"invalid profile row: {e.detail}"

        if user is None:
            message = f"Your user profile could not be loaded ({reason}). Please sign in again."
            self.store.dispatch(SessionFailed(message))
            raise ProfileNotFoundError(message)

        self.store.dispatch(SessionStarted(user))
        return user

    async def load_snapshot(self, timeout: Optional[float] = None) -> Snapshot:
        """
        Read every collection concurrently and load the result into the store.

        A failed read of a non-critical collection leaves that collection
        empty; any other failure, or exceeding ``timeout``, raises.

        Raises:
            SnapshotLoadError: the snapshot could not be assembled
        """
        reads = asyncio.gather(
            *(self.backend.select(table, columns) for table, columns, _ in SNAPSHOT_READS),
            return_exceptions=True,
        )
        try:
            if timeout:
                results = await asyncio.wait_for(reads, timeout)
            else:
                results = await reads
        except asyncio.TimeoutError:
            raise SnapshotLoadError(f"Loading classroom data took longer than {timeout:.0f}s")

        collections: Dict[str, tuple] = {}
        degraded = []
        for (table, _, attr), result in zip(SNAPSHOT_READS, results):
            if isinstance(result, BaseException):
                if table in self.non_critical:
                    logger.warning(f"Could not load {table}, continuing without it: {str(result)}")
                    degraded.append(table)
                    collections[attr] = ()
                    continue
                raise SnapshotLoadError(f"Failed to load {table}: {str(result)}") from result
            collections[attr] = tuple(self._parse_rows(table, result))

        snapshot = Snapshot(degraded=tuple(degraded), **collections)
        self.store.dispatch(SnapshotLoaded(snapshot))
        self._ready = True
        logger.info(
            f"Snapshot loaded: {len(snapshot.units)} units, {len(snapshot.users)} users, "
            f"{len(snapshot.unit_tests)} tests, {len(snapshot.chat_messages)} messages"
        )
        return snapshot

    @staticmethod
    def _parse_rows(table: str, rows):
        for row in rows:
            try:
                yield parse_record(table, row)
            except serializers.ValidationError as e:
                logger.warning(f"Skipping invalid {table} row {row.get('id')}: {e.detail}")

    # ------------------------------------------------------------------
    # inbound routing
    # ------------------------------------------------------------------

    def handle(self, message: RealtimeMessage):
        """Route one realtime frame to the store."""
        payload = message.payload or {}
        if message.event == 'postgres_changes':
            self._on_row_change(payload.get('data') or {})
        elif message.event == 'presence_state':
            self._on_presence_state(payload)
        elif message.event == 'presence_diff':
            self._on_presence_diff(payload)
        elif message.event == 'broadcast':
            self._on_broadcast(payload.get('event'), payload.get('payload') or {})
        elif message.event == 'phx_reply' and payload.get('status') == 'error':
            logger.error(f"Channel {message.topic} rejected: {payload.get('response')}")

    def _on_row_change(self, data: Dict):
        if not self._ready:
            logger.debug(f"Dropping {data.get('type')} on {data.get('table')} before snapshot")
            return

        table = data.get('table')
        kind = data.get('type')
        if table not in SERIALIZERS:
            logger.debug(f"Ignoring change on unrecognised table {table!r}")
            return

        if kind == 'DELETE':
            old = data.get('old_record') or {}
            if not old.get('id'):
                logger.warning(f"Delete on {table} without a primary key, ignoring")
                return
            self.store.dispatch(RowDeleted(table, str(old['id']), old))
        elif kind in ('INSERT', 'UPDATE'):
            try:
                fields = parse_row(table, data.get('record') or {})
            except serializers.ValidationError as e:
                logger.warning(f"Ignoring invalid {table} row: {e.detail}")
                return
            self.store.dispatch(RowUpserted(table, fields))
        else:
            logger.debug(f"Ignoring change type {kind!r} on {table}")

    def _on_presence_state(self, payload: Dict):
        self._presence = {user_id: self._metas(presence) for user_id, presence in payload.items()}
        self.store.dispatch(PresenceSynced(tuple(self._presence)))

    @staticmethod
    def _metas(presence) -> Dict[str, Dict]:
        """Connection metas of one presence key, by ``phx_ref``."""
        metas = (presence or {}).get('metas') or []
        return {str(meta.get('phx_ref') or i): meta for i, meta in enumerate(metas)}

    def _on_presence_diff(self, payload: Dict):
        """
        Apply a presence diff: joins first, then leaves.

        A key only goes offline once none of its connections are left, so a
        re-track (join and leave of one key in the same diff) or closing one
        of several tabs keeps the user online.
        """
        joins = payload.get('joins') or {}
        for user_id, presence in joins.items():
            self._presence.setdefault(user_id, {}).update(self._metas(presence))
            self.store.dispatch(PresenceJoined(user_id))

        received_at = timezone.now().isoformat()
        for user_id, presence in (payload.get('leaves') or {}).items():
            metas = (presence or {}).get('metas') or [{}]
            known = self._presence.get(user_id, {})
            refs = {meta.get('phx_ref') for meta in metas}
            if None in refs:
                # Unreferenced leave: drop whatever this diff did not just join
                joined = self._metas(joins.get(user_id))
                remaining = {ref: meta for ref, meta in known.items() if ref in joined}
            else:
                remaining = {ref: meta for ref, meta in known.items() if ref not in refs}
            if remaining:
                self._presence[user_id] = remaining
                continue

            self._presence.pop(user_id, None)
            # Without left_at this is our own clock, so observers may disagree slightly
            last_seen = metas[-1].get('left_at') or received_at
            self.store.dispatch(PresenceLeft(user_id, last_seen))
            if self.persist_last_seen:
                self._spawn(self._save_last_seen(user_id, last_seen))

    def _on_broadcast(self, event: Optional[str], payload: Dict):
        if event not in TEST_HINT_EVENTS:
            logger.debug(f"Ignoring broadcast {event!r}")
            return
        test_id = payload.get('testId')
        if test_id and self._ready:
            self._spawn(self.refresh_test(test_id))

    async def refresh_test(self, test_id: str):
        """Refetch one unit test after a broadcast hint."""
        try:
            row = await self.backend.select_one(UNIT_TESTS, test_id)
        except NETWORK_ERRORS as e:
            logger.warning(f"Could not refresh test {test_id}: {str(e)}")
            return
        if row is None:
            return
        try:
            fields = parse_row(UNIT_TESTS, row)
        except serializers.ValidationError as e:
            logger.warning(f"Ignoring invalid test row {test_id}: {e.detail}")
            return
        self.store.dispatch(RowUpserted(UNIT_TESTS, fields))

    async def _save_last_seen(self, user_id: str, last_seen: str):
        try:
            await self.backend.update(PROFILES, user_id, {'last_seen': last_seen})
        except NETWORK_ERRORS as e:
            logger.warning(f"Could not store last_seen for {user_id}: {str(e)}")

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    async def broadcast(self, event: str, payload: Dict):
        """Fire-and-forget hint to other clients; dropped when offline."""
        if self._transport is None or not self._transport.connected:
            logger.info(f"Not connected, broadcast {event} dropped")
            return
        try:
            await self._transport.broadcast(BROADCAST_TOPIC, event, payload)
        except (ConnectionError, aiohttp.ClientError) as e:
            logger.warning(f"Broadcast {event} failed: {str(e)}")

    # ------------------------------------------------------------------
    # connection lifecycle
    # ------------------------------------------------------------------

    async def _open(self, transport: RealtimeTransport, user_id: str):
        await transport.connect()
        await transport.join(DB_TOPIC, {
            'postgres_changes': [{'event': '*', 'schema': 'public'}],
        })
        await transport.join(PRESENCE_TOPIC, {'presence': {'key': user_id}})
        await transport.join(BROADCAST_TOPIC, {'broadcast': {'self': False}})
        await transport.track(PRESENCE_TOPIC, {
            'user_id': user_id,
            'online_at': timezone.now().isoformat(),
        })
        self._transport = transport

    async def run(self, user_id: str):
        """
        Run the session until ``stop()``.

        The first load must finish within ``snapshot_timeout``: retries while
        the realtime server is unreachable stop at that deadline, and a failed
        first snapshot is fatal. After a transport loss the listener
        reconnects with exponential backoff, re-joins every channel, reloads
        the snapshot and rebuilds presence from scratch.

        Raises:
            SnapshotLoadError: the first load failed or ran out of time
        """
        self._stopping = False
        await self.start_session(user_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.snapshot_timeout
        first = True
        delay = self.reconnect_delay
        while not self._stopping:
            transport = self.transport_factory()
            try:
                if first:
                    await asyncio.wait_for(self._open(transport, user_id), max(deadline - loop.time(), 0))
                else:
                    await self._open(transport, user_id)
                try:
                    await self.load_snapshot(timeout=self.snapshot_timeout if first else None)
                except SnapshotLoadError as e:
                    if first:
                        self.store.dispatch(SessionFailed(str(e)))
                        raise
                    logger.error(f"Resync after reconnect failed: {str(e)}")
                    raise ConnectionError(str(e))
                first = False
                delay = self.reconnect_delay
                async for message in transport.messages():
                    self.handle(message)
            except (ConnectionError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                if first and not self._stopping:
                    logger.warning(f"Realtime connection failed before first snapshot: {str(e)}")
                    if loop.time() + delay >= deadline:
                        message = (f"Could not reach the classroom server within "
                                   f"{self.snapshot_timeout:.0f}s. Please try again later.")
                        self.store.dispatch(SessionFailed(message))
                        raise SnapshotLoadError(message) from e
                elif not self._stopping:
                    logger.warning(f"Realtime connection lost: {str(e)}")
            finally:
                self._ready = False
                self._transport = None
                await transport.close()
                # Presence does not survive a disconnect
                self._presence = {}
                self.store.dispatch(PresenceSynced(()))

            if self._stopping:
                break
            logger.info(f"Reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max_delay)

    async def stop(self):
        self._stopping = True
        transport = self._transport
        if transport is not None:
            await transport.close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
