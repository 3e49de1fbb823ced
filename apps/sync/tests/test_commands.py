# apps/sync/tests/test_commands.py
import asyncio

import aiohttp
import pytest
from asgiref.sync import async_to_sync

from apps.classroom.serializers import PROFILES, UNITS
from apps.sync.backend import BackendError, asset_path
from apps.sync.commands import OptimisticCommands, WriteFailedError
from apps.sync.tasks import delete_replaced_asset

from conftest import load_rows, profile_row, unit_row

OLD_AVATAR = 'https://backend.test/storage/v1/object/public/avatars/u1-1.png'


def test_patch_is_visible_before_remote_confirms(store):
    load_rows(store, units=[unit_row('U1', unlocked=False)])
    commands = OptimisticCommands(store)
    seen = []

    async def remote():
        seen.append(store.state.units['U1'].unlocked)
        return {'id': 'U1'}

    async_to_sync(commands.run)(UNITS, 'U1', {'unlocked': True}, remote)

    assert seen == [True]
    assert store.state.units['U1'].unlocked is True


@pytest.mark.parametrize('error', [
    BackendError('denied', status=403),
    aiohttp.ClientConnectionError('offline'),
    asyncio.TimeoutError(),
])
def test_failed_avatar_swap_rolls_back(store, error):
    load_rows(store, profiles=[profile_row('u1', avatar_url=OLD_AVATAR)])
    before = store.get(PROFILES, 'u1')
    commands = OptimisticCommands(store)

    async def remote():
        raise error

    with pytest.raises(WriteFailedError) as excinfo:
        async_to_sync(commands.run)(PROFILES, 'u1', {'avatar_url': 'new'}, remote,
                                    error_message='Failed to update the avatar.')

    assert excinfo.value.message == 'Failed to update the avatar.'
    assert excinfo.value.cause is error
    assert store.get(PROFILES, 'u1') == before
    assert store.get(PROFILES, 'u1').avatar_url == OLD_AVATAR


def test_retry_after_failure_does_not_stack(store):
    load_rows(store, units=[unit_row('U1', unlocked=False)])
    commands = OptimisticCommands(store)
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise BackendError('busy', status=503)

    with pytest.raises(WriteFailedError):
        async_to_sync(commands.run)(UNITS, 'U1', {'unlocked': True}, flaky)
    assert store.state.units['U1'].unlocked is False

    async_to_sync(commands.run)(UNITS, 'U1', {'unlocked': True}, flaky)
    assert store.state.units['U1'].unlocked is True


def test_overlapping_failures_restore_the_server_value(store):
    load_rows(store, units=[unit_row('U1', unlocked=True)])
    commands = OptimisticCommands(store)

    async def rejected(delay):
        await asyncio.sleep(delay)
        raise aiohttp.ClientConnectionError('offline')

    async def scenario():
        return await asyncio.gather(
            commands.run(UNITS, 'U1', {'unlocked': False}, lambda: rejected(0.01)),
            commands.run(UNITS, 'U1', {'unlocked': True}, lambda: rejected(0.03)),
            return_exceptions=True,
        )

    outcomes = async_to_sync(scenario)()

    assert all(isinstance(o, WriteFailedError) for o in outcomes)
    assert store.state.units['U1'].unlocked is True

    # The next command starts from the settled record again
    with pytest.raises(WriteFailedError):
        async_to_sync(commands.run)(UNITS, 'U1', {'title': 'x'}, lambda: rejected(0))
    assert store.state.units['U1'].title == 'Unit 1'


def test_earlier_failure_does_not_undo_a_later_patch(store):
    load_rows(store, units=[unit_row('U1', unlocked=False)])
    commands = OptimisticCommands(store)

    async def remote(delay, error=None):
        await asyncio.sleep(delay)
        if error is not None:
            raise error
        return {'id': 'U1'}

    async def scenario():
        return await asyncio.gather(
            commands.run(UNITS, 'U1', {'title': 'Fruit'},
                         lambda: remote(0.01, BackendError('conflict', status=409))),
            commands.run(UNITS, 'U1', {'unlocked': True}, lambda: remote(0.03)),
            return_exceptions=True,
        )

    failed, accepted = async_to_sync(scenario)()

    assert isinstance(failed, WriteFailedError)
    assert accepted == {'id': 'U1'}
    assert store.state.units['U1'].unlocked is True


def test_programming_errors_are_not_swallowed(store):
    load_rows(store, units=[unit_row('U1')])
    commands = OptimisticCommands(store)

    async def broken():
        raise KeyError('oops')

    with pytest.raises(KeyError):
        async_to_sync(commands.run)(UNITS, 'U1', {'title': 'x'}, broken)


def test_asset_path():
    assert asset_path(OLD_AVATAR, 'avatars') == 'u1-1.png'
    assert asset_path('https://cdn.test/pic.png', 'avatars') is None
    assert asset_path('', 'avatars') is None


def test_cleanup_task_removes_old_file(monkeypatch):
    removed = []

    async def fake_remove(bucket, path):
        removed.append((bucket, path))

    monkeypatch.setattr('apps.sync.tasks._remove_asset', fake_remove)

    assert delete_replaced_asset.call_local('avatars', OLD_AVATAR) is True
    assert removed == [('avatars', 'u1-1.png')]
    assert delete_replaced_asset.call_local('avatars', 'https://cdn.test/pic.png') is False


def test_cleanup_task_failure_is_logged_only(monkeypatch):
    async def failing_remove(bucket, path):
        raise BackendError('not found', status=404)

    monkeypatch.setattr('apps.sync.tasks._remove_asset', failing_remove)

    assert delete_replaced_asset.call_local('avatars', OLD_AVATAR) is False
