# apps/classroom/tests/test_services.py
import asyncio

import pytest
from asgiref.sync import async_to_sync

from apps.classroom.chat_service import ChatService
from apps.classroom.content_service import ContentService
from apps.classroom.models import Answer
from apps.classroom.profile_service import ProfileService
from apps.classroom.progress_service import ProgressService
from apps.classroom.serializers import (
    CHAT_GROUPS, CHAT_MESSAGES, PROFILES, ROUND_PROGRESS, UNITS, WORDS,
)
from apps.sync.backend import BackendError
from apps.sync.commands import WriteFailedError

from conftest import FakeBackend, load_rows, profile_row

OLD_AVATAR = 'https://backend.test/storage/v1/object/public/avatars/s1-1.png'


@pytest.fixture
def seeded(store, classroom_rows):
    rows = dict(classroom_rows)
    rows['profiles'] = [dict(r) for r in rows['profiles']]
    rows['profiles'][1]['avatar_url'] = OLD_AVATAR
    rows['chat_groups'] = [{'id': 'G1', 'name': 'Class', 'members': ['t1', 's1', 's2']}]
    rows['chat_messages'] = [
        {'id': 'M1', 'chat_group_id': 'G1', 'sender_id': 't1', 'content': 'Hello',
         'created_at': '2024-03-01T09:00:00Z', 'read_by': []},
        {'id': 'M2', 'chat_group_id': 'G1', 'sender_id': 's1', 'content': 'Hi!',
         'created_at': '2024-03-01T09:01:00Z', 'read_by': []},
    ]
    backend = FakeBackend(rows)
    load_rows(store, **backend.tables)
    return backend


# --------------------------------------------------------------------------
# content
# --------------------------------------------------------------------------

def test_create_unit_takes_next_number(store, seeded):
    service = ContentService(store, seeded)

    row = async_to_sync(service.create_unit)('Animals', 'Pets and farm animals', 'paw')

    assert row['unit_number'] == 2
    assert seeded.methods('insert')[0][1] == UNITS
    # Nothing local until the echo arrives
    assert list(store.state.units) == ['U1']

    with pytest.raises(ValueError):
        async_to_sync(service.create_unit)('   ')


def test_toggle_lock_is_optimistic_and_reverts(store, seeded):
    service = ContentService(store, seeded)

    assert async_to_sync(service.toggle_unit_lock)('U1') is False
    assert store.state.units['U1'].unlocked is False
    assert store.state.unlocked_unit_ids == ()

    seeded.fail('update', UNITS)
    with pytest.raises(WriteFailedError):
        async_to_sync(service.toggle_unit_lock)('U1')
    assert store.state.units['U1'].unlocked is False


def test_double_toggle_while_offline_ends_on_server_value(store, seeded):
    service = ContentService(store, seeded)
    seeded.delays[('update', UNITS)] = 0.01
    seeded.fail('update', UNITS, BackendError('offline'))

    async def scenario():
        return await asyncio.gather(
            service.set_unit_unlocked('U1', False),
            service.set_unit_unlocked('U1', True),
            return_exceptions=True,
        )

    outcomes = async_to_sync(scenario)()

    assert all(isinstance(o, WriteFailedError) for o in outcomes)
    assert seeded.tables[UNITS][0]['unlocked'] is True
    assert store.state.units['U1'].unlocked is True
    assert store.state.unlocked_unit_ids == ('U1',)


def test_edit_word_with_new_image(store, seeded, cleanup, cleanup_calls):
    service = ContentService(store, seeded, cleanup=cleanup)
    old_image = store.get(WORDS, 'W1').image_url

    fields = async_to_sync(service.edit_word)('W1', image=b'png', image_name='apple.PNG',
                                              translation='яблочко')

    word = store.get(WORDS, 'W1')
    assert word.translation == 'яблочко'
    assert word.image_url == fields['image_url']
    assert fields['image_url'].endswith('.png')
    update = seeded.methods('update')[0]
    assert update[3] == {'russian': 'яблочко', 'image_url': fields['image_url']}
    assert cleanup_calls == [('word_images', old_image)]


def test_failed_word_edit_keeps_old_image(store, seeded, cleanup, cleanup_calls):
    service = ContentService(store, seeded, cleanup=cleanup)
    before = store.get(WORDS, 'W1')
    seeded.fail('update', WORDS)

    with pytest.raises(WriteFailedError):
        async_to_sync(service.edit_word)('W1', image=b'png', image_name='apple.png')

    assert store.get(WORDS, 'W1') == before
    assert cleanup_calls == []


def test_edit_word_rejects_unknown_fields(store, seeded):
    service = ContentService(store, seeded)

    with pytest.raises(ValueError):
        async_to_sync(service.edit_word)('W1', round_id='R2')


# --------------------------------------------------------------------------
# progress
# --------------------------------------------------------------------------

def test_record_attempt_appends_history(store, seeded):
    service = ProgressService(store, seeded)
    answers = [
        Answer('W1', 'spell', 'apple', True),
        Answer('W2', 'spell', 'paer', False),
    ]

    first = async_to_sync(service.record_attempt)('s1', 'U1', 'R1', answers)
    second = async_to_sync(service.record_attempt)('s1', 'U1', 'R1', answers[:1])

    assert first.id == second.id
    assert [a.attempt_number for a in second.history] == [1, 2]
    assert [a.score for a in second.history] == [50.0, 100.0]
    assert second.attempts == 2
    assert len(seeded.tables[ROUND_PROGRESS]) == 1
    assert len(store.state.round_progress) == 1


def test_reset_unit_progress(store, seeded):
    service = ProgressService(store, seeded)
    async_to_sync(service.record_attempt)('s1', 'U1', 'R1', [Answer('W1', 'spell', 'apple', True)])
    async_to_sync(service.record_attempt)('s2', 'U1', 'R1', [Answer('W1', 'spell', 'apple', True)])

    async_to_sync(service.reset_unit_progress)('s1', 'U1')

    assert service.current('s1', 'U1', 'R1') is None
    assert service.current('s2', 'U1', 'R1') is not None
    assert seeded.methods('delete')[0][2] == {'student_id': 's1', 'unit_id': 'U1'}


# --------------------------------------------------------------------------
# chat
# --------------------------------------------------------------------------

def test_create_group_needs_two_members(store, seeded):
    service = ChatService(store, seeded)

    with pytest.raises(ValueError):
        async_to_sync(service.create_group)('t1', 'Solo', ['t1'])

    row = async_to_sync(service.create_group)('t1', 'Pair', ['s1', 's1'])
    assert row['members'] == ['t1', 's1']


def test_mark_read_adds_receipts_once(store, seeded):
    service = ChatService(store, seeded)

    marked = async_to_sync(service.mark_read)(['M1', 'M2', 'M1'], 's1')
    again = async_to_sync(service.mark_read)(['M1'], 's1')

    # Own message M2 is not marked
    assert marked == ['M1']
    assert again == []
    assert [r.user_id for r in store.state.chat_messages['M1'].read_by] == ['s1']
    saved = seeded.tables[CHAT_MESSAGES][0]['read_by']
    assert saved[0]['userId'] == 's1'


def test_mark_read_keeps_local_receipt_when_write_fails(store, seeded):
    service = ChatService(store, seeded)
    seeded.fail('update', CHAT_MESSAGES)

    async_to_sync(service.mark_read)(['M1'], 's2')

    assert store.state.chat_messages['M1'].is_read_by('s2')


def test_clear_history_only_after_delete(store, seeded):
    service = ChatService(store, seeded)
    seeded.fail('delete', CHAT_MESSAGES)

    with pytest.raises(BackendError):
        async_to_sync(service.clear_history)('G1')
    assert len(store.state.chat_messages) == 2

    seeded.failures.clear()
    async_to_sync(service.clear_history)('G1')
    assert store.state.chat_messages == {}


def test_rename_group(store, seeded):
    service = ChatService(store, seeded)

    async_to_sync(service.rename_group)('G1', ' Class 5B ')

    assert store.state.chat_groups['G1'].name == 'Class 5B'
    assert seeded.tables[CHAT_GROUPS][0]['name'] == 'Class 5B'


# --------------------------------------------------------------------------
# profile
# --------------------------------------------------------------------------

def test_change_avatar_queues_old_file_cleanup(store, seeded, cleanup, cleanup_calls):
    service = ProfileService(store, seeded, cleanup=cleanup)

    url = async_to_sync(service.change_avatar)('s1', b'jpg', 'me.jpg')

    assert store.get(PROFILES, 's1').avatar_url == url
    assert seeded.tables[PROFILES][1]['avatar_url'] == url
    assert cleanup_calls == [('avatars', OLD_AVATAR)]


def test_failed_avatar_swap_keeps_original(store, seeded, cleanup, cleanup_calls):
    service = ProfileService(store, seeded, cleanup=cleanup)
    seeded.fail('update', PROFILES)

    with pytest.raises(WriteFailedError):
        async_to_sync(service.change_avatar)('s1', b'jpg', 'me.jpg')

    assert store.get(PROFILES, 's1').avatar_url == OLD_AVATAR
    assert cleanup_calls == []


def test_overlapping_avatar_swaps_settle_on_the_accepted_one(store, seeded, cleanup, cleanup_calls):
    service = ProfileService(store, seeded, cleanup=cleanup)
    save = seeded.update

    async def update(table, record_id, fields):
        if fields['avatar_url'].endswith('.png'):
            await asyncio.sleep(0.03)
            raise BackendError('payload too large', status=413)
        await asyncio.sleep(0.01)
        return await save(table, record_id, fields)

    seeded.update = update

    async def scenario():
        return await asyncio.gather(
            service.change_avatar('s1', b'jpg', 'me.jpg'),
            service.change_avatar('s1', b'png', 'me.png'),
            return_exceptions=True,
        )

    accepted, rejected = async_to_sync(scenario)()

    assert isinstance(rejected, WriteFailedError)
    assert seeded.tables[PROFILES][1]['avatar_url'] == accepted
    assert store.get(PROFILES, 's1').avatar_url == accepted
    assert cleanup_calls == [('avatars', OLD_AVATAR)]


def test_first_avatar_has_nothing_to_clean(store, cleanup, cleanup_calls):
    backend = FakeBackend({'profiles': [profile_row('u9')]})
    load_rows(store, **backend.tables)
    service = ProfileService(store, backend, cleanup=cleanup)

    async_to_sync(service.change_avatar)('u9', b'gif', 'me.gif')

    assert cleanup_calls == []
