import logging
from dataclasses import replace

from apps.classroom.serializers import CHAT_GROUPS, PROFILES

from . import state as ops
from .events import (
    AvatarChanged, ChatHistoryCleared, MessagesRead, OptimisticApplied, OptimisticReverted,
    PresenceJoined, PresenceLeft, PresenceSynced, RowDeleted, RowUpserted, SessionEnded,
    SessionFailed, SessionStarted, SnapshotLoaded, UnitProgressReset,
)
from .state import ClassroomState

logger = logging.getLogger(__name__)

AVATAR_COLLECTIONS = {PROFILES, CHAT_GROUPS}


def reduce(state: ClassroomState, event) -> ClassroomState:
    """
    Compute the next state for one event.

    Never raises: an event that cannot be applied leaves the state as it was
    and is logged. Returns the input object itself when nothing changed.
    """
    try:
        return _reduce(state, event)
    except Exception as e:
        logger.error(f"Dropping {type(event).__name__}: {str(e)}", exc_info=True)
        return state


def _reduce(state: ClassroomState, event) -> ClassroomState:
    if isinstance(event, SnapshotLoaded):
        return ops.load(state, event.snapshot)

    if isinstance(event, RowUpserted):
        return ops.apply_upsert(state, event.collection, event.fields)

    if isinstance(event, RowDeleted):
        return ops.apply_delete(state, event.collection, event.record_id, event.old)

    if isinstance(event, PresenceSynced):
        return ops.sync_presence(state, event.user_ids)

    if isinstance(event, PresenceJoined):
        return ops.presence_joined(state, event.user_id)

    if isinstance(event, PresenceLeft):
        return ops.presence_left(state, event.user_id, event.last_seen)

    if isinstance(event, MessagesRead):
        return ops.mark_read(state, event.message_ids, event.user_id, event.read_at)

    if isinstance(event, AvatarChanged):
        if event.collection not in AVATAR_COLLECTIONS:
            return state
        # Patch only, never create a record from an avatar change
        if ops.get_record(state, event.collection, event.record_id) is None:
            return state
        return ops.apply_upsert(
            state, event.collection, {'id': event.record_id, 'avatar_url': event.avatar_url}
        )

    if isinstance(event, OptimisticApplied):
        return ops.apply_upsert(state, event.collection, dict(event.fields, id=event.record_id))

    if isinstance(event, OptimisticReverted):
        return ops.replace_record(state, event.collection, event.record_id, event.original)

    if isinstance(event, ChatHistoryCleared):
        return ops.clear_chat_history(state, event.chat_group_id)

    if isinstance(event, UnitProgressReset):
        return ops.reset_unit_progress(state, event.student_id, event.unit_id)

    if isinstance(event, SessionStarted):
        state = ops.apply_upsert(state, PROFILES, ops.record_fields(event.user))
        if state.current_user_id == event.user.id and state.error is None:
            return state
        return replace(state, current_user_id=event.user.id, error=None, version=state.version + 1)

    if isinstance(event, SessionFailed):
        return replace(state, error=event.message, version=state.version + 1)

    if isinstance(event, SessionEnded):
        return ClassroomState(version=state.version + 1)

    logger.warning(f"Unhandled event type {type(event).__name__}")
    return state
