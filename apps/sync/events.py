"""Events understood by the reducer.

Every change to the store is one of these. Backend pushes (row changes,
presence, broadcast refetches) and local intents (optimistic patches and
their rollback) share the same vocabulary.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from apps.classroom.models import ChatGroup, ChatMessage, RoundProgress, Unit, UnitTest, User


@dataclass(frozen=True)
class Snapshot:
    """One consistent bulk read of every collection."""
    users: Tuple[User, ...] = ()
    units: Tuple[Unit, ...] = ()
    round_progress: Tuple[RoundProgress, ...] = ()
    unit_tests: Tuple[UnitTest, ...] = ()
    chat_groups: Tuple[ChatGroup, ...] = ()
    chat_messages: Tuple[ChatMessage, ...] = ()
    # Non-critical collections that failed to load and are mirrored empty
    degraded: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SessionStarted:
    user: User


@dataclass(frozen=True)
class SessionFailed:
    message: str


@dataclass(frozen=True)
class SessionEnded:
    pass


@dataclass(frozen=True)
class SnapshotLoaded:
    snapshot: Snapshot


@dataclass(frozen=True)
class RowUpserted:
    collection: str
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class RowDeleted:
    collection: str
    record_id: str
    # Whatever the feed sent as the old row; used to locate nested children
    old: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PresenceSynced:
    user_ids: Tuple[str, ...]


@dataclass(frozen=True)
class PresenceJoined:
    user_id: str


@dataclass(frozen=True)
class PresenceLeft:
    user_id: str
    last_seen: str


@dataclass(frozen=True)
class MessagesRead:
    message_ids: Tuple[str, ...]
    user_id: str
    read_at: str


@dataclass(frozen=True)
class AvatarChanged:
    """The backend accepted a new avatar for a profile or chat group."""
    collection: str
    record_id: str
    avatar_url: str


@dataclass(frozen=True)
class OptimisticApplied:
    collection: str
    record_id: str
    fields: Dict[str, Any]


@dataclass(frozen=True)
class OptimisticReverted:
    collection: str
    record_id: str
    # None when the record did not exist before the patch
    original: Optional[Any] = None


@dataclass(frozen=True)
class ChatHistoryCleared:
    chat_group_id: str


@dataclass(frozen=True)
class UnitProgressReset:
    student_id: str
    unit_id: str
