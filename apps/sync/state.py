"""Normalized classroom state and the pure operations that patch it.

State is never mutated in place. Every operation returns either the very
same state object (nothing changed) or a new one that shares every
untouched branch with its predecessor, so consumers can compare by
identity to decide what to re-render.
"""
import logging
from dataclasses import dataclass, field, fields as dataclass_fields, replace
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from apps.classroom.models import (
    ChatGroup, ChatMessage, ReadReceipt, Round, RoundProgress, Unit, UnitTest, User, Word,
)
from apps.classroom.serializers import (
    CHAT_GROUPS, CHAT_MESSAGES, PROFILES, ROUND_PROGRESS, ROUNDS, UNIT_TESTS, UNITS, WORDS,
)

logger = logging.getLogger(__name__)

# studentId -> unitId -> roundId -> RoundProgress
ProgressIndex = Dict[str, Dict[str, Dict[str, RoundProgress]]]


@dataclass(frozen=True)
class ClassroomState:
    users: Dict[str, User] = field(default_factory=dict)
    units: Dict[str, Unit] = field(default_factory=dict)
    round_progress: Dict[str, RoundProgress] = field(default_factory=dict)
    unit_tests: Dict[str, UnitTest] = field(default_factory=dict)
    chat_groups: Dict[str, ChatGroup] = field(default_factory=dict)
    chat_messages: Dict[str, ChatMessage] = field(default_factory=dict)
    progress: ProgressIndex = field(default_factory=dict)
    unlocked_unit_ids: Tuple[str, ...] = ()
    online_user_ids: FrozenSet[str] = frozenset()
    current_user_id: Optional[str] = None
    loaded: bool = False
    error: Optional[str] = None
    degraded_collections: Tuple[str, ...] = ()
    version: int = field(default=0, compare=False)


# Top-level collections: table name -> (state attribute, record class)
TABLES = {
    PROFILES: ('users', User),
    UNITS: ('units', Unit),
    ROUND_PROGRESS: ('round_progress', RoundProgress),
    UNIT_TESTS: ('unit_tests', UnitTest),
    CHAT_GROUPS: ('chat_groups', ChatGroup),
    CHAT_MESSAGES: ('chat_messages', ChatMessage),
}

# Collections that live inside their owning Unit
NESTED = {
    ROUNDS: Round,
    WORDS: Word,
}

RECORD_CLASSES = dict({name: cls for name, (_, cls) in TABLES.items()}, **NESTED)


def _commit(state: ClassroomState, **changes) -> ClassroomState:
    return replace(state, version=state.version + 1, **changes)


def _known_fields(record_class, values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in dataclass_fields(record_class)}
    return {k: v for k, v in values.items() if k in names}


def record_fields(record) -> Dict[str, Any]:
    """Shallow field dict of a record; nested values are kept by reference."""
    return {f.name: getattr(record, f.name) for f in dataclass_fields(record)}


def _merge(record_class, existing, values: Mapping[str, Any]):
    values = _known_fields(record_class, values)
    if existing is None:
        return record_class(**values)
    return replace(existing, **values)


def _sorted_units(units: Dict[str, Unit]) -> Dict[str, Unit]:
    return {unit.id: unit for unit in sorted(units.values(), key=lambda u: u.unit_number)}


def _unlocked_ids(units: Dict[str, Unit]) -> Tuple[str, ...]:
    return tuple(unit.id for unit in units.values() if unit.unlocked)


# --------------------------------------------------------------------------
# progress index
# --------------------------------------------------------------------------

def build_progress_index(records) -> ProgressIndex:
    index: ProgressIndex = {}
    for progress in records:
        units = index.setdefault(progress.student_id, {})
        units.setdefault(progress.unit_id, {})[progress.round_id] = progress
    return index


def _index_put(index: ProgressIndex, progress: RoundProgress) -> ProgressIndex:
    units = dict(index.get(progress.student_id, {}))
    rounds = dict(units.get(progress.unit_id, {}))
    rounds[progress.round_id] = progress
    units[progress.unit_id] = rounds
    return {**index, progress.student_id: units}


def _index_remove(index: ProgressIndex, progress: RoundProgress) -> ProgressIndex:
    rounds = index.get(progress.student_id, {}).get(progress.unit_id, {})
    if rounds.get(progress.round_id) is not progress:
        return index
    rounds = {k: v for k, v in rounds.items() if k != progress.round_id}
    units = dict(index[progress.student_id])
    units[progress.unit_id] = rounds
    return {**index, progress.student_id: units}


# --------------------------------------------------------------------------
# snapshot
# --------------------------------------------------------------------------

def load(state: ClassroomState, snapshot) -> ClassroomState:
    """
    Replace every mirrored collection with the contents of a snapshot.

    Derived indices (progress tree, unlocked units) are rebuilt from the flat
    rows. Natural-key duplicates are collapsed with the later row winning.
    Presence and the session user survive a reload.
    """
    units = _sorted_units({unit.id: unit for unit in snapshot.units})

    by_triple = {}
    for progress in snapshot.round_progress:
        by_triple[progress.key] = progress
    round_progress = {p.id: p for p in by_triple.values()}

    by_unit = {}
    for test in snapshot.unit_tests:
        by_unit[test.unit_id] = test
    unit_tests = {t.id: t for t in by_unit.values()}

    return _commit(
        state,
        users={user.id: user for user in snapshot.users},
        units=units,
        round_progress=round_progress,
        unit_tests=unit_tests,
        chat_groups={group.id: group for group in snapshot.chat_groups},
        chat_messages={message.id: message for message in snapshot.chat_messages},
        progress=build_progress_index(round_progress.values()),
        unlocked_unit_ids=_unlocked_ids(units),
        degraded_collections=tuple(snapshot.degraded),
        loaded=True,
        error=None,
    )


# --------------------------------------------------------------------------
# lookups
# --------------------------------------------------------------------------

def find_round(state: ClassroomState, round_id: str) -> Tuple[Optional[Unit], Optional[Round]]:
    for unit in state.units.values():
        for round_ in unit.rounds:
            if round_.id == round_id:
                return unit, round_
    return None, None


def find_word(state: ClassroomState, word_id: str) -> Tuple[Optional[Unit], Optional[Round], Optional[Word]]:
    for unit in state.units.values():
        for round_ in unit.rounds:
            for word in round_.words:
                if word.id == word_id:
                    return unit, round_, word
    return None, None, None


def get_record(state: ClassroomState, collection: str, record_id: str):
    if collection in TABLES:
        attr, _ = TABLES[collection]
        return getattr(state, attr).get(record_id)
    if collection == ROUNDS:
        return find_round(state, record_id)[1]
    if collection == WORDS:
        return find_word(state, record_id)[2]
    return None


# --------------------------------------------------------------------------
# upsert / delete
# --------------------------------------------------------------------------

def apply_upsert(state: ClassroomState, collection: str, values: Mapping[str, Any]) -> ClassroomState:
    """
    Insert a record, or shallow-merge the given fields into the existing one.

    Fields absent from ``values`` keep their current value, which is what
    keeps a Unit's rounds alive across update rows that never carry them.
    """
    record_id = values.get('id')
    if not record_id:
        logger.warning(f"Ignoring {collection} row without id")
        return state

    if collection == ROUNDS:
        return _upsert_round(state, values)
    if collection == WORDS:
        return _upsert_word(state, values)
    if collection not in TABLES:
        logger.debug(f"Ignoring upsert for unknown collection {collection!r}")
        return state

    attr, record_class = TABLES[collection]
    table = getattr(state, attr)
    existing = table.get(record_id)
    merged = _merge(record_class, existing, values)
    if merged == existing:
        return state

    new_table = {**table, record_id: merged}
    changes = {attr: new_table}

    if collection == UNITS:
        if existing is None or existing.unit_number != merged.unit_number:
            new_table = _sorted_units(new_table)
            changes[attr] = new_table
        unlocked = _unlocked_ids(new_table)
        if unlocked != state.unlocked_unit_ids:
            changes['unlocked_unit_ids'] = unlocked

    elif collection == ROUND_PROGRESS:
        index = state.progress
        if existing is not None:
            index = _index_remove(index, existing)
        # At most one record per (student, unit, round)
        for other in list(new_table.values()):
            if other.id != record_id and other.key == merged.key:
                del new_table[other.id]
                index = _index_remove(index, other)
        changes['progress'] = _index_put(index, merged)

    elif collection == UNIT_TESTS:
        # At most one test per unit
        for other in list(new_table.values()):
            if other.id != record_id and other.unit_id == merged.unit_id:
                del new_table[other.id]

    return _commit(state, **changes)


def _replace_unit_round(state: ClassroomState, unit: Unit, round_: Optional[Round],
                        round_id: str) -> ClassroomState:
    """Swap (or drop, when ``round_`` is None) one round inside a unit."""
    rounds = []
    found = False
    for current in unit.rounds:
        if current.id == round_id:
            found = True
            if round_ is not None:
                rounds.append(round_)
        else:
            rounds.append(current)
    if not found and round_ is not None:
        rounds.append(round_)
    new_unit = replace(unit, rounds=tuple(rounds))
    return _commit(state, units={**state.units, unit.id: new_unit})


def _upsert_round(state: ClassroomState, values: Mapping[str, Any]) -> ClassroomState:
    round_id = values['id']
    owner, existing = find_round(state, round_id)
    unit_id = values.get('unit_id') or (owner.id if owner else None)
    unit = state.units.get(unit_id) if unit_id else None
    if unit is None:
        logger.debug(f"Round {round_id} references unknown unit {unit_id}")
        return state

    merged = _merge(Round, existing, dict(values, unit_id=unit_id))
    if merged == existing:
        return state
    if owner is not None and owner.id != unit.id:
        state = _replace_unit_round(state, owner, None, round_id)
        unit = state.units[unit.id]
    return _replace_unit_round(state, unit, merged, round_id)


def _upsert_word(state: ClassroomState, values: Mapping[str, Any]) -> ClassroomState:
    word_id = values['id']
    _, old_round, existing = find_word(state, word_id)
    round_id = values.get('round_id') or (old_round.id if old_round else None)
    unit, round_ = find_round(state, round_id) if round_id else (None, None)
    if round_ is None:
        logger.debug(f"Word {word_id} references unknown round {round_id}")
        return state

    merged = _merge(Word, existing, dict(values, round_id=round_id))
    if merged == existing:
        return state
    if old_round is not None and old_round.id != round_.id:
        state = _remove_word(state, word_id)
        unit, round_ = find_round(state, round_id)

    words = []
    found = False
    for word in round_.words:
        if word.id == word_id:
            found = True
            words.append(merged)
        else:
            words.append(word)
    if not found:
        words.append(merged)
    return _replace_unit_round(state, unit, replace(round_, words=tuple(words)), round_.id)


def _remove_word(state: ClassroomState, word_id: str) -> ClassroomState:
    unit, round_, word = find_word(state, word_id)
    if word is None:
        return state
    words = tuple(w for w in round_.words if w.id != word_id)
    return _replace_unit_round(state, unit, replace(round_, words=words), round_.id)


def apply_delete(state: ClassroomState, collection: str, record_id: str,
                 old: Optional[Mapping[str, Any]] = None) -> ClassroomState:
    """
    Remove a record. Unknown ids are a no-op: deletes race with local
    optimistic removal and with cascades that already took the parent away.
    """
    if collection == ROUNDS:
        unit, round_ = find_round(state, record_id)
        if round_ is None:
            return state
        return _replace_unit_round(state, unit, None, record_id)
    if collection == WORDS:
        return _remove_word(state, record_id)
    if collection not in TABLES:
        logger.debug(f"Ignoring delete for unknown collection {collection!r}")
        return state

    attr, _ = TABLES[collection]
    table = getattr(state, attr)
    existing = table.get(record_id)
    if existing is None:
        return state

    new_table = {k: v for k, v in table.items() if k != record_id}
    changes = {attr: new_table}
    if collection == UNITS:
        changes['unlocked_unit_ids'] = _unlocked_ids(new_table)
    elif collection == ROUND_PROGRESS:
        changes['progress'] = _index_remove(state.progress, existing)
    return _commit(state, **changes)


def replace_record(state: ClassroomState, collection: str, record_id: str, original) -> ClassroomState:
    """Put a record back exactly as captured, or remove it if it did not exist."""
    if original is None:
        return apply_delete(state, collection, record_id)
    return apply_upsert(state, collection, record_fields(original))


# --------------------------------------------------------------------------
# presence
# --------------------------------------------------------------------------

def sync_presence(state: ClassroomState, user_ids) -> ClassroomState:
    online = frozenset(user_ids)
    if online == state.online_user_ids:
        return state
    return _commit(state, online_user_ids=online)


def presence_joined(state: ClassroomState, user_id: str) -> ClassroomState:
    if user_id in state.online_user_ids:
        return state
    return _commit(state, online_user_ids=state.online_user_ids | {user_id})


def presence_left(state: ClassroomState, user_id: str, last_seen: str) -> ClassroomState:
    changes = {}
    if user_id in state.online_user_ids:
        changes['online_user_ids'] = state.online_user_ids - {user_id}
    user = state.users.get(user_id)
    if user is not None and user.last_seen != last_seen:
        changes['users'] = {**state.users, user_id: replace(user, last_seen=last_seen)}
    if not changes:
        return state
    return _commit(state, **changes)


# --------------------------------------------------------------------------
# chat and progress helpers
# --------------------------------------------------------------------------

def mark_read(state: ClassroomState, message_ids, user_id: str, read_at: str) -> ClassroomState:
    """Add a receipt for ``user_id`` on each message that does not have one yet."""
    updated = {}
    for message_id in message_ids:
        message = state.chat_messages.get(message_id)
        if message is None or message.is_read_by(user_id):
            continue
        receipt = ReadReceipt(user_id=user_id, read_at=read_at)
        updated[message_id] = replace(message, read_by=message.read_by + (receipt,))
    if not updated:
        return state
    return _commit(state, chat_messages={**state.chat_messages, **updated})


def clear_chat_history(state: ClassroomState, chat_group_id: str) -> ClassroomState:
    remaining = {k: m for k, m in state.chat_messages.items() if m.chat_group_id != chat_group_id}
    if len(remaining) == len(state.chat_messages):
        return state
    return _commit(state, chat_messages=remaining)


def reset_unit_progress(state: ClassroomState, student_id: str, unit_id: str) -> ClassroomState:
    doomed = [p for p in state.round_progress.values()
              if p.student_id == student_id and p.unit_id == unit_id]
    if not doomed:
        return state
    doomed_ids = {p.id for p in doomed}
    units = dict(state.progress.get(student_id, {}))
    units[unit_id] = {}
    return _commit(
        state,
        round_progress={k: v for k, v in state.round_progress.items() if k not in doomed_ids},
        progress={**state.progress, student_id: units},
    )
