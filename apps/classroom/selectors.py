"""Read-side views derived from the classroom state."""
from dataclasses import dataclass
from typing import Dict, List, Optional

from apps.sync.state import ClassroomState

from .models import ROLE_STUDENT, ChatGroup, ChatMessage, Unit, User


@dataclass(frozen=True)
class UnitProgressSummary:
    unit_id: str
    completed_rounds: int
    total_rounds: int
    average_score: float

    @property
    def finished(self) -> bool:
        return self.total_rounds > 0 and self.completed_rounds >= self.total_rounds


@dataclass(frozen=True)
class ActivityItem:
    kind: str  # 'round' 或 'test'
    student_id: str
    unit_id: str
    title: str
    score: float
    at: str


def ordered_units(state: ClassroomState) -> List[Unit]:
    return sorted(state.units.values(), key=lambda unit: unit.unit_number)


def unlocked_units(state: ClassroomState) -> List[Unit]:
    return [state.units[unit_id] for unit_id in state.unlocked_unit_ids if unit_id in state.units]


def current_user(state: ClassroomState) -> Optional[User]:
    """The session user as last seen in the users table, not as first loaded."""
    if state.current_user_id is None:
        return None
    return state.users.get(state.current_user_id)


def students(state: ClassroomState) -> List[User]:
    return sorted((u for u in state.users.values() if u.role == ROLE_STUDENT),
                  key=lambda u: u.name.lower())


def is_online(state: ClassroomState, user_id: str) -> bool:
    return user_id in state.online_user_ids


def groups_for(state: ClassroomState, user_id: str) -> List[ChatGroup]:
    return [group for group in state.chat_groups.values() if user_id in group.members]


def group_messages(state: ClassroomState, group_id: str) -> List[ChatMessage]:
    messages = [m for m in state.chat_messages.values() if m.chat_group_id == group_id]
    return sorted(messages, key=lambda m: (m.created_at or '', m.id))


def unread_count(state: ClassroomState, group_id: str, user_id: str) -> int:
    return sum(
        1 for m in state.chat_messages.values()
        if m.chat_group_id == group_id and m.sender_id != user_id and not m.is_read_by(user_id)
    )


def unit_progress(state: ClassroomState, student_id: str, unit_id: str) -> UnitProgressSummary:
    """
    Completion and average last-attempt score of one student on one unit.

    Progress rows for rounds that no longer exist in the unit are ignored.
    """
    unit = state.units.get(unit_id)
    round_ids = [r.id for r in unit.rounds] if unit else []
    by_round = state.progress.get(student_id, {}).get(unit_id, {})

    scores = []
    completed = 0
    for round_id in round_ids:
        progress = by_round.get(round_id)
        if progress is None:
            continue
        if progress.completed:
            completed += 1
        if progress.last_attempt is not None:
            scores.append(progress.last_attempt.score)

    average = sum(scores) / len(scores) if scores else 0.0
    return UnitProgressSummary(unit_id, completed, len(round_ids), average)


def recent_activity(state: ClassroomState, student_id: Optional[str] = None,
                    limit: int = 20) -> List[ActivityItem]:
    """Round attempts and test results, newest first."""
    rounds: Dict[str, str] = {
        r.id: r.title for unit in state.units.values() for r in unit.rounds
    }
    items = []
    for progress in state.round_progress.values():
        if student_id and progress.student_id != student_id:
            continue
        for attempt in progress.history:
            items.append(ActivityItem(
                kind='round',
                student_id=progress.student_id,
                unit_id=progress.unit_id,
                title=rounds.get(progress.round_id, ''),
                score=attempt.score,
                at=attempt.completed_at,
            ))

    for test in state.unit_tests.values():
        for result in test.results:
            if student_id and result.student_id != student_id:
                continue
            if not result.completed_at:
                continue
            items.append(ActivityItem(
                kind='test',
                student_id=result.student_id,
                unit_id=test.unit_id,
                title=test.title,
                score=result.score,
                at=result.completed_at,
            ))

    items.sort(key=lambda item: item.at, reverse=True)
    return items[:limit]
