#!/usr/bin/env python3
# apps/classroom/progress_service.py

import logging
from typing import Sequence

from django.utils import timezone

from apps.sync.backend import BackendClient
from apps.sync.events import RowUpserted, UnitProgressReset
from apps.sync.store import ClassroomStore

from .models import Answer, Attempt, RoundProgress
from .quiz import grade_round_answers
from .serializers import ROUND_PROGRESS, AttemptSerializer, parse_row

logger = logging.getLogger(__name__)


class ProgressService:
    """Round attempts and their history."""

    def __init__(self, store: ClassroomStore, backend: BackendClient):
        self.store = store
        self.backend = backend

    def current(self, student_id: str, unit_id: str, round_id: str):
        return (self.store.state.progress
                .get(student_id, {}).get(unit_id, {}).get(round_id))

    async def record_attempt(self, student_id: str, unit_id: str, round_id: str,
                             answers: Sequence[Answer]) -> RoundProgress:
        """
        Append an attempt to the round's history and save the whole record.

        The record is upserted on its (student, unit, round) key; the row the
        backend returns is applied right away.

        Args:
            student_id: Student who played the round
            unit_id: Unit the round belongs to
            round_id: Round that was played
            answers: Every answer of the attempt

        Returns:
            The saved progress record
        """
        existing = self.current(student_id, unit_id, round_id)
        history = existing.history if existing else ()
        attempt = Attempt(
            attempt_number=len(history) + 1,
            score=grade_round_answers(answers),
            completed_at=timezone.now().isoformat(),
            answers=tuple(answers),
        )
        history = history + (attempt,)

        row = {
            'student_id': student_id,
            'unit_id': unit_id,
            'round_id': round_id,
            'completed': True,
            'history': AttemptSerializer(history, many=True).data,
            'attempts': len(history),
        }
        if existing is not None:
            row['id'] = existing.id

        saved = await self.backend.upsert(ROUND_PROGRESS, row, on_conflict='student_id,unit_id,round_id')
        if saved:
            self.store.dispatch(RowUpserted(ROUND_PROGRESS, parse_row(ROUND_PROGRESS, saved)))
        logger.info(
            f"Recorded attempt {attempt.attempt_number} for {student_id} "
            f"on round {round_id}: {attempt.score:.0f}%"
        )
        return self.current(student_id, unit_id, round_id)

    async def reset_unit_progress(self, student_id: str, unit_id: str):
        await self.backend.delete(ROUND_PROGRESS, student_id=student_id, unit_id=unit_id)
        self.store.dispatch(UnitProgressReset(student_id, unit_id))
        logger.info(f"Reset progress of {student_id} on unit {unit_id}")
