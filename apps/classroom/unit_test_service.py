#!/usr/bin/env python3
# apps/classroom/unit_test_service.py

import logging
import random
from dataclasses import replace
from typing import Optional, Sequence

from django.utils import timezone

from apps.sync.backend import BackendClient
from apps.sync.commands import OptimisticCommands
from apps.sync.store import ClassroomStore

from .models import (
    TEST_COMPLETED, TEST_IN_PROGRESS, TEST_INACTIVE, TEST_WAITING, UnitTest,
)
from .quiz import generate_questions, remaining_seconds, score_test
from .serializers import (
    UNIT_TESTS, StudentTestResultSerializer, QuizQuestionSerializer,
)

logger = logging.getLogger(__name__)

SUBMIT_RPC = 'submit_test_answers'


class InvalidTransitionError(Exception):
    """The requested test transition is not allowed from the current status."""


class UnitTestService:
    """
    Teacher and student actions on a live unit test.

    inactive -> waiting -> in_progress -> completed. Apart from activation
    (optimistic) and grading (optimistic), transitions are written to the
    backend and show up locally only when the change feed echoes them.
    """

    def __init__(self, store: ClassroomStore, backend: BackendClient,
                 commands: Optional[OptimisticCommands] = None,
                 notifier=None, rng: Optional[random.Random] = None):
        self.store = store
        self.backend = backend
        self.commands = commands or OptimisticCommands(store)
        self.notifier = notifier
        self.rng = rng

    def _test(self, test_id: str) -> UnitTest:
        test = self.store.state.unit_tests.get(test_id)
        if test is None:
            raise InvalidTransitionError(f"Unknown test {test_id}")
        return test

    async def _notify(self, event: str, test_id: str):
        if self.notifier is not None:
            await self.notifier.broadcast(event, {'testId': test_id})

    async def create_test(self, unit_id: str, title: str):
        if unit_id not in self.store.state.units:
            raise InvalidTransitionError(f"Unknown unit {unit_id}")
        if any(t.unit_id == unit_id for t in self.store.state.unit_tests.values()):
            raise InvalidTransitionError("This unit already has a test")
        logger.info(f"Creating test for unit {unit_id}")
        return await self.backend.insert(UNIT_TESTS, {
            'unit_id': unit_id,
            'title': title,
            'status': TEST_INACTIVE,
        })

    async def activate(self, test_id: str):
        """Open the test for joining (inactive -> waiting)."""
        test = self._test(test_id)
        if test.status == TEST_WAITING:
            return
        if test.status != TEST_INACTIVE:
            raise InvalidTransitionError(f"Cannot activate a test that is {test.status}")

        await self.commands.run(
            UNIT_TESTS, test_id, {'status': TEST_WAITING},
            lambda: self.backend.update(UNIT_TESTS, test_id, {'status': TEST_WAITING}),
            error_message='Failed to activate the test.',
        )
        await self._notify('test_activated', test_id)

    async def join(self, test_id: str, student_id: str):
        """
        Add a student to the joined list. Joining twice is a no-op.

        Reads the authoritative row first so a stale local copy cannot drop
        somebody else's join.
        """
        row = await self.backend.select_one(UNIT_TESTS, test_id, 'id,status,joined_students')
        if row is None:
            raise InvalidTransitionError(f"Unknown test {test_id}")
        if row.get('status') != TEST_WAITING:
            raise InvalidTransitionError("The test is not accepting students")

        joined = list(row.get('joined_students') or [])
        if student_id not in joined:
            joined.append(student_id)
            await self.backend.update(UNIT_TESTS, test_id, {'joined_students': joined})
            logger.info(f"Student {student_id} joined test {test_id}")
        await self._notify('student_join', test_id)

    async def start(self, test_id: str):
        """
        Generate the questions and start the clock (waiting -> in_progress).

        The start timestamp written here is what every client counts down
        from.
        """
        test = self._test(test_id)
        if test.status != TEST_WAITING:
            raise InvalidTransitionError(f"Cannot start a test that is {test.status}")
        if not test.joined_students:
            raise InvalidTransitionError("Cannot start test. At least one student must join.")
        unit = self.store.state.units.get(test.unit_id)
        if unit is None:
            raise InvalidTransitionError("The unit for this test could not be found.")
        words = unit.words
        if not words:
            raise InvalidTransitionError("Cannot start test: unit has no words.")

        questions = generate_questions(words, self.rng)
        await self.backend.update(UNIT_TESTS, test_id, {
            'questions': QuizQuestionSerializer(questions, many=True).data,
            'status': TEST_IN_PROGRESS,
            'start_time': timezone.now().isoformat(),
        })
        logger.info(f"Started test {test_id} with {len(questions)} questions")

    async def end(self, test_id: str):
        """Close a running test; closing a test that is not running does nothing."""
        test = self._test(test_id)
        if test.status != TEST_IN_PROGRESS:
            return False
        await self.backend.update(UNIT_TESTS, test_id, {'status': TEST_COMPLETED})
        logger.info(f"Ended test {test_id}")
        return True

    async def expire_if_due(self, test_id: str, now=None):
        """Close the test when its shared countdown reached zero."""
        test = self._test(test_id)
        if test.status != TEST_IN_PROGRESS:
            return False
        if remaining_seconds(test.start_time, now) > 0:
            return False
        return await self.end(test_id)

    async def submit(self, test_id: str, student_id: str, answers: Sequence[str]):
        """
        Score and submit a student's answers through the merge-write procedure.

        The result list is shared between students, so nothing is patched
        locally: the echo brings the merged list back.
        """
        test = self._test(test_id)
        if test.status not in (TEST_IN_PROGRESS, TEST_COMPLETED):
            raise InvalidTransitionError(f"Cannot submit to a test that is {test.status}")
        if not test.questions:
            raise InvalidTransitionError("The test has no questions yet")

        result = score_test(student_id, test.questions, answers)
        await self.backend.rpc(SUBMIT_RPC, {
            'test_id': test_id,
            'student_result': StudentTestResultSerializer(result).data,
        })
        logger.info(f"Submitted result for {student_id} on test {test_id}: {result.score:.0f}%")
        await self._notify('submission', test_id)
        return result

    async def grade(self, test_id: str, student_id: str, grade: int,
                    comment: str = '', passed: bool = False):
        """Attach the teacher's grade (1-5), comment and pass flag to one result."""
        if not isinstance(grade, int) or not 1 <= grade <= 5:
            raise ValueError("Grade must be an integer from 1 to 5")
        test = self._test(test_id)
        if test.result_for(student_id) is None:
            raise InvalidTransitionError(f"No result from {student_id} on test {test_id}")

        results = tuple(
            replace(r, teacher_grade=grade, teacher_comment=comment, passed=passed)
            if r.student_id == student_id else r
            for r in test.results
        )
        payload = StudentTestResultSerializer(results, many=True).data
        await self.commands.run(
            UNIT_TESTS, test_id, {'results': results},
            lambda: self.backend.update(UNIT_TESTS, test_id, {'results': payload}),
            error_message='Failed to save grade.',
        )
