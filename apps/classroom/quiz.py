#!/usr/bin/env python3
# apps/classroom/quiz.py

import datetime as dt
import random
import re
from typing import Dict, List, Optional, Sequence, Tuple

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .models import (
    QUESTION_CHOOSE_PICTURE, QUESTION_CHOOSE_TRANSLATION, QUESTION_SPELL, QUESTION_TYPES,
    Answer, StudentTestAnswer, StudentTestResult, QuizQuestion, Word,
)

OPTIONS_PER_QUESTION = 4

CONTRACTIONS: Dict[str, str] = {
    "i'm": "i am", "you're": "you are", "he's": "he is", "she's": "she is",
    "it's": "it is", "we're": "we are", "they're": "they are", "aren't": "are not",
    "can't": "can not", "couldn't": "could not", "didn't": "did not",
    "doesn't": "does not", "don't": "do not", "hadn't": "had not", "hasn't": "has not",
    "haven't": "have not", "isn't": "is not", "shouldn't": "should not",
    "wasn't": "was not", "weren't": "were not", "won't": "will not",
    "wouldn't": "would not", "what's": "what is", "where's": "where is",
    "when's": "when is", "who's": "who is", "why's": "why is", "how's": "how is",
    "let's": "let us",
}

_CONTRACTION_RE = re.compile(
    r"\b(" + "|".join(re.escape(c) for c in CONTRACTIONS) + r")\b"
)
_APOSTROPHES_RE = re.compile("[‘’`]|â€™")


def normalize_spelling(text: str) -> str:
    """
    Normalise a typed answer for comparison.

    Lower-cases, trims, unifies apostrophes and expands common English
    contractions so that "don't" and "do not" compare equal.
    """
    text = _APOSTROPHES_RE.sub("'", text.strip().lower())
    text = _CONTRACTION_RE.sub(lambda m: CONTRACTIONS[m.group(1)], text)
    text = re.sub(r"\bcannot\b", "can not", text)
    return re.sub(r"\s+", " ", text)


def _distractors(word: Word, pool: Sequence[Word], attr: str, rng: random.Random) -> List[str]:
    correct = getattr(word, attr)
    candidates = []
    for other in pool:
        value = getattr(other, attr)
        if other.id != word.id and value and value != correct and value not in candidates:
            candidates.append(value)
    rng.shuffle(candidates)
    return candidates[:OPTIONS_PER_QUESTION - 1]


def _question(word: Word, question_type: str, pool: Sequence[Word], rng: random.Random) -> QuizQuestion:
    if question_type == QUESTION_SPELL:
        return QuizQuestion(word=word, type=QUESTION_SPELL)

    attr = 'translation' if question_type == QUESTION_CHOOSE_TRANSLATION else 'image_url'
    options = [getattr(word, attr)] + _distractors(word, pool, attr, rng)
    rng.shuffle(options)
    return QuizQuestion(word=word, type=question_type, options=tuple(options))


def generate_questions(words: Sequence[Word], rng: Optional[random.Random] = None) -> Tuple[QuizQuestion, ...]:
    """
    Build the question list for a unit test.

    Each word yields exactly one question of every type, the types in a
    random order per word, and the whole list is shuffled. Choice questions
    carry the correct option plus up to three distinct distractors drawn from
    the other words; small units simply get fewer options.

    Args:
        words: Every word of the unit
        rng: Random source, for reproducible lists

    Returns:
        Tuple of questions, ``len(words) * 3`` long
    """
    rng = rng or random.Random()
    pool = list(words)
    shuffled = list(pool)
    rng.shuffle(shuffled)

    questions = []
    for word in shuffled:
        types = list(QUESTION_TYPES)
        rng.shuffle(types)
        for question_type in types:
            questions.append(_question(word, question_type, pool, rng))

    rng.shuffle(questions)
    return tuple(questions)


def is_correct(question_type: str, word: Word, answer: str) -> bool:
    answer = answer or ''
    if question_type == QUESTION_SPELL:
        return normalize_spelling(answer) == normalize_spelling(word.english)
    if question_type == QUESTION_CHOOSE_TRANSLATION:
        return answer.strip().lower() == word.translation.strip().lower()
    if question_type == QUESTION_CHOOSE_PICTURE:
        return answer.strip() == word.image_url
    return False


def percentage(correct: int, total: int) -> float:
    return (correct / total) * 100 if total > 0 else 0.0


def score_test(student_id: str, questions: Sequence[QuizQuestion], answers: Sequence[str],
               completed_at: Optional[str] = None) -> StudentTestResult:
    """Grade a student's answers; missing answers count as wrong."""
    graded = []
    for index, question in enumerate(questions):
        raw = answers[index] if index < len(answers) else ''
        graded.append(StudentTestAnswer(
            question_index=index,
            answer=raw or '',
            is_correct=is_correct(question.type, question.word, raw),
        ))

    correct = sum(1 for answer in graded if answer.is_correct)
    return StudentTestResult(
        student_id=student_id,
        answers=tuple(graded),
        score=percentage(correct, len(questions)),
        completed_at=completed_at or timezone.now().isoformat(),
    )


def grade_round_answers(answers: Sequence[Answer]) -> float:
    return percentage(sum(1 for a in answers if a.is_correct), len(answers))


# --------------------------------------------------------------------------
# countdown
# --------------------------------------------------------------------------

def _as_datetime(value) -> Optional[dt.datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_datetime(value)
        if value is None:
            return None
    if timezone.is_naive(value):
        value = timezone.make_aware(value, dt.timezone.utc)
    return value


def remaining_seconds(start_time, now=None, duration: Optional[int] = None) -> int:
    """
    Seconds left on a running test.

    Every client derives this from the shared ``start_time`` written when the
    test started, so all of them agree on the same expiry instant.
    """
    duration = settings.TEST_DURATION_SECONDS if duration is None else duration
    started = _as_datetime(start_time)
    if started is None:
        return duration
    now = _as_datetime(now) or timezone.now()
    elapsed = int((now - started).total_seconds())
    return max(0, duration - elapsed)


def format_countdown(seconds: int) -> str:
    minutes, seconds = divmod(max(0, seconds), 60)
    return f"{minutes:02d}:{seconds:02d}"
