# apps/classroom/tests/test_quiz.py
import datetime as dt
import random

import pytest

from apps.classroom.models import QuizQuestion, Word
from apps.classroom.quiz import (
    format_countdown, generate_questions, is_correct, normalize_spelling, remaining_seconds,
    score_test,
)

WORDS = (
    Word('W1', 'R1', 'apple', 'яблоко', image_url='a.png'),
    Word('W2', 'R1', 'pear', 'груша', image_url='p.png'),
    Word('W3', 'R1', 'plum', 'слива', image_url='l.png'),
    Word('W4', 'R1', 'grape', 'виноград', image_url='g.png'),
    Word('W5', 'R1', 'lemon', 'лимон', image_url='m.png'),
)


@pytest.mark.parametrize('typed,expected', [
    ("  Don't ", 'do not'),
    ('I’m  here', 'i am here'),
    ('cannot', 'can not'),
    ('Apple', 'apple'),
])
def test_normalize_spelling(typed, expected):
    assert normalize_spelling(typed) == expected


def test_three_questions_per_word():
    questions = generate_questions(WORDS, random.Random(1))
    assert len(questions) == len(WORDS) * 3

    for question in questions:
        if question.type == 'spell':
            assert question.options is None
            continue
        assert len(question.options) == 4
        assert len(set(question.options)) == 4
        correct = question.word.translation if question.type == 'choose_translation' else question.word.image_url
        assert correct in question.options


def test_small_unit_gets_fewer_options():
    questions = generate_questions(WORDS[:2], random.Random(3))
    choice = [q for q in questions if q.type != 'spell']
    assert all(len(q.options) == 2 for q in choice)


def test_score_counts_missing_answers_as_wrong():
    questions = (
        QuizQuestion(WORDS[0], 'spell'),
        QuizQuestion(WORDS[1], 'choose_translation', ('груша', 'слива')),
        QuizQuestion(WORDS[2], 'choose_picture', ('l.png', 'a.png')),
        QuizQuestion(WORDS[3], 'spell'),
    )

    result = score_test('s1', questions, ['APPLE', 'груша', 'a.png'], completed_at='now')

    assert [a.is_correct for a in result.answers] == [True, True, False, False]
    assert result.score == 50.0
    assert result.completed_at == 'now'


def test_is_correct_for_unknown_type():
    assert is_correct('essay', WORDS[0], 'apple') is False


def test_countdown_is_shared_from_start_time():
    start = '2024-05-01T10:00:00+00:00'
    now = dt.datetime(2024, 5, 1, 10, 4, 30, tzinfo=dt.timezone.utc)

    assert remaining_seconds(start, now, duration=600) == 330
    assert remaining_seconds(start, now + dt.timedelta(hours=1), duration=600) == 0
    assert remaining_seconds(None, now, duration=600) == 600
    assert format_countdown(330) == '05:30'
    assert format_countdown(-5) == '00:00'
