"""In-memory mirror records for the classroom backend.

Nothing here is persisted locally: every record is a projection of a row
owned by the hosted backend. Records are frozen so that the store can share
unchanged branches between successive states.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple

ROLE_STUDENT = 'student'
ROLE_TEACHER = 'teacher'

ROLE_CHOICES = [
    (ROLE_STUDENT, 'Student'),
    (ROLE_TEACHER, 'Teacher'),
]

TEST_INACTIVE = 'inactive'
TEST_WAITING = 'waiting'
TEST_IN_PROGRESS = 'in_progress'
TEST_COMPLETED = 'completed'

TEST_STATUS_CHOICES = [
    (TEST_INACTIVE, 'Inactive'),
    (TEST_WAITING, 'Waiting for students'),
    (TEST_IN_PROGRESS, 'In progress'),
    (TEST_COMPLETED, 'Completed'),
]

QUESTION_SPELL = 'spell'
QUESTION_CHOOSE_TRANSLATION = 'choose_translation'
QUESTION_CHOOSE_PICTURE = 'choose_picture'

QUESTION_TYPE_CHOICES = [
    (QUESTION_SPELL, 'Spell the word'),
    (QUESTION_CHOOSE_TRANSLATION, 'Choose the translation'),
    (QUESTION_CHOOSE_PICTURE, 'Choose the picture'),
]

QUESTION_TYPES = tuple(value for value, _ in QUESTION_TYPE_CHOICES)


@dataclass(frozen=True)
class User:
    id: str
    name: str = ''
    email: str = ''
    role: str = ROLE_STUDENT
    avatar_url: str = ''
    last_seen: Optional[str] = None

    @property
    def is_teacher(self) -> bool:
        return self.role == ROLE_TEACHER


@dataclass(frozen=True)
class Word:
    id: str
    round_id: str = ''
    english: str = ''
    translation: str = ''
    transcription: str = ''
    image_url: str = ''
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Round:
    id: str
    unit_id: str = ''
    title: str = ''
    words: Tuple[Word, ...] = ()
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Unit:
    id: str
    title: str = ''
    description: str = ''
    icon: str = ''
    unlocked: bool = False
    unit_number: int = 0
    rounds: Tuple[Round, ...] = ()
    created_at: Optional[str] = None

    @property
    def words(self) -> Tuple[Word, ...]:
        return tuple(word for round_ in self.rounds for word in round_.words)


@dataclass(frozen=True)
class Answer:
    word_id: str
    stage: str
    answer: str = ''
    is_correct: bool = False


@dataclass(frozen=True)
class Attempt:
    attempt_number: int
    score: float
    completed_at: str
    answers: Tuple[Answer, ...] = ()


@dataclass(frozen=True)
class RoundProgress:
    id: str
    student_id: str = ''
    unit_id: str = ''
    round_id: str = ''
    completed: bool = False
    history: Tuple[Attempt, ...] = ()
    attempts: int = 0
    created_at: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.student_id, self.unit_id, self.round_id)

    @property
    def last_attempt(self) -> Optional[Attempt]:
        return self.history[-1] if self.history else None


@dataclass(frozen=True)
class QuizQuestion:
    word: Word
    type: str
    options: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class StudentTestAnswer:
    question_index: int
    answer: str = ''
    is_correct: bool = False


@dataclass(frozen=True)
class StudentTestResult:
    student_id: str
    answers: Tuple[StudentTestAnswer, ...] = ()
    score: float = 0.0
    completed_at: str = ''
    teacher_grade: Optional[int] = None
    teacher_comment: Optional[str] = None
    passed: Optional[bool] = None


@dataclass(frozen=True)
class UnitTest:
    id: str
    unit_id: str = ''
    title: str = ''
    status: str = TEST_INACTIVE
    joined_students: Tuple[str, ...] = ()
    questions: Optional[Tuple[QuizQuestion, ...]] = None
    results: Tuple[StudentTestResult, ...] = ()
    start_time: Optional[str] = None
    created_at: Optional[str] = None

    def result_for(self, student_id: str) -> Optional[StudentTestResult]:
        for result in self.results:
            if result.student_id == student_id:
                return result
        return None


@dataclass(frozen=True)
class ChatGroup:
    id: str
    name: str = ''
    members: Tuple[str, ...] = ()
    avatar_url: str = ''
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ReadReceipt:
    user_id: str
    read_at: str


@dataclass(frozen=True)
class ChatMessage:
    id: str
    chat_group_id: str = ''
    sender_id: str = ''
    content: str = ''
    read_by: Tuple[ReadReceipt, ...] = field(default_factory=tuple)
    created_at: Optional[str] = None

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)
