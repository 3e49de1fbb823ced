from rest_framework import serializers

from .models import (
    QUESTION_TYPE_CHOICES, ROLE_CHOICES, TEST_STATUS_CHOICES,
    Answer, Attempt, ChatGroup, ChatMessage, ReadReceipt, Round, RoundProgress,
    StudentTestAnswer, StudentTestResult, QuizQuestion, Unit, UnitTest, User, Word,
)

PROFILES = 'profiles'
UNITS = 'units'
ROUNDS = 'rounds'
WORDS = 'words'
ROUND_PROGRESS = 'round_progress'
UNIT_TESTS = 'unit_tests'
CHAT_GROUPS = 'chat_groups'
CHAT_MESSAGES = 'chat_messages'


class BlankCharField(serializers.CharField):
    """Nullable text column; null is mirrored as an empty string."""

    def __init__(self, **kwargs):
        kwargs.setdefault('required', False)
        kwargs.setdefault('allow_blank', True)
        kwargs.setdefault('allow_null', True)
        kwargs.setdefault('trim_whitespace', False)
        super().__init__(**kwargs)

    def validate_empty_values(self, data):
        is_empty, value = super().validate_empty_values(data)
        if is_empty and value is None:
            return True, ''
        return is_empty, value


class TimestampField(serializers.CharField):
    """ISO-8601 timestamp kept verbatim, as the backend sent it."""

    def __init__(self, **kwargs):
        kwargs.setdefault('required', False)
        kwargs.setdefault('allow_null', True)
        super().__init__(**kwargs)


class RecordSerializer(serializers.Serializer):
    """
    Validates one backend row or embedded JSON object.

    At the top level the result is a dict holding only the fields present in
    the row, so that partial update rows can be merged into existing records.
    Nested inside another serializer the result is the record itself.
    """
    record_class = None
    # Collection fields where null means "empty"
    tuple_fields = ()

    def to_internal_value(self, data):
        values = dict(super().to_internal_value(data))
        for name, value in values.items():
            if isinstance(value, list):
                values[name] = tuple(value)
        for name in self.tuple_fields:
            if name in values and values[name] is None:
                values[name] = ()
        if self.parent is not None:
            return self.build(values)
        return values

    def build(self, values):
        try:
            return self.record_class(**values)
        except TypeError as e:
            raise serializers.ValidationError(
                f"Incomplete {self.record_class.__name__}: {e}"
            )

    def to_record(self):
        return self.build(self.validated_data)


class WordSerializer(RecordSerializer):
    record_class = Word

    id = serializers.CharField()
    round_id = serializers.CharField(required=False)
    english = BlankCharField()
    russian = BlankCharField(source='translation')
    transcription = BlankCharField()
    image_url = BlankCharField()
    created_at = TimestampField()


class RoundSerializer(RecordSerializer):
    record_class = Round
    tuple_fields = ('words',)

    id = serializers.CharField()
    unit_id = serializers.CharField(required=False)
    title = BlankCharField()
    words = WordSerializer(many=True, required=False, allow_null=True)
    created_at = TimestampField()


class UnitSerializer(RecordSerializer):
    record_class = Unit
    tuple_fields = ('rounds',)

    id = serializers.CharField()
    title = BlankCharField()
    description = BlankCharField()
    icon = BlankCharField()
    unlocked = serializers.BooleanField(required=False)
    unit_number = serializers.IntegerField(required=False)
    rounds = RoundSerializer(many=True, required=False, allow_null=True)
    created_at = TimestampField()


class ProfileSerializer(RecordSerializer):
    record_class = User

    id = serializers.CharField()
    name = BlankCharField()
    email = BlankCharField()
    role = serializers.ChoiceField(choices=ROLE_CHOICES, required=False)
    avatar_url = BlankCharField()
    last_seen = TimestampField()


class AnswerSerializer(RecordSerializer):
    record_class = Answer

    wordId = serializers.CharField(source='word_id')
    stage = serializers.ChoiceField(choices=QUESTION_TYPE_CHOICES)
    answer = BlankCharField()
    isCorrect = serializers.BooleanField(source='is_correct', required=False)


class AttemptSerializer(RecordSerializer):
    record_class = Attempt
    tuple_fields = ('answers',)

    attemptNumber = serializers.IntegerField(source='attempt_number')
    score = serializers.FloatField(min_value=0, max_value=100)
    completedAt = serializers.CharField(source='completed_at')
    answers = AnswerSerializer(many=True, required=False, allow_null=True)


class RoundProgressSerializer(RecordSerializer):
    record_class = RoundProgress
    tuple_fields = ('history',)

    id = serializers.CharField()
    student_id = serializers.CharField(required=False)
    unit_id = serializers.CharField(required=False)
    round_id = serializers.CharField(required=False)
    completed = serializers.BooleanField(required=False)
    history = AttemptSerializer(many=True, required=False, allow_null=True)
    attempts = serializers.IntegerField(required=False, min_value=0)
    created_at = TimestampField()


class QuizQuestionSerializer(RecordSerializer):
    record_class = QuizQuestion

    word = WordSerializer()
    type = serializers.ChoiceField(choices=QUESTION_TYPE_CHOICES)
    options = serializers.ListField(
        child=BlankCharField(), required=False, allow_null=True
    )


class StudentTestAnswerSerializer(RecordSerializer):
    record_class = StudentTestAnswer

    questionIndex = serializers.IntegerField(source='question_index', min_value=0)
    answer = BlankCharField()
    isCorrect = serializers.BooleanField(source='is_correct', required=False)


class StudentTestResultSerializer(RecordSerializer):
    record_class = StudentTestResult
    tuple_fields = ('answers',)

    studentId = serializers.CharField(source='student_id')
    answers = StudentTestAnswerSerializer(many=True, required=False, allow_null=True)
    score = serializers.FloatField(required=False)
    completedAt = BlankCharField(source='completed_at')
    teacherGrade = serializers.IntegerField(source='teacher_grade', required=False, allow_null=True)
    teacherComment = serializers.CharField(
        source='teacher_comment', required=False, allow_null=True, allow_blank=True
    )
    passed = serializers.BooleanField(required=False, allow_null=True)


class UnitTestSerializer(RecordSerializer):
    record_class = UnitTest
    tuple_fields = ('joined_students', 'results')

    id = serializers.CharField()
    unit_id = serializers.CharField(required=False)
    title = BlankCharField()
    status = serializers.ChoiceField(choices=TEST_STATUS_CHOICES, required=False)
    joined_students = serializers.ListField(
        child=serializers.CharField(), required=False, allow_null=True
    )
    questions = QuizQuestionSerializer(many=True, required=False, allow_null=True)
    results = StudentTestResultSerializer(many=True, required=False, allow_null=True)
    start_time = TimestampField()
    created_at = TimestampField()

    def validate_joined_students(self, value):
        # 同一个学生只保留一次
        if value is None:
            return value
        return list(dict.fromkeys(value))

    def validate_results(self, value):
        """Keep the last result per student, in first-seen order."""
        if value is None:
            return value
        latest = {}
        for result in value:
            latest[result.student_id] = result
        return list(latest.values())


class ChatGroupSerializer(RecordSerializer):
    record_class = ChatGroup
    tuple_fields = ('members',)

    id = serializers.CharField()
    name = BlankCharField()
    members = serializers.ListField(
        child=serializers.CharField(), required=False, allow_null=True
    )
    avatar_url = BlankCharField()
    created_at = TimestampField()

    def validate_members(self, value):
        if value is None:
            return value
        return list(dict.fromkeys(value))


class ReadReceiptSerializer(RecordSerializer):
    record_class = ReadReceipt

    userId = serializers.CharField(source='user_id')
    readAt = serializers.CharField(source='read_at')


class ChatMessageSerializer(RecordSerializer):
    record_class = ChatMessage
    tuple_fields = ('read_by',)

    id = serializers.CharField()
    chat_group_id = serializers.CharField(required=False)
    sender_id = serializers.CharField(required=False)
    content = BlankCharField()
    read_by = ReadReceiptSerializer(many=True, required=False, allow_null=True)
    created_at = TimestampField()

    def validate_read_by(self, value):
        """First receipt per user wins."""
        if value is None:
            return value
        first = {}
        for receipt in value:
            first.setdefault(receipt.user_id, receipt)
        return list(first.values())


SERIALIZERS = {
    PROFILES: ProfileSerializer,
    UNITS: UnitSerializer,
    ROUNDS: RoundSerializer,
    WORDS: WordSerializer,
    ROUND_PROGRESS: RoundProgressSerializer,
    UNIT_TESTS: UnitTestSerializer,
    CHAT_GROUPS: ChatGroupSerializer,
    CHAT_MESSAGES: ChatMessageSerializer,
}

COLLECTIONS = tuple(SERIALIZERS)


def parse_row(collection: str, row: dict) -> dict:
    """
    Validate a backend row and return the record fields it carries.

    Args:
        collection: Backend table name
        row: Raw row as delivered by a read or the change feed

    Returns:
        Dict of record fields present in the row

    Raises:
        KeyError: unknown collection
        serializers.ValidationError: malformed row
    """
    serializer = SERIALIZERS[collection](data=row, partial=True)
    serializer.is_valid(raise_exception=True)
    return dict(serializer.validated_data)


def parse_record(collection: str, row: dict):
    """Validate a backend row and build the full record."""
    serializer = SERIALIZERS[collection](data=row, partial=True)
    serializer.is_valid(raise_exception=True)
    return serializer.to_record()


def to_row(collection: str, record) -> dict:
    """Render a record (or one of its embedded values) back into row shape."""
    return dict(SERIALIZERS[collection](record).data)
