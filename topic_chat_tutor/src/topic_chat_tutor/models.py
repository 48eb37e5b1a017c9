"""
Topic Chat Data Contracts

Dataclasses shared by the session engine, the stores and the metrics
aggregator. Stores convert them to and from plain dicts for Supabase rows.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Round .5 up for non-negative values (2.5 -> 3), unlike round()."""
    return int(value + 0.5)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Sender(Enum):
    """Who wrote a transcript message."""
    LEARNER = "learner"
    TUTOR = "tutor"


class MessageType(Enum):
    """Transcript message tags."""
    TEXT = "text"
    GRADED_CORRECTION = "graded_correction"
    MOVEMENT_PROMPT = "movement_prompt"
    SESSION_SUMMARY = "session_summary"


class TutorAction(Enum):
    """Protocol action chosen by the session engine for one learner message."""
    SESSION_SUMMARY = "session_summary"
    ASK_QUESTION = "ask_question"
    GRADE_ANSWER = "grade_answer"
    EXPLAIN = "explain"
    DEGRADED = "degraded"


@dataclass
class Topic:
    id: str
    title: str
    content: str = ""
    chapter_id: Optional[str] = None


@dataclass
class Goal:
    """A learning objective of a topic. Immutable once generated."""
    id: str
    topic_id: str
    title: str
    description: str = ""
    order: int = 0


@dataclass
class GoalProgress:
    """
    Per (learner, goal) answer counters.

    ``questions_asked == correct_count + incorrect_count`` holds after every
    recorded answer, and ``is_completed`` is derived from ``questions_asked``
    alone.
    """
    learner_id: str
    goal_id: str
    questions_asked: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    is_completed: bool = False
    last_question: Optional[str] = None
    updated_at: Optional[datetime] = None

    def with_answer(self, is_correct: bool, required_questions: int,
                    question: Optional[str] = None) -> "GoalProgress":
        """Return the counters after one more graded answer."""
        asked = self.questions_asked + 1
        return GoalProgress(
            learner_id=self.learner_id,
            goal_id=self.goal_id,
            questions_asked=asked,
            correct_count=self.correct_count + (1 if is_correct else 0),
            incorrect_count=self.incorrect_count + (0 if is_correct else 1),
            is_completed=asked >= required_questions,
            last_question=question if question is not None else self.last_question,
            updated_at=utc_now(),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.learner_id,
            "goal_id": self.goal_id,
            "questions_asked": self.questions_asked,
            "correct_answers": self.correct_count,
            "incorrect_answers": self.incorrect_count,
            "is_completed": self.is_completed,
            "last_question": self.last_question,
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GoalProgress":
        return cls(
            learner_id=row["user_id"],
            goal_id=row["goal_id"],
            questions_asked=row.get("questions_asked") or 0,
            correct_count=row.get("correct_answers") or 0,
            incorrect_count=row.get("incorrect_answers") or 0,
            is_completed=bool(row.get("is_completed")),
            last_question=row.get("last_question"),
            updated_at=_parse_datetime(row.get("updated_at")),
        )


@dataclass
class Judgment:
    """Canonical grading result after normalizing oracle output."""
    is_correct: bool
    score_percent: int
    error_type: Optional[str]
    correction_text: str
    diff_markup: Optional[str] = None
    corrected_answer: Optional[str] = None
    error_subtype: Optional[str] = None
    options: List[str] = field(default_factory=lambda: ["Got it", "Explain"])

    def feedback(self) -> Dict[str, Any]:
        return {
            "is_correct": self.is_correct,
            "score_percent": self.score_percent,
            "error_type": self.error_type,
        }


@dataclass
class TurnRecord:
    """
    One graded question/answer exchange.

    Append-only; the only permitted mutation after creation is bumping
    ``explain_requests``.
    """
    learner_id: str
    topic_id: str
    goal_id: str
    question: str
    answer: str
    is_correct: bool
    score_percent: int
    error_type: Optional[str] = None
    error_subtype: Optional[str] = None
    corrected_answer: Optional[str] = None
    correction_text: Optional[str] = None
    diff_markup: Optional[str] = None
    explain_requests: int = 0
    retries: int = 0
    question_asked_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        row = {
            "user_id": self.learner_id,
            "topic_id": self.topic_id,
            "goal_id": self.goal_id,
            "question": self.question,
            "user_answer": self.answer,
            "is_correct": self.is_correct,
            "score_percent": self.score_percent,
            "error_type": self.error_type,
            "error_subtype": self.error_subtype,
            "corrected_answer": self.corrected_answer,
            "correction_text": self.correction_text,
            "diff_html": self.diff_markup,
            "explain_requests": self.explain_requests,
            "retries": self.retries,
            "question_asked_at": _format_datetime(self.question_asked_at),
            "answered_at": _format_datetime(self.answered_at),
            "created_at": _format_datetime(self.created_at),
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TurnRecord":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            learner_id=row["user_id"],
            topic_id=row["topic_id"],
            goal_id=row["goal_id"],
            question=row.get("question") or "",
            answer=row.get("user_answer") or "",
            is_correct=bool(row.get("is_correct")),
            score_percent=int(row.get("score_percent") or 0),
            error_type=row.get("error_type"),
            error_subtype=row.get("error_subtype"),
            corrected_answer=row.get("corrected_answer"),
            correction_text=row.get("correction_text"),
            diff_markup=row.get("diff_html"),
            explain_requests=row.get("explain_requests") or 0,
            retries=row.get("retries") or 0,
            question_asked_at=_parse_datetime(row.get("question_asked_at")),
            answered_at=_parse_datetime(row.get("answered_at")),
            created_at=_parse_datetime(row.get("created_at")),
        )


@dataclass
class ChatMessage:
    """One transcript entry for a (learner, topic) chat."""
    learner_id: str
    topic_id: str
    sender: Sender
    text: str
    message_type: MessageType = MessageType.TEXT
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_degraded(self) -> bool:
        return bool(self.payload.get("degraded"))

    def to_row(self) -> Dict[str, Any]:
        row = {
            "user_id": self.learner_id,
            "topic_id": self.topic_id,
            "sender": self.sender.value,
            "message": self.text,
            "message_type": self.message_type.value,
            "payload": self.payload,
            "created_at": _format_datetime(self.created_at),
        }
        if self.id is not None:
            row["id"] = self.id
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            learner_id=row["user_id"],
            topic_id=row["topic_id"],
            sender=Sender(row["sender"]),
            text=row.get("message") or "",
            message_type=MessageType(row.get("message_type") or MessageType.TEXT.value),
            payload=row.get("payload") or {},
            created_at=_parse_datetime(row.get("created_at")),
        )


@dataclass
class OutboundMessage:
    """A tutor message produced by one engine turn, before persistence."""
    text: str
    message_type: MessageType = MessageType.TEXT
    options: Optional[List[str]] = None
    emoji: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"text": self.text, "type": self.message_type.value}
        if self.options:
            data["options"] = list(self.options)
        if self.emoji:
            data["emoji"] = self.emoji
        if self.payload:
            data["payload"] = self.payload
        return data


@dataclass
class GoalPerformance:
    goal_id: str
    goal_title: str
    questions_asked: int
    correct_answers: int
    incorrect_answers: int
    score_percent: int
    is_completed: bool
    is_weak: bool


@dataclass
class ErrorTypeStat:
    error_type: str
    count: int
    percent: int


@dataclass
class SessionMetrics:
    """Session-level statistics derived from turns and goal progress."""
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    overall_score_percent: int
    star_rating: int
    performance_level: str
    goal_performance: List[GoalPerformance]
    weak_goals: List[GoalPerformance]
    has_weak_areas: bool
    error_type_counts: Dict[str, int]
    error_subtype_counts: Dict[str, int]
    top_error_types: List[ErrorTypeStat]
    total_explanations: int
    projected_score_percent: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TutorTurnResult:
    """What one engine turn decided and emitted."""
    action: TutorAction
    messages: List[OutboundMessage]
    correction: Optional[Judgment] = None
    metrics: Optional[SessionMetrics] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action.value,
            "messages": [message.to_dict() for message in self.messages],
        }
        if self.correction is not None:
            data["correction"] = {
                "diff_markup": self.correction.diff_markup,
                "correction_text": self.correction.correction_text,
                "corrected_answer": self.correction.corrected_answer,
                "feedback": self.correction.feedback(),
            }
        if self.metrics is not None:
            data["metrics"] = self.metrics.to_dict()
        return data
