"""
Session State Derivation

The chat transcript is the state of the tutoring state machine. Nothing
else is persisted: every turn re-derives "are we waiting for an answer?",
"did we just offer to move on?" and "which goal is current?" from the
transcript tail and the goal progress counters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Sequence

from topic_chat_tutor.message_patterns import is_question
from topic_chat_tutor.models import (
    ChatMessage,
    Goal,
    GoalProgress,
    MessageType,
    Sender,
)


class SessionPhase(Enum):
    """Where the conversation stands before the learner's latest message."""
    ASKING_QUESTION = "asking_question"
    AWAITING_ANSWER = "awaiting_answer"
    MOVEMENT_PROMPT = "movement_prompt"
    ALL_GOALS_COMPLETE = "all_goals_complete"


@dataclass
class DerivedState:
    """Snapshot computed fresh for every learner message."""
    phase: SessionPhase
    last_tutor_message: Optional[ChatMessage] = None
    awaiting_answer: bool = False
    awaiting_movement_confirmation: bool = False
    all_goals_complete: bool = False
    current_goal: Optional[Goal] = None
    last_question: Optional[ChatMessage] = None
    pending_goal_id: Optional[str] = None
    goal_status: Dict[str, str] = field(default_factory=dict)


_STATE_MESSAGE_TYPES = (MessageType.TEXT, MessageType.MOVEMENT_PROMPT)


def find_last_tutor_message(transcript_tail: Sequence[ChatMessage]) -> Optional[ChatMessage]:
    """Latest tutor text or movement prompt, ignoring degraded apology notices."""
    for message in reversed(transcript_tail):
        if message.sender != Sender.TUTOR or message.is_degraded:
            continue
        if message.message_type in _STATE_MESSAGE_TYPES:
            return message
    return None


def find_last_question(transcript_tail: Sequence[ChatMessage]) -> Optional[ChatMessage]:
    for message in reversed(transcript_tail):
        if (
            message.sender == Sender.TUTOR
            and message.message_type == MessageType.TEXT
            and not message.is_degraded
            and is_question(message.text)
        ):
            return message
    return None


def goal_status_label(progress: Optional[GoalProgress], required_questions: int) -> str:
    if progress is None or progress.questions_asked == 0:
        return "not started"
    if progress.is_completed:
        return "completed"
    return f"in progress ({progress.questions_asked}/{required_questions} questions)"


def find_current_goal(goals: Sequence[Goal],
                      progress_by_goal: Dict[str, GoalProgress]) -> Optional[Goal]:
    """First goal by sequence order with missing or incomplete progress."""
    for goal in sorted(goals, key=lambda g: g.order):
        progress = progress_by_goal.get(goal.id)
        if progress is None or not progress.is_completed:
            return goal
    return None


def derive_state(transcript_tail: Sequence[ChatMessage],
                 goals: Sequence[Goal],
                 progress_by_goal: Dict[str, GoalProgress],
                 required_questions: int = 2) -> DerivedState:
    """
    Derive the state machine position from the transcript tail.

    Args:
        transcript_tail: Recent messages, oldest first
        goals: All goals of the topic
        progress_by_goal: Learner's progress keyed by goal id
        required_questions: Questions needed to complete a goal

    Returns:
        DerivedState for the next transition
    """
    current_goal = find_current_goal(goals, progress_by_goal)
    all_goals_complete = len(goals) > 0 and current_goal is None
    goal_status = {
        goal.id: goal_status_label(progress_by_goal.get(goal.id), required_questions)
        for goal in goals
    }

    last_tutor_message = find_last_tutor_message(transcript_tail)
    awaiting_answer = (
        last_tutor_message is not None
        and last_tutor_message.message_type == MessageType.TEXT
        and is_question(last_tutor_message.text)
    )
    awaiting_movement = (
        last_tutor_message is not None
        and last_tutor_message.message_type == MessageType.MOVEMENT_PROMPT
    )

    last_question = find_last_question(transcript_tail)
    pending_goal_id = None
    if awaiting_answer:
        pending_goal_id = last_tutor_message.payload.get("goal_id")
        if pending_goal_id is None and current_goal is not None:
            pending_goal_id = current_goal.id

    if all_goals_complete:
        phase = SessionPhase.ALL_GOALS_COMPLETE
    elif awaiting_answer:
        phase = SessionPhase.AWAITING_ANSWER
    elif awaiting_movement:
        phase = SessionPhase.MOVEMENT_PROMPT
    else:
        phase = SessionPhase.ASKING_QUESTION

    return DerivedState(
        phase=phase,
        last_tutor_message=last_tutor_message,
        awaiting_answer=awaiting_answer,
        awaiting_movement_confirmation=awaiting_movement,
        all_goals_complete=all_goals_complete,
        current_goal=current_goal,
        last_question=last_question,
        pending_goal_id=pending_goal_id,
        goal_status=goal_status,
    )
