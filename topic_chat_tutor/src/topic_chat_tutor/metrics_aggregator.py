"""
Session Metrics Aggregator

Recomputes session statistics for a (learner, topic) pair from the turn
log and the goal progress counters. ``aggregate_metrics`` is a pure
function of its inputs, so calling it again without new turns gives an
identical result; the session engine relies on that to rebuild the
summary on every turn once all goals are complete instead of caching it.

Scoring notes:
- overall score is the mean of per-turn ``score_percent`` (partial credit
  and the "I don't know" floor count), not correct / total
- per-goal score is correct / asked from the progress counters
- rounding is half-up
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Sequence, Tuple

from topic_chat_tutor.config import TutorSettings
from topic_chat_tutor.models import (
    ErrorTypeStat,
    Goal,
    GoalPerformance,
    GoalProgress,
    SessionMetrics,
    TurnRecord,
    round_half_up,
)

logger = logging.getLogger(__name__)

TOP_ERROR_TYPES = 3
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def star_rating(score_percent: int, bands: Tuple[int, ...] = (90, 75, 60, 40)) -> int:
    """5 stars at the first band, down to 1 star below the last one."""
    for index, threshold in enumerate(bands):
        if score_percent >= threshold:
            return 5 - index
    return 1


def performance_level(score_percent: int) -> str:
    if score_percent >= 80:
        return "Excellent"
    if score_percent >= 60:
        return "Good"
    return "Needs Improvement"


def _turn_sort_key(turn: TurnRecord):
    created = turn.created_at or _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created, turn.id or ""


def _session_window(turns: Sequence[TurnRecord], goal_count: int,
                    required_questions: int) -> List[TurnRecord]:
    """Latest ``required_questions * goal_count`` turns, oldest first."""
    ordered = sorted(turns, key=_turn_sort_key)
    window = required_questions * goal_count
    if window and len(ordered) > window:
        return ordered[-window:]
    return ordered


def _count(values) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    return dict(sorted(counts.items()))


def aggregate_metrics(goals: Sequence[Goal],
                      progress_by_goal: Dict[str, GoalProgress],
                      turns: Sequence[TurnRecord],
                      settings: Optional[TutorSettings] = None) -> SessionMetrics:
    """
    Build SessionMetrics from stored turns and progress.

    Args:
        goals: All goals of the topic
        progress_by_goal: Learner's progress keyed by goal id
        turns: Learner's turns for those goals, any order
        settings: Thresholds (defaults when omitted)

    Returns:
        SessionMetrics; identical for identical inputs
    """
    settings = settings or TutorSettings()
    ordered_goals = sorted(goals, key=lambda g: g.order)
    session_turns = _session_window(turns, len(ordered_goals), settings.required_questions_per_goal)

    total = len(session_turns)
    correct = sum(1 for turn in session_turns if turn.is_correct)
    incorrect = total - correct
    overall = round_half_up(sum(turn.score_percent for turn in session_turns) / total) if total else 0

    goal_performance: List[GoalPerformance] = []
    for goal in ordered_goals:
        progress = progress_by_goal.get(goal.id)
        asked = progress.questions_asked if progress else 0
        goal_correct = progress.correct_count if progress else 0
        goal_incorrect = progress.incorrect_count if progress else 0
        score = round_half_up(goal_correct / asked * 100) if asked else 0
        goal_performance.append(GoalPerformance(
            goal_id=goal.id,
            goal_title=goal.title,
            questions_asked=asked,
            correct_answers=goal_correct,
            incorrect_answers=goal_incorrect,
            score_percent=score,
            is_completed=bool(progress and progress.is_completed),
            is_weak=asked > 0 and score < settings.weak_goal_threshold,
        ))
    weak_goals = [goal for goal in goal_performance if goal.is_weak]

    wrong_turns = [turn for turn in session_turns if not turn.is_correct]
    error_type_counts = _count(turn.error_type for turn in wrong_turns if turn.error_type)
    error_subtype_counts = _count(turn.error_subtype for turn in wrong_turns if turn.error_subtype)
    top_error_types = [
        ErrorTypeStat(
            error_type=error_type,
            count=count,
            percent=round_half_up(count / incorrect * 100) if incorrect else 0,
        )
        for error_type, count in sorted(error_type_counts.items(), key=lambda item: (-item[1], item[0]))
    ][:TOP_ERROR_TYPES]

    # Closing a gap turns every wrong answer in a weak goal into a right one
    recoverable = sum(max(0, goal.questions_asked - goal.correct_answers) for goal in weak_goals)
    projected_correct = min(total, correct + recoverable)
    projected = round_half_up(projected_correct / total * 100) if total else overall

    return SessionMetrics(
        total_questions=total,
        correct_answers=correct,
        incorrect_answers=incorrect,
        overall_score_percent=overall,
        star_rating=star_rating(overall, settings.star_bands),
        performance_level=performance_level(overall),
        goal_performance=goal_performance,
        weak_goals=weak_goals,
        has_weak_areas=bool(weak_goals),
        error_type_counts=error_type_counts,
        error_subtype_counts=error_subtype_counts,
        top_error_types=top_error_types,
        total_explanations=sum(turn.explain_requests for turn in session_turns),
        projected_score_percent=projected,
    )


def format_session_summary(topic_title: str, metrics: SessionMetrics) -> str:
    """Learner-facing report shown as the session summary message."""
    no_answer = max(0, metrics.total_questions - metrics.correct_answers - metrics.incorrect_answers)
    gaps = [goal.goal_title or "Untitled" for goal in metrics.goal_performance if goal.incorrect_answers > 0]
    gaps_text = "\n".join(f"• {gap}" for gap in gaps) if gaps else "None"
    stars = "⭐" * metrics.star_rating

    return (
        f"📊 Session Summary: {topic_title} {stars}\n"
        f"⸻\n"
        f"1. Your Performance\n"
        f"• Score: {metrics.overall_score_percent}%\n"
        f"• Correct: {metrics.correct_answers}\n"
        f"• Incorrect: {metrics.incorrect_answers}\n"
        f"• No Answer: {no_answer}\n"
        f"\n⸻\n"
        f"2. Your Learning Gaps\n"
        f"{gaps_text}\n"
        f"\n⸻\n"
        f"3. Closing these gaps will raise your score from {metrics.overall_score_percent}% "
        f"to {metrics.projected_score_percent}% in this topic.\n"
        f"\n⸻\n"
        f"4. What would you like to do next?\n"
        f"• Improve My Score\n"
        f"• Go to Next Topic"
    )


class MetricsAggregator:
    """
    Loads turns and progress for a topic and aggregates them.

    Args:
        turn_log: TurnLog instance
        progress_tracker: GoalProgressTracker instance
        settings: Thresholds
    """

    def __init__(self, turn_log, progress_tracker, settings: Optional[TutorSettings] = None):
        self.turn_log = turn_log
        self.progress_tracker = progress_tracker
        self.settings = settings or TutorSettings()

    async def compute(self, learner_id: str, topic_id: str, goals: Sequence[Goal]) -> SessionMetrics:
        goal_ids = [goal.id for goal in goals if goal.topic_id == topic_id]
        topic_goals = [goal for goal in goals if goal.id in goal_ids]
        progress = await self.progress_tracker.get_progress_for_goals(learner_id, goal_ids)
        turns = await self.turn_log.list_turns(learner_id, goal_ids)

        metrics = aggregate_metrics(topic_goals, progress, turns, self.settings)
        logger.info(
            f"📊 [Metrics] {learner_id[:8]}/{topic_id[:8]}: {metrics.total_questions} questions, "
            f"score {metrics.overall_score_percent}% ({metrics.star_rating}★)"
        )
        return metrics
