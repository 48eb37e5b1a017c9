"""
Learn More Planner

Turns a finished session into a remediation plan: which kind of mistake
dominates (primary focus) and which weak goals to revisit first. The
remediation chat itself is driven elsewhere; this module only analyses.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Sequence

from topic_chat_tutor.judgment import ERROR_TYPES, KNOWLEDGE_GAP
from topic_chat_tutor.models import SessionMetrics, TurnRecord

logger = logging.getLogger(__name__)

CONCEPTUAL_SHARE = 0.4
KNOWLEDGE_GAP_SHARE = 0.3
HIGH_PRIORITY_BELOW = 50

_FOCUS_REASONS = {
    "conceptual": "strengthening conceptual understanding",
    "knowledge_gaps": "filling knowledge gaps",
    "spelling": "improving spelling accuracy",
    "grammar": "refining grammar and sentence structure",
}


@dataclass
class MistakeTopic:
    question: str
    learner_answer: str
    correct_answer: str
    error_type: str
    needs_deep_review: bool


@dataclass
class FocusArea:
    goal_id: str
    goal_title: str
    score_percent: int
    mistake_count: int
    priority: str
    mistakes: List[MistakeTopic] = field(default_factory=list)


@dataclass
class LearningPlan:
    primary_focus: str
    focus_reason: str
    focus_areas: List[FocusArea]
    total_weak_goals: int
    error_type_counts: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _primary_focus(mistakes: Sequence[TurnRecord]) -> str:
    total = len(mistakes)
    conceptual = sum(1 for m in mistakes if m.error_type == "Conceptual")
    gaps = sum(1 for m in mistakes if m.error_type in (KNOWLEDGE_GAP, "No Answer Provided"))
    spelling = sum(1 for m in mistakes if m.error_type == "Spelling")
    grammar = sum(1 for m in mistakes if m.error_type == "Grammar")

    if conceptual > total * CONCEPTUAL_SHARE:
        return "conceptual"
    if gaps > total * KNOWLEDGE_GAP_SHARE:
        return "knowledge_gaps"
    if spelling > grammar:
        return "spelling"
    if grammar > 0:
        return "grammar"
    return "conceptual"


def build_learning_plan(metrics: SessionMetrics, turns: Sequence[TurnRecord]) -> LearningPlan:
    """
    Analyse mistakes of a session into a Learn More plan.

    Args:
        metrics: SessionMetrics of the finished session
        turns: The learner's turns for the topic

    Returns:
        LearningPlan with focus areas sorted weakest first
    """
    mistakes = [turn for turn in turns if not turn.is_correct]

    focus_areas = []
    for goal in metrics.weak_goals:
        goal_mistakes = [m for m in mistakes if m.goal_id == goal.goal_id]
        focus_areas.append(FocusArea(
            goal_id=goal.goal_id,
            goal_title=goal.goal_title,
            score_percent=goal.score_percent,
            mistake_count=len(goal_mistakes),
            priority="high" if goal.score_percent < HIGH_PRIORITY_BELOW else "medium",
            mistakes=[
                MistakeTopic(
                    question=m.question,
                    learner_answer=m.answer,
                    correct_answer=m.corrected_answer or "",
                    error_type=m.error_type or "",
                    needs_deep_review=m.explain_requests > 1 or m.error_type == "Conceptual",
                )
                for m in goal_mistakes
            ],
        ))
    focus_areas.sort(key=lambda area: area.score_percent)

    counts = {error_type: 0 for error_type in ERROR_TYPES}
    for mistake in mistakes:
        if mistake.error_type:
            counts[mistake.error_type] = counts.get(mistake.error_type, 0) + 1

    focus = _primary_focus(mistakes)
    logger.info(
        f"📋 [LearnMore] Plan: focus={focus}, {len(focus_areas)} weak goals, {len(mistakes)} mistakes"
    )
    return LearningPlan(
        primary_focus=focus,
        focus_reason=_FOCUS_REASONS[focus],
        focus_areas=focus_areas,
        total_weak_goals=len(metrics.weak_goals),
        error_type_counts=counts,
    )
