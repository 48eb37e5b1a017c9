"""
Turn Log

Append-only record of every graded question/answer exchange
(``learning_turns`` table). This is the system of record the metrics are
recomputed from, so rows are never edited except for the explain counter.

Also provides the per-goal mastery score and the topic analytics summary.
"""

import logging
import uuid
from dataclasses import replace
from typing import Optional, List, Dict, Any, Sequence

from topic_chat_tutor.models import TurnRecord, round_half_up, utc_now

logger = logging.getLogger(__name__)

MASTERY_WINDOW = 10
MASTERY_DECAY = 0.9


class TurnLog:
    """
    Stores TurnRecords in Supabase or in memory.

    Args:
        supabase_client: Supabase client instance (optional)
    """

    TABLE = "learning_turns"

    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self._in_memory_turns: List[TurnRecord] = []

    async def append_turn(self, turn: TurnRecord) -> TurnRecord:
        """Persist a new turn; assigns ``id`` and ``created_at``."""
        stored = replace(
            turn,
            id=turn.id or str(uuid.uuid4()),
            created_at=turn.created_at or utc_now(),
        )
        if not self.use_supabase:
            self._in_memory_turns.append(stored)
        else:
            result = self.supabase.table(self.TABLE).insert(stored.to_row()).execute()
            if result.data:
                stored = TurnRecord.from_row(result.data[0])

        logger.info(
            f"📝 [TurnLog] Turn {stored.id[:8]} goal={stored.goal_id[:8]} "
            f"correct={stored.is_correct} score={stored.score_percent}%"
        )
        return stored

    async def increment_explain_count(self, turn_id: str) -> Optional[TurnRecord]:
        """Bump ``explain_requests`` on an existing turn; returns the updated turn."""
        if not self.use_supabase:
            for index, turn in enumerate(self._in_memory_turns):
                if turn.id == turn_id:
                    updated = replace(turn, explain_requests=turn.explain_requests + 1)
                    self._in_memory_turns[index] = updated
                    return updated
            logger.warning(f"⚠️ [TurnLog] Turn {turn_id} not found for explain count")
            return None

        result = self.supabase.table(self.TABLE).select('*').eq('id', turn_id).limit(1).execute()
        if not result.data:
            logger.warning(f"⚠️ [TurnLog] Turn {turn_id} not found for explain count")
            return None
        current = TurnRecord.from_row(result.data[0])
        self.supabase.table(self.TABLE) \
            .update({"explain_requests": current.explain_requests + 1}) \
            .eq('id', turn_id) \
            .execute()
        return replace(current, explain_requests=current.explain_requests + 1)

    async def list_turns(self, learner_id: str, goal_ids: Sequence[str]) -> List[TurnRecord]:
        """Turns of a learner for the given goals, oldest first."""
        if not goal_ids:
            return []
        if not self.use_supabase:
            wanted = set(goal_ids)
            return [t for t in self._in_memory_turns if t.learner_id == learner_id and t.goal_id in wanted]

        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .in_('goal_id', list(goal_ids)) \
            .order('created_at', desc=False) \
            .execute()
        return [TurnRecord.from_row(row) for row in (result.data or [])]

    async def list_topic_turns(self, learner_id: str, topic_id: str) -> List[TurnRecord]:
        if not self.use_supabase:
            return [t for t in self._in_memory_turns if t.learner_id == learner_id and t.topic_id == topic_id]

        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .eq('topic_id', topic_id) \
            .order('created_at', desc=False) \
            .execute()
        return [TurnRecord.from_row(row) for row in (result.data or [])]

    async def latest_turn(self, learner_id: str, topic_id: str) -> Optional[TurnRecord]:
        turns = await self.list_topic_turns(learner_id, topic_id)
        return turns[-1] if turns else None

    async def calculate_mastery_score(self, learner_id: str, goal_id: str) -> int:
        """
        Recency-weighted mastery over the last 10 turns of a goal.

        The newest turn weighs 1.0, the one before 0.9, then 0.81 and so on.
        """
        turns = await self.list_turns(learner_id, [goal_id])
        return mastery_from_turns(turns)

    async def get_topic_analytics(self, learner_id: str, topic_id: str) -> Dict[str, Any]:
        turns = await self.list_topic_turns(learner_id, topic_id)
        return topic_analytics_from_turns(turns)


def mastery_from_turns(turns: Sequence[TurnRecord]) -> int:
    recent = list(reversed(turns))[:MASTERY_WINDOW]
    if not recent:
        return 0
    weighted_sum = 0.0
    total_weight = 0.0
    for index, turn in enumerate(recent):
        weight = MASTERY_DECAY ** index
        weighted_sum += turn.score_percent * weight
        total_weight += weight
    return round_half_up(weighted_sum / total_weight)


def topic_analytics_from_turns(turns: Sequence[TurnRecord]) -> Dict[str, Any]:
    """Reporting summary of all turns of one topic (not limited to one session)."""
    total = len(turns)
    error_types: Dict[str, int] = {}
    error_subtypes: Dict[str, int] = {}
    by_goal: Dict[str, Dict[str, Any]] = {}

    for turn in turns:
        if turn.error_type:
            error_types[turn.error_type] = error_types.get(turn.error_type, 0) + 1
        if turn.error_subtype:
            error_subtypes[turn.error_subtype] = error_subtypes.get(turn.error_subtype, 0) + 1

        goal = by_goal.setdefault(turn.goal_id, {"total": 0, "correct": 0, "scores": []})
        goal["total"] += 1
        goal["correct"] += 1 if turn.is_correct else 0
        goal["scores"].append(turn.score_percent)

    goals_summary = {}
    for goal_id, stats in by_goal.items():
        goal_turns = [t for t in turns if t.goal_id == goal_id]
        goals_summary[goal_id] = {
            "total_questions": stats["total"],
            "correct_answers": stats["correct"],
            "average_score": round_half_up(sum(stats["scores"]) / stats["total"]),
            "mastery_score": mastery_from_turns(goal_turns),
        }

    return {
        "total_questions": total,
        "correct_answers": sum(1 for t in turns if t.is_correct),
        "incorrect_answers": sum(1 for t in turns if not t.is_correct),
        "average_score": round_half_up(sum(t.score_percent for t in turns) / total) if total else 0,
        "error_types": dict(sorted(error_types.items())),
        "error_subtypes": dict(sorted(error_subtypes.items())),
        "total_explain_requests": sum(t.explain_requests for t in turns),
        "total_retries": sum(t.retries for t in turns),
        "score_trend": [
            {"timestamp": t.created_at.isoformat() if t.created_at else None, "score_percent": t.score_percent}
            for t in turns
        ],
        "by_goal": goals_summary,
    }
