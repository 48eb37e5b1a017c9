"""
Goal Progress Tracker

Per (learner, goal) answer counters with an atomic read-modify-write.

Backed by Supabase (``chat_goal_progress`` table) when a client is given,
otherwise by an in-memory dict guarded by per-key locks. The Supabase path
uses a compare-and-set on ``questions_asked`` and retries when another
writer got there first, so concurrent answers are never lost.
"""

import logging
from typing import Optional, List, Dict, Sequence, Tuple

from supabase import PostgrestAPIError

from topic_chat_tutor.keyed_locks import KeyedLockRegistry
from topic_chat_tutor.models import Goal, GoalProgress, round_half_up

logger = logging.getLogger(__name__)


class ProgressWriteConflict(Exception):
    """A progress update kept losing the race against concurrent writers."""


class GoalProgressTracker:
    """
    Reads and updates goal progress counters.

    Args:
        supabase_client: Supabase client instance (optional)
        required_questions: Answers needed to complete a goal
        write_retries: Extra attempts after a lost compare-and-set
    """

    TABLE = "chat_goal_progress"

    def __init__(self, supabase_client=None, required_questions: int = 2, write_retries: int = 3):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.required_questions = required_questions
        self.write_retries = write_retries

        self._in_memory_progress: Dict[Tuple[str, str], GoalProgress] = {}
        self._locks = KeyedLockRegistry()

    async def get_progress(self, learner_id: str, goal_id: str) -> Optional[GoalProgress]:
        if not self.use_supabase:
            return self._in_memory_progress.get((learner_id, goal_id))
        return self._fetch_row(learner_id, goal_id)

    async def get_progress_for_goals(self, learner_id: str,
                                     goal_ids: Sequence[str]) -> Dict[str, GoalProgress]:
        """Progress keyed by goal id; goals without a row are absent."""
        if not goal_ids:
            return {}
        if not self.use_supabase:
            return {
                goal_id: self._in_memory_progress[(learner_id, goal_id)]
                for goal_id in goal_ids
                if (learner_id, goal_id) in self._in_memory_progress
            }

        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .in_('goal_id', list(goal_ids)) \
            .execute()
        return {row["goal_id"]: GoalProgress.from_row(row) for row in (result.data or [])}

    async def record_answer(self, learner_id: str, goal_id: str, is_correct: bool,
                            question: Optional[str] = None) -> GoalProgress:
        """
        Count one graded answer.

        Increments ``questions_asked`` and exactly one of ``correct_count`` /
        ``incorrect_count``; ``is_completed`` becomes ``questions_asked >=
        required_questions``. Not idempotent: call once per graded answer.

        Raises:
            ProgressWriteConflict: If the Supabase write lost every retry
        """
        if not self.use_supabase:
            async with self._locks.acquire((learner_id, goal_id)):
                current = self._in_memory_progress.get((learner_id, goal_id)) \
                    or GoalProgress(learner_id=learner_id, goal_id=goal_id)
                updated = current.with_answer(is_correct, self.required_questions, question)
                self._in_memory_progress[(learner_id, goal_id)] = updated
        else:
            updated = self._record_answer_supabase(learner_id, goal_id, is_correct, question)

        logger.info(
            f"📈 [GoalProgress] {learner_id[:8]}/{goal_id[:8]}: "
            f"{updated.questions_asked} asked, {updated.correct_count} correct, "
            f"completed={updated.is_completed}"
        )
        return updated

    def _record_answer_supabase(self, learner_id: str, goal_id: str, is_correct: bool,
                                question: Optional[str]) -> GoalProgress:
        for attempt in range(self.write_retries + 1):
            current = self._fetch_row(learner_id, goal_id)

            if current is None:
                updated = GoalProgress(learner_id=learner_id, goal_id=goal_id) \
                    .with_answer(is_correct, self.required_questions, question)
                try:
                    result = self.supabase.table(self.TABLE).insert(updated.to_row()).execute()
                except PostgrestAPIError as e:
                    # Unique (user_id, goal_id) violation: someone inserted first
                    logger.warning(f"⚠️ [GoalProgress] Insert conflict (attempt {attempt + 1}): {e}")
                    continue
            else:
                updated = current.with_answer(is_correct, self.required_questions, question)
                result = self.supabase.table(self.TABLE) \
                    .update(updated.to_row()) \
                    .eq('user_id', learner_id) \
                    .eq('goal_id', goal_id) \
                    .eq('questions_asked', current.questions_asked) \
                    .execute()

            if result.data:
                return updated
            logger.warning(f"⚠️ [GoalProgress] Concurrent update detected (attempt {attempt + 1}), retrying")

        raise ProgressWriteConflict(
            f"could not record answer for learner {learner_id} goal {goal_id} "
            f"after {self.write_retries + 1} attempts"
        )

    def _fetch_row(self, learner_id: str, goal_id: str) -> Optional[GoalProgress]:
        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .eq('goal_id', goal_id) \
            .limit(1) \
            .execute()
        if result.data:
            return GoalProgress.from_row(result.data[0])
        return None

    async def topic_completion_percent(self, learner_id: str, topic_id: str,
                                       goals: Sequence[Goal]) -> int:
        """round(100 * completed goals / total goals) for one topic."""
        topic_goals = [goal for goal in goals if goal.topic_id == topic_id]
        if not topic_goals:
            return 0
        progress = await self.get_progress_for_goals(learner_id, [goal.id for goal in topic_goals])
        completed = sum(1 for goal in topic_goals if goal.id in progress and progress[goal.id].is_completed)
        return round_half_up(100 * completed / len(topic_goals))

    async def list_progress(self) -> List[GoalProgress]:
        """Every progress row (used by the background completion sweep)."""
        if not self.use_supabase:
            return list(self._in_memory_progress.values())
        result = self.supabase.table(self.TABLE).select('*').execute()
        return [GoalProgress.from_row(row) for row in (result.data or [])]
