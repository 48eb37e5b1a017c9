"""
Curriculum Store

Read access to topics and their goals (generated by the content pipeline)
plus the learner's per-topic progress row: completion percent, completed
flag and time spent.
"""

import logging
from typing import Optional, List, Dict, Any, Tuple

from topic_chat_tutor.models import Goal, Topic, utc_now

logger = logging.getLogger(__name__)


class TopicNotFoundError(LookupError):
    """The requested topic does not exist."""


class CurriculumStore:
    """
    Topics, goals and topic progress.

    Args:
        supabase_client: Supabase client instance (optional)
        complete_threshold: Completion percent at which a topic counts as done
    """

    def __init__(self, supabase_client=None, complete_threshold: int = 50):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self.complete_threshold = complete_threshold

        self._in_memory_topics: Dict[str, Topic] = {}
        self._in_memory_goals: Dict[str, List[Goal]] = {}
        self._in_memory_topic_progress: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def add_topic(self, topic: Topic, goals: List[Goal]):
        """Register a topic with its goals (in-memory mode)."""
        self._in_memory_topics[topic.id] = topic
        self._in_memory_goals[topic.id] = sorted(goals, key=lambda g: g.order)

    async def get_topic(self, topic_id: str) -> Topic:
        """
        Raises:
            TopicNotFoundError: If the topic does not exist
        """
        if not self.use_supabase:
            topic = self._in_memory_topics.get(topic_id)
            if topic is None:
                raise TopicNotFoundError(topic_id)
            return topic

        result = self.supabase.table('topics').select('*').eq('id', topic_id).limit(1).execute()
        if not result.data:
            raise TopicNotFoundError(topic_id)
        row = result.data[0]
        return Topic(
            id=str(row["id"]),
            title=row.get("title") or row.get("name") or "",
            content=row.get("content") or row.get("description") or "",
            chapter_id=str(row["chapter_id"]) if row.get("chapter_id") is not None else None,
        )

    async def list_goals(self, topic_id: str) -> List[Goal]:
        """Goals of a topic in sequence order."""
        if not self.use_supabase:
            return list(self._in_memory_goals.get(topic_id, []))

        result = self.supabase.table('topic_goals') \
            .select('*') \
            .eq('topic_id', topic_id) \
            .order('order', desc=False) \
            .execute()
        return [
            Goal(
                id=str(row["id"]),
                topic_id=str(row["topic_id"]),
                title=row.get("title") or "",
                description=row.get("description") or "",
                order=row.get("order") or 0,
            )
            for row in (result.data or [])
        ]

    async def find_goal_topics(self, goal_ids: List[str]) -> Dict[str, str]:
        """Map goal id to topic id."""
        if not goal_ids:
            return {}
        if not self.use_supabase:
            wanted = set(goal_ids)
            return {
                goal.id: goal.topic_id
                for goals in self._in_memory_goals.values()
                for goal in goals
                if goal.id in wanted
            }

        result = self.supabase.table('topic_goals').select('id, topic_id').in_('id', goal_ids).execute()
        return {str(row["id"]): str(row["topic_id"]) for row in (result.data or [])}

    async def get_topic_progress(self, learner_id: str, topic_id: str) -> Dict[str, Any]:
        if not self.use_supabase:
            return dict(self._in_memory_topic_progress.get((learner_id, topic_id)) or self._empty_progress(learner_id, topic_id))

        result = self.supabase.table('topic_progress') \
            .select('*') \
            .eq('user_id', learner_id) \
            .eq('topic_id', topic_id) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else self._empty_progress(learner_id, topic_id)

    async def mark_topic_completed(self, learner_id: str, topic_id: str,
                                   completion_percent: int) -> Dict[str, Any]:
        """
        Store the completion percent; the topic is completed once it reaches
        ``complete_threshold`` and never flips back.
        """
        current = await self.get_topic_progress(learner_id, topic_id)
        was_completed = bool(current.get("is_completed"))
        is_completed = was_completed or completion_percent >= self.complete_threshold
        updated = {
            **current,
            "completion_percent": completion_percent,
            "is_completed": is_completed,
            "updated_at": utc_now().isoformat(),
        }
        if is_completed and not was_completed:
            updated["completed_at"] = utc_now().isoformat()
            logger.info(f"🎉 [Curriculum] Topic {topic_id[:8]} completed by {learner_id[:8]} ({completion_percent}%)")

        return self._save_progress(learner_id, topic_id, updated)

    async def add_time_spent(self, learner_id: str, topic_id: str, seconds: int) -> Dict[str, Any]:
        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        current = await self.get_topic_progress(learner_id, topic_id)
        updated = {
            **current,
            "time_spent_seconds": (current.get("time_spent_seconds") or 0) + seconds,
            "last_accessed_at": utc_now().isoformat(),
        }
        return self._save_progress(learner_id, topic_id, updated)

    def _save_progress(self, learner_id: str, topic_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        if not self.use_supabase:
            self._in_memory_topic_progress[(learner_id, topic_id)] = row
            return dict(row)

        result = self.supabase.table('topic_progress') \
            .upsert(row, on_conflict='user_id,topic_id') \
            .execute()
        return result.data[0] if result.data else row

    @staticmethod
    def _empty_progress(learner_id: str, topic_id: str) -> Dict[str, Any]:
        return {
            "user_id": learner_id,
            "topic_id": topic_id,
            "completion_percent": 0,
            "is_completed": False,
            "time_spent_seconds": 0,
        }
