"""
Transcript Store

Ordered chat history per (learner, topic) in the ``topic_chat_messages``
table, or in memory when no Supabase client is configured.
"""

import logging
import uuid
from dataclasses import replace
from typing import List, Dict, Tuple

from topic_chat_tutor.message_patterns import is_question
from topic_chat_tutor.models import ChatMessage, MessageType, Sender, utc_now

logger = logging.getLogger(__name__)


class TranscriptStore:
    """
    Append-only transcript access.

    Args:
        supabase_client: Supabase client instance (optional)
    """

    TABLE = "topic_chat_messages"

    def __init__(self, supabase_client=None):
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None
        self._in_memory_messages: Dict[Tuple[str, str], List[ChatMessage]] = {}

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        stored = replace(
            message,
            id=message.id or str(uuid.uuid4()),
            created_at=message.created_at or utc_now(),
        )
        if not self.use_supabase:
            key = (stored.learner_id, stored.topic_id)
            self._in_memory_messages.setdefault(key, []).append(stored)
            return stored

        result = self.supabase.table(self.TABLE).insert(stored.to_row()).execute()
        return ChatMessage.from_row(result.data[0]) if result.data else stored

    async def list_messages(self, topic_id: str, learner_id: str) -> List[ChatMessage]:
        """Full transcript, oldest first."""
        if not self.use_supabase:
            return list(self._in_memory_messages.get((learner_id, topic_id), []))

        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .eq('topic_id', topic_id) \
            .order('created_at', desc=False) \
            .execute()
        return [ChatMessage.from_row(row) for row in (result.data or [])]

    async def tail(self, topic_id: str, learner_id: str, n: int) -> List[ChatMessage]:
        """Last ``n`` messages, oldest first."""
        if n <= 0:
            return []
        if not self.use_supabase:
            return list(self._in_memory_messages.get((learner_id, topic_id), [])[-n:])

        result = self.supabase.table(self.TABLE) \
            .select('*') \
            .eq('user_id', learner_id) \
            .eq('topic_id', topic_id) \
            .order('created_at', desc=True) \
            .limit(n) \
            .execute()
        return [ChatMessage.from_row(row) for row in reversed(result.data or [])]

    async def asked_questions(self, topic_id: str, learner_id: str) -> List[str]:
        """Every question the tutor has asked in this chat, in order."""
        if self.use_supabase:
            result = self.supabase.table(self.TABLE) \
                .select('*') \
                .eq('user_id', learner_id) \
                .eq('topic_id', topic_id) \
                .eq('sender', Sender.TUTOR.value) \
                .eq('message_type', MessageType.TEXT.value) \
                .order('created_at', desc=False) \
                .execute()
            messages = [ChatMessage.from_row(row) for row in (result.data or [])]
        else:
            messages = await self.list_messages(topic_id, learner_id)

        return [
            message.text
            for message in messages
            if message.sender == Sender.TUTOR
            and message.message_type == MessageType.TEXT
            and not message.is_degraded
            and message.payload.get("goal_id") is not None
            and is_question(message.text)
        ]
