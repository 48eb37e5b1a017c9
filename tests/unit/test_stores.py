"""
Unit Tests for the Transcript and Curriculum Stores

Tests in-memory transcript ordering, question extraction and topic
progress bookkeeping.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "topic_chat_tutor", "src"))

from topic_chat_tutor.curriculum_store import CurriculumStore, TopicNotFoundError
from topic_chat_tutor.models import ChatMessage, Goal, MessageType, Sender, Topic
from topic_chat_tutor.transcript_store import TranscriptStore


def message(sender, text, message_type=MessageType.TEXT, **payload):
    return ChatMessage(learner_id="u1", topic_id="t1", sender=sender, text=text,
                       message_type=message_type, payload=payload)


class TestTranscriptStore:
    """Test suite for TranscriptStore."""

    @pytest.fixture
    def store(self):
        return TranscriptStore()

    @pytest.mark.asyncio
    async def test_append_and_tail(self, store):
        for index in range(5):
            await store.append_message(message(Sender.LEARNER, f"message {index}"))

        tail = await store.tail("t1", "u1", 3)

        assert [m.text for m in tail] == ["message 2", "message 3", "message 4"]
        assert all(m.id and m.created_at for m in tail)
        assert await store.tail("t1", "u1", 0) == []

    @pytest.mark.asyncio
    async def test_chats_are_isolated(self, store):
        await store.append_message(message(Sender.LEARNER, "hello"))

        assert await store.list_messages("t2", "u1") == []
        assert await store.list_messages("t1", "u2") == []

    @pytest.mark.asyncio
    async def test_asked_questions(self, store):
        await store.append_message(message(Sender.TUTOR, "Welcome! Ready?"))
        await store.append_message(message(Sender.TUTOR, "What is a token?", goal_id="g1"))
        await store.append_message(message(Sender.LEARNER, "Is it a word?"))
        await store.append_message(message(Sender.TUTOR, "Ready for the next question?", MessageType.MOVEMENT_PROMPT))
        await store.append_message(message(Sender.TUTOR, "Try again?", degraded=True, goal_id="g1"))
        await store.append_message(message(Sender.TUTOR, "What is a subword?", goal_id="g2"))

        assert await store.asked_questions("t1", "u1") == ["What is a token?", "What is a subword?"]


class TestCurriculumStore:
    """Test suite for CurriculumStore."""

    @pytest.fixture
    def store(self):
        store = CurriculumStore(complete_threshold=50)
        store.add_topic(Topic(id="t1", title="Tokenization", content="Splitting text."), [
            Goal(id="g2", topic_id="t1", title="Subwords", order=2),
            Goal(id="g1", topic_id="t1", title="Tokens", order=1),
        ])
        return store

    @pytest.mark.asyncio
    async def test_topic_and_goals(self, store):
        topic = await store.get_topic("t1")
        goals = await store.list_goals("t1")

        assert topic.title == "Tokenization"
        assert [goal.id for goal in goals] == ["g1", "g2"]
        assert await store.find_goal_topics(["g2", "unknown"]) == {"g2": "t1"}

    @pytest.mark.asyncio
    async def test_missing_topic(self, store):
        with pytest.raises(TopicNotFoundError):
            await store.get_topic("nope")

    @pytest.mark.asyncio
    async def test_completion_never_flips_back(self, store):
        progress = await store.mark_topic_completed("u1", "t1", 50)
        assert progress["is_completed"] is True
        assert "completed_at" in progress

        progress = await store.mark_topic_completed("u1", "t1", 0)
        assert progress["completion_percent"] == 0
        assert progress["is_completed"] is True

    @pytest.mark.asyncio
    async def test_below_threshold(self, store):
        progress = await store.mark_topic_completed("u1", "t1", 49)
        assert progress["is_completed"] is False

    @pytest.mark.asyncio
    async def test_time_spent_accumulates(self, store):
        await store.add_time_spent("u1", "t1", 30)
        progress = await store.add_time_spent("u1", "t1", 45)

        assert progress["time_spent_seconds"] == 75
        with pytest.raises(ValueError):
            await store.add_time_spent("u1", "t1", -1)
