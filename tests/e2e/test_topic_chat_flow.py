"""
End-to-End Tests for the Topic Chat Flow

Drives the session engine through whole conversations with in-memory
stores and a scripted oracle:
- question → answer → correction → movement prompt loop
- "I don't know" answers and explanation requests
- degraded replies when the oracle fails
- goal completion, the final summary and its absorbing state
"""

import asyncio
import pytest
import sys
import os
from types import SimpleNamespace
from typing import Dict, List

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "topic_chat_tutor", "src"))

from topic_chat_tutor.completion_oracle import CompletionOracle, OracleError
from topic_chat_tutor.config import TutorSettings
from topic_chat_tutor.curriculum_store import CurriculumStore, TopicNotFoundError
from topic_chat_tutor.goal_progress import GoalProgressTracker
from topic_chat_tutor.models import Goal, MessageType, Sender, Topic, TutorAction
from topic_chat_tutor.session_engine import (
    EXPLANATION_MOVEMENT_PROMPT,
    FINAL_MOVEMENT_PROMPT,
    GRADING_APOLOGY,
    MOVEMENT_PROMPTS,
    NO_GOALS_MESSAGE,
    SUMMARY_OPTIONS,
    SessionEngine,
)
from topic_chat_tutor.transcript_store import TranscriptStore
from topic_chat_tutor.turn_log import TurnLog

LEARNER = "learner-0001"
TOPIC = Topic(id="topic-tokenization", title="Tokenization", content="Tokenization splits text into tokens.")
GOALS = [
    Goal(id="goal-tokens", topic_id=TOPIC.id, title="Explain what a token is", order=1),
    Goal(id="goal-subwords", topic_id=TOPIC.id, title="Describe subword tokenization", order=2),
]


class ScriptedOracle(CompletionOracle):
    """Oracle whose replies are queued per kind of request."""

    def __init__(self):
        super().__init__(llm_client=object(), model="scripted")
        self.replies: Dict[str, List] = {"question": [], "grading": [], "explanation": []}
        self.calls: List[str] = []

    def queue(self, kind, *replies):
        self.replies[kind].extend(replies)

    async def complete_json(self, request, timeout_seconds):
        self.calls.append(request.label)
        if request.label.startswith("question"):
            kind = "question"
        elif request.label.startswith("explanation"):
            kind = "explanation"
        else:
            kind = "grading"
        if not self.replies[kind]:
            raise OracleError(f"no scripted {kind} reply")
        reply = self.replies[kind].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def question(text, lead_in=None):
    messages = [{"message": lead_in, "message_type": "text"}] if lead_in else []
    messages.append({"message": text, "message_type": "text"})
    return {"messages": messages}


def correct(text="Exactly right!"):
    return {"user_correction": {"is_correct": True, "score_percent": 100, "correction_text": text,
                                "options": ["Got it", "Explain"]}}


def wrong(score=40, error_type="Conceptual", corrected="A token is a unit of text."):
    return {"user_correction": {
        "is_correct": False,
        "score_percent": score,
        "error_type": error_type,
        "corrected_answer": corrected,
        "diff_markup": f"<ins>{corrected}</ins>",
        "correction_text": f"Not quite. {corrected}",
        "options": ["Got it", "Explain"],
    }}


def knowledge_gap(answer):
    return {"user_correction": {"is_correct": False, "corrected_answer": answer,
                                "correction_text": f"No problem! {answer}"}}


def explanation(*parts):
    return {"messages": [{"message": part, "message_type": "text"} for part in parts]}


class TestTopicChatFlow:
    """Test complete topic chat conversations."""

    @pytest.fixture
    def chat(self):
        settings = TutorSettings(completion_sweep_enabled=False)
        curriculum = CurriculumStore(complete_threshold=settings.topic_complete_threshold)
        curriculum.add_topic(TOPIC, GOALS)
        progress = GoalProgressTracker(required_questions=settings.required_questions_per_goal)
        turn_log = TurnLog()
        transcript = TranscriptStore()
        oracle = ScriptedOracle()
        engine = SessionEngine(oracle, progress, turn_log, transcript, curriculum, settings=settings)

        async def send(text):
            return await engine.handle_learner_message(LEARNER, TOPIC.id, text)

        return SimpleNamespace(
            engine=engine, oracle=oracle, progress=progress, turn_log=turn_log,
            transcript=transcript, curriculum=curriculum, send=send,
        )

    async def turns(self, chat):
        return await chat.turn_log.list_topic_turns(LEARNER, TOPIC.id)

    @pytest.mark.asyncio
    async def test_first_message_asks_about_first_goal(self, chat):
        chat.oracle.queue("question", question("What is a token?", lead_in="Let's start with tokens."))

        result = await chat.send("")

        assert result.action == TutorAction.ASK_QUESTION
        assert [m.text for m in result.messages] == ["Let's start with tokens.", "What is a token?"]
        assert result.messages[-1].payload == {"goal_id": "goal-tokens"}
        stored = await chat.transcript.list_messages(TOPIC.id, LEARNER)
        assert [m.sender for m in stored] == [Sender.TUTOR, Sender.TUTOR]

    @pytest.mark.asyncio
    async def test_correct_first_answer(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        chat.oracle.queue("grading", correct("Great job!"))
        await chat.send("")

        result = await chat.send("A unit of text like a word")

        progress = await chat.progress.get_progress(LEARNER, "goal-tokens")
        assert (progress.questions_asked, progress.correct_count, progress.incorrect_count) == (1, 1, 0)
        assert not progress.is_completed

        turns = await self.turns(chat)
        assert len(turns) == 1
        assert turns[0].is_correct and turns[0].score_percent == 100
        assert turns[0].question == "What is a token?"

        assert result.action == TutorAction.GRADE_ANSWER
        correction, movement = result.messages
        assert correction.message_type == MessageType.GRADED_CORRECTION
        assert correction.text == "Great job!"
        assert correction.emoji == "😊"
        assert correction.payload["turn_id"] == turns[0].id
        assert movement.message_type == MessageType.MOVEMENT_PROMPT
        assert movement.text in MOVEMENT_PROMPTS
        assert movement.options == ["Got it", "Explain"]
        assert result.to_dict()["correction"]["feedback"]["score_percent"] == 100

    @pytest.mark.asyncio
    async def test_feedback_shaped_grading_of_hyphenated_answer(self, chat):
        chat.oracle.queue("question", question("Which word2vec variant predicts surrounding words?"))
        chat.oracle.queue("grading", {"messages": [], "user_correction": {
            "message_type": "user_correction",
            "diff_html": "Skip-gram predicts context words",
            "complete_answer": "Excellent! Skip-gram predicts the context from the centre word.",
            "options": ["Got it", "Explain"],
            "emoji": "😊",
            "feedback": {"is_correct": True, "bubble_color": "green", "score_percent": 100},
        }})
        await chat.send("")

        result = await chat.send("Skip-gram predicts context words")

        assert result.action == TutorAction.GRADE_ANSWER
        assert chat.oracle.calls[-1] == "grading"
        turn = (await self.turns(chat))[0]
        assert turn.is_correct is True
        assert turn.score_percent == 100
        assert turn.error_type is None
        assert result.messages[0].text == "Excellent! Skip-gram predicts the context from the centre word."

    @pytest.mark.asyncio
    async def test_two_wrong_answers_complete_goal(self, chat):
        chat.oracle.queue("question", question("What is a token?"), question("Is punctuation a token?"),
                          question("What is a subword?"))
        chat.oracle.queue("grading", wrong(score=30), wrong(score=20))

        await chat.send("")
        await chat.send("A sentence")
        await chat.send("yes")
        await chat.send("Never")

        progress = await chat.progress.get_progress(LEARNER, "goal-tokens")
        assert (progress.questions_asked, progress.correct_count, progress.incorrect_count) == (2, 0, 2)
        assert progress.is_completed

        result = await chat.send("ok")
        assert result.messages[-1].payload["goal_id"] == "goal-subwords"
        topic_progress = await chat.curriculum.get_topic_progress(LEARNER, TOPIC.id)
        assert topic_progress["completion_percent"] == 50
        assert topic_progress["is_completed"] is True

    @pytest.mark.asyncio
    async def test_idk_answer_gets_floor_score(self, chat):
        chat.oracle.queue("question", question("What does a tokenizer output?"))
        chat.oracle.queue("grading", knowledge_gap("A sequence of tokens."))
        await chat.send("")

        result = await chat.send("I don't know")

        turn = (await self.turns(chat))[0]
        assert turn.is_correct is False
        assert turn.score_percent == 10
        assert turn.error_type == "Knowledge Gap"
        assert turn.corrected_answer == "A sequence of tokens."
        assert "knowledge-gap" in chat.oracle.calls
        assert result.messages[0].text == "No problem! A sequence of tokens."

    @pytest.mark.asyncio
    async def test_answer_mentioning_why_is_graded(self, chat):
        chat.oracle.queue("question", question("Why do we lowercase text?"))
        chat.oracle.queue("grading", correct())
        await chat.send("")

        result = await chat.send("I think the reason why is to merge variants")

        assert result.action == TutorAction.GRADE_ANSWER

    @pytest.mark.asyncio
    async def test_explanation_after_movement_prompt_does_not_consume_slot(self, chat):
        chat.oracle.queue("question", question("What is a token?"), question("Is a comma a token?"))
        chat.oracle.queue("grading", wrong())
        chat.oracle.queue("explanation", explanation("A token is the smallest unit a model reads.",
                                                     "For example, 'cats' and '!' in 'cats!'."))
        await chat.send("")
        await chat.send("A paragraph")
        before = await chat.progress.get_progress(LEARNER, "goal-tokens")

        result = await chat.send("can you explain that?")

        after = await chat.progress.get_progress(LEARNER, "goal-tokens")
        assert result.action == TutorAction.EXPLAIN
        assert after.questions_asked == before.questions_asked == 1
        assert (await chat.turn_log.latest_turn(LEARNER, TOPIC.id)).explain_requests == 1
        assert len(result.messages) == 3
        assert result.messages[-1].text == EXPLANATION_MOVEMENT_PROMPT
        assert result.messages[-1].options == ["Got it", "Explain more"]

        follow_up = await chat.send("Got it")
        assert follow_up.action == TutorAction.ASK_QUESTION
        assert follow_up.messages[-1].text == "Is a comma a token?"

    @pytest.mark.asyncio
    async def test_explanation_while_question_pending(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        chat.oracle.queue("explanation", explanation("Think of how text is split before a model reads it."))
        await chat.send("")

        result = await chat.send("why?")

        assert result.action == TutorAction.EXPLAIN
        assert await self.turns(chat) == []
        assert await chat.progress.get_progress(LEARNER, "goal-tokens") is None

    @pytest.mark.asyncio
    async def test_oracle_failure_keeps_question_pending(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        await chat.send("")

        degraded = await chat.send("A unit of text")

        assert degraded.action == TutorAction.DEGRADED
        assert degraded.messages[0].text == GRADING_APOLOGY
        assert degraded.messages[0].payload["degraded"] is True
        assert await self.turns(chat) == []
        assert await chat.progress.get_progress(LEARNER, "goal-tokens") is None

        chat.oracle.queue("grading", correct())
        result = await chat.send("A unit of text")

        assert result.action == TutorAction.GRADE_ANSWER
        turns = await self.turns(chat)
        assert len(turns) == 1
        assert turns[0].question == "What is a token?"

    @pytest.mark.asyncio
    async def test_malformed_grading_recovers_with_strict_prompt(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        chat.oracle.queue("grading", {"unexpected": "shape"}, correct())
        await chat.send("")

        await chat.send("A unit of text")

        assert chat.oracle.calls[-2:] == ["grading", "grading-strict"]
        assert (await self.turns(chat))[0].retries == 1

    @pytest.mark.asyncio
    async def test_repeated_question_is_retried(self, chat):
        chat.oracle.queue("question", question("What is a token?"), question("what is  a TOKEN?"),
                          question("How many tokens are in 'I am'?"))
        chat.oracle.queue("grading", correct())
        await chat.send("")
        await chat.send("A unit of text")

        result = await chat.send("next")

        assert "question-dedup" in chat.oracle.calls
        assert result.messages[-1].text == "How many tokens are in 'I am'?"

    @pytest.mark.asyncio
    async def test_repeated_question_accepted_after_retry(self, chat):
        chat.oracle.queue("question", question("What is a token?"), question("What is a token?"),
                          question("What is a token?"))
        chat.oracle.queue("grading", correct())
        await chat.send("")
        await chat.send("A unit of text")

        result = await chat.send("next")

        assert result.action == TutorAction.ASK_QUESTION
        assert chat.oracle.calls.count("question-dedup") == 1

    @pytest.mark.asyncio
    async def test_full_session_reaches_absorbing_summary(self, chat):
        chat.oracle.queue("question",
                          question("What is a token?", lead_in="Welcome to Tokenization!"),
                          question("What does a tokenizer output?"),
                          question("What is a subword?"),
                          question("Why split rare words into subwords?"))
        chat.oracle.queue("grading",
                          correct(),
                          knowledge_gap("A sequence of tokens."),
                          wrong(score=40, corrected="A piece of a word."),
                          correct())
        chat.oracle.queue("explanation", explanation("Subwords are frequent word pieces like 'token' + 'ization'."))

        await chat.send("")
        await chat.send("A unit of text")
        await chat.send("yes")
        await chat.send("I don't know")
        await chat.send("ok")
        await chat.send("A whole sentence")
        explained = await chat.send("Explain")
        await chat.send("Got it")
        last_graded = await chat.send("So the vocabulary stays small")

        assert explained.action == TutorAction.EXPLAIN
        assert last_graded.messages[-1].text == FINAL_MOVEMENT_PROMPT
        metrics = last_graded.metrics
        assert metrics is not None
        # (100 + 10 + 40 + 100) / 4 = 62.5
        assert metrics.overall_score_percent == 63
        assert metrics.star_rating == 3
        assert metrics.total_questions == 4
        assert metrics.total_explanations == 1
        assert [goal.goal_id for goal in metrics.weak_goals] == ["goal-tokens", "goal-subwords"]
        assert metrics.projected_score_percent == 100

        summary = await chat.send("Got it")
        assert summary.action == TutorAction.SESSION_SUMMARY
        message = summary.messages[0]
        assert message.message_type == MessageType.SESSION_SUMMARY
        assert message.options == SUMMARY_OPTIONS
        assert message.text.startswith("📊 Session Summary: Tokenization ⭐⭐⭐")
        assert summary.metrics == metrics

        calls_before = len(chat.oracle.calls)
        again = await chat.send("Can I get another question?")
        assert again.action == TutorAction.SESSION_SUMMARY
        assert again.messages[0].text == message.text
        assert len(chat.oracle.calls) == calls_before
        assert len(await self.turns(chat)) == 4

        progress = await chat.progress.get_progress_for_goals(LEARNER, [goal.id for goal in GOALS])
        for goal_progress in progress.values():
            assert goal_progress.questions_asked == goal_progress.correct_count + goal_progress.incorrect_count
            assert goal_progress.is_completed

    @pytest.mark.asyncio
    async def test_messages_of_one_chat_are_serialized(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        chat.oracle.queue("grading", correct())

        first, second = await asyncio.gather(chat.send(""), chat.send("A unit of text"))

        assert first.action == TutorAction.ASK_QUESTION
        assert second.action == TutorAction.GRADE_ANSWER
        stored = await chat.transcript.list_messages(TOPIC.id, LEARNER)
        assert [m.sender for m in stored] == [Sender.TUTOR, Sender.LEARNER, Sender.TUTOR, Sender.TUTOR]

    @pytest.mark.asyncio
    async def test_options(self, chat):
        chat.oracle.queue("question", question("What is a token?"))
        chat.oracle.queue("explanation", explanation("A token is a piece of text."))
        await chat.send("")

        result = await chat.engine.handle_option(LEARNER, TOPIC.id, "explain")

        assert result.action == TutorAction.EXPLAIN
        with pytest.raises(ValueError):
            await chat.engine.handle_option(LEARNER, TOPIC.id, "Skip topic")

    @pytest.mark.asyncio
    async def test_unknown_topic(self, chat):
        with pytest.raises(TopicNotFoundError):
            await chat.engine.handle_learner_message(LEARNER, "missing-topic", "hello")

    @pytest.mark.asyncio
    async def test_topic_without_goals(self, chat):
        chat.curriculum.add_topic(Topic(id="empty", title="Empty"), [])

        result = await chat.engine.handle_learner_message(LEARNER, "empty", "")

        assert result.action == TutorAction.DEGRADED
        assert result.messages[0].text == NO_GOALS_MESSAGE
