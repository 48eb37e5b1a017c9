"""
Session Engine - Micro-Assessment Tutoring State Machine

Decides, for every learner message in a topic chat, which protocol action
to take:

1. All goals complete      -> session summary (absorbing)
2. Movement prompt + "yes" -> ask the next question
3. Explanation request     -> 1-3 short explanation messages + movement prompt
4. Pending question        -> grade the answer, update progress, record the turn
5. Otherwise               -> ask the next question

The engine keeps no session object between calls. State is re-derived from
the transcript tail and the goal progress counters on every message, and
messages of one (learner, topic) chat are serialized with a keyed lock.
"""

import logging
from typing import Optional, List, Dict, Any, Sequence, Tuple

from topic_chat_tutor.completion_oracle import CompletionOracle, RetryPolicy
from topic_chat_tutor.config import TutorSettings
from topic_chat_tutor.goal_progress import ProgressWriteConflict
from topic_chat_tutor.judgment import (
    choose_emoji,
    normalize_judgment,
    parse_knowledge_gap_payload,
)
from topic_chat_tutor.keyed_locks import KeyedLockRegistry
from topic_chat_tutor.message_patterns import (
    is_affirmative,
    is_explain_request,
    is_idk,
    is_question,
    normalize_question,
)
from topic_chat_tutor.metrics_aggregator import MetricsAggregator, format_session_summary
from topic_chat_tutor.models import (
    ChatMessage,
    Goal,
    MessageType,
    OutboundMessage,
    Sender,
    Topic,
    TurnRecord,
    TutorAction,
    TutorTurnResult,
    utc_now,
)
from topic_chat_tutor.prompt_builder import (
    PromptContext,
    build_explanation_prompt,
    build_grading_prompt,
    build_question_prompt,
    build_strict_explanation_prompt,
    build_strict_grading_prompt,
    build_strict_question_prompt,
)
from topic_chat_tutor.session_state import DerivedState, derive_state

logger = logging.getLogger(__name__)

GRADING_APOLOGY = "I'm having trouble checking your answer right now. Please send it again in a moment."
QUESTION_APOLOGY = "I'm having trouble preparing the next question right now. Please try again in a moment."
EXPLANATION_APOLOGY = "I'm having trouble explaining that right now. Please try again in a moment."
NO_GOALS_MESSAGE = "This topic doesn't have any learning goals yet. Please check back soon."

MOVEMENT_PROMPTS = (
    "Should we move on?",
    "Ready for the next question?",
    "Shall we keep going?",
    "Want to try the next one?",
)
FINAL_MOVEMENT_PROMPT = "That was the last question for this topic. Ready to see your results?"
EXPLANATION_MOVEMENT_PROMPT = "Does that make sense now? Should we move on?"

MAX_LEAD_IN_MESSAGES = 2
MAX_EXPLANATION_MESSAGES = 3

CHAT_OPTIONS = {
    "got it": "Got it",
    "explain": "Explain",
    "explain more": "Explain more",
}
SUMMARY_OPTIONS = ["Improve My Score", "Go to Next Topic"]


def _message_texts(payload: Dict[str, Any]) -> List[str]:
    raw = payload.get("messages")
    if raw is None and isinstance(payload.get("message"), str):
        raw = [payload["message"]]
    if not isinstance(raw, list):
        raise ValueError("reply has no messages list")

    texts = []
    for item in raw:
        if isinstance(item, str):
            text = item
        elif isinstance(item, dict):
            text = item.get("message") or item.get("text") or ""
        else:
            continue
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return texts


def parse_question_payload(payload: Dict[str, Any]) -> Tuple[List[str], str]:
    """
    Split a question reply into lead-in messages and the question itself.

    The question is the last message containing a question mark; anything
    after it is dropped so the question is always the last tutor message.

    Raises:
        ValueError: If no message is a question
    """
    if isinstance(payload.get("question"), str) and is_question(payload["question"]):
        return [], payload["question"].strip()

    texts = _message_texts(payload)
    question_indexes = [index for index, text in enumerate(texts) if is_question(text)]
    if not question_indexes:
        raise ValueError("reply contains no question")
    last = question_indexes[-1]
    return texts[:last][-MAX_LEAD_IN_MESSAGES:], texts[last]


def parse_explanation_payload(payload: Dict[str, Any]) -> List[str]:
    texts = _message_texts(payload)
    if not texts:
        raise ValueError("reply contains no explanation")
    return texts[:MAX_EXPLANATION_MESSAGES]


class SessionEngine:
    """
    Turn-by-turn tutor for a topic chat.

    Args:
        oracle: CompletionOracle used to ask, grade and explain
        progress_tracker: GoalProgressTracker
        turn_log: TurnLog
        transcript_store: TranscriptStore
        curriculum_store: CurriculumStore (topics, goals, topic progress)
        metrics_aggregator: MetricsAggregator (built from the stores if None)
        settings: TutorSettings
    """

    def __init__(
        self,
        oracle: CompletionOracle,
        progress_tracker,
        turn_log,
        transcript_store,
        curriculum_store=None,
        metrics_aggregator: Optional[MetricsAggregator] = None,
        settings: Optional[TutorSettings] = None,
    ):
        self.oracle = oracle
        self.progress = progress_tracker
        self.turn_log = turn_log
        self.transcript = transcript_store
        self.curriculum = curriculum_store
        self.settings = settings or TutorSettings()
        self.metrics = metrics_aggregator or MetricsAggregator(turn_log, progress_tracker, self.settings)
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.oracle_max_attempts,
            timeout_seconds=self.settings.oracle_timeout_seconds,
        )
        self._chat_locks = KeyedLockRegistry()

    # ==================== Entry points ====================

    async def handle_learner_message(self, learner_id: str, topic_id: str, text: str) -> TutorTurnResult:
        """
        Process one learner message end to end.

        The learner's message is stored before anything else so it survives
        every failure. Messages of the same (learner, topic) run one at a
        time in arrival order.

        Raises:
            TopicNotFoundError: If the topic does not exist
        """
        if self.curriculum is None:
            raise RuntimeError("handle_learner_message needs a curriculum store")

        async with self._chat_locks.acquire((learner_id, topic_id)):
            topic = await self.curriculum.get_topic(topic_id)
            goals = await self.curriculum.list_goals(topic_id)

            text = (text or "").strip()
            if text:
                await self.transcript.append_message(ChatMessage(
                    learner_id=learner_id,
                    topic_id=topic_id,
                    sender=Sender.LEARNER,
                    text=text,
                ))

            tail = await self.transcript.tail(topic_id, learner_id, self.settings.transcript_tail_size)
            asked = await self.transcript.asked_questions(topic_id, learner_id)

            result = await self.generate_tutor_turn(
                learner_message=text,
                topic_title=topic.title,
                topic_content=topic.content,
                transcript_tail=tail,
                current_goal=None,
                all_goals=goals,
                learner_id=learner_id,
                topic_id=topic_id,
                asked_questions=asked,
            )

            for message in result.messages:
                payload = dict(message.payload)
                if message.options:
                    payload["options"] = list(message.options)
                if message.emoji:
                    payload["emoji"] = message.emoji
                await self.transcript.append_message(ChatMessage(
                    learner_id=learner_id,
                    topic_id=topic_id,
                    sender=Sender.TUTOR,
                    text=message.text,
                    message_type=message.message_type,
                    payload=payload,
                ))

        return result

    async def handle_option(self, learner_id: str, topic_id: str, option: str) -> TutorTurnResult:
        """
        Handle a tapped option button ("Got it", "Explain", "Explain more").

        Raises:
            ValueError: For an unknown option label
        """
        label = CHAT_OPTIONS.get((option or "").strip().lower())
        if label is None:
            raise ValueError(f"Unknown option: {option!r}")
        return await self.handle_learner_message(learner_id, topic_id, label)

    async def generate_tutor_turn(
        self,
        learner_message: str,
        topic_title: str,
        topic_content: str,
        transcript_tail: Sequence[ChatMessage],
        current_goal: Optional[Goal],
        all_goals: Sequence[Goal],
        learner_id: str,
        topic_id: str,
        asked_questions: Optional[Sequence[str]] = None,
    ) -> TutorTurnResult:
        """
        Decide and perform the protocol action for one learner message.

        Args:
            learner_message: Raw learner text (may be empty)
            topic_title: Topic title for prompts and the summary
            topic_content: Topic body for prompts
            transcript_tail: Recent messages, oldest first
            current_goal: Optional hint; ignored when that goal is already complete
            all_goals: Every goal of the topic
            learner_id: Learner identifier
            topic_id: Topic identifier
            asked_questions: Every question asked so far in this chat
                (derived from ``transcript_tail`` when omitted)

        Returns:
            TutorTurnResult with the outbound messages (not yet persisted)
        """
        goals = sorted(all_goals, key=lambda g: g.order)
        if not goals:
            logger.warning(f"⚠️ [SessionEngine] Topic {topic_id} has no goals")
            return self._degraded(NO_GOALS_MESSAGE, "no_goals")

        progress = await self.progress.get_progress_for_goals(learner_id, [goal.id for goal in goals])
        state = derive_state(transcript_tail, goals, progress, self.settings.required_questions_per_goal)
        if current_goal is not None and not state.all_goals_complete:
            hinted = progress.get(current_goal.id)
            if hinted is None or not hinted.is_completed:
                state.current_goal = current_goal

        if asked_questions is None:
            asked_questions = [
                message.text for message in transcript_tail
                if message.sender == Sender.TUTOR and message.payload.get("goal_id") and is_question(message.text)
            ]

        context = PromptContext(
            topic=Topic(id=topic_id, title=topic_title, content=topic_content),
            goals=goals,
            goal_status=state.goal_status,
            current_goal=state.current_goal,
            asked_questions=list(asked_questions),
        )
        message = (learner_message or "").strip()

        logger.info(
            f"🧭 [SessionEngine] {learner_id[:8]}/{topic_id[:8]} phase={state.phase.value} "
            f"goal={state.current_goal.title if state.current_goal else None!r}"
        )

        if state.all_goals_complete:
            return await self._session_summary(learner_id, topic_id, topic_title, goals)

        if state.awaiting_movement_confirmation and is_affirmative(message):
            return await self._ask_question(context, state)

        if message and is_explain_request(message):
            return await self._explain(context, state, learner_id, topic_id)

        if state.awaiting_answer and message:
            return await self._grade_answer(context, state, message, learner_id, topic_id)

        return await self._ask_question(context, state)

    # ==================== Actions ====================

    async def _ask_question(self, context: PromptContext, state: DerivedState) -> TutorTurnResult:
        goal = state.current_goal
        requests = [build_question_prompt(context), build_strict_question_prompt(context)]
        result = await self.oracle.invoke(requests, parse_question_payload, self.retry_policy)
        if result is None:
            return self._degraded(QUESTION_APOLOGY, "question_failed")

        lead_ins, question = result.value
        already_asked = {normalize_question(text) for text in context.asked_questions}

        for retry in range(self.settings.question_dedup_retries):
            if normalize_question(question) not in already_asked:
                break
            logger.warning(f"⚠️ [SessionEngine] Oracle repeated a question, retrying ({retry + 1}): {question!r}")
            retry_requests = [
                build_question_prompt(context, avoid_repetition=True, rejected_question=question),
                build_strict_question_prompt(context),
            ]
            retried = await self.oracle.invoke(retry_requests, parse_question_payload, self.retry_policy)
            if retried is None:
                break
            lead_ins, question = retried.value

        if normalize_question(question) in already_asked:
            logger.warning(f"⚠️ [SessionEngine] Accepting duplicate question after retry: {question!r}")

        messages = [OutboundMessage(text=text) for text in lead_ins]
        messages.append(OutboundMessage(text=question, payload={"goal_id": goal.id}))
        return TutorTurnResult(action=TutorAction.ASK_QUESTION, messages=messages)

    async def _grade_answer(self, context: PromptContext, state: DerivedState, answer: str,
                            learner_id: str, topic_id: str) -> TutorTurnResult:
        question_message = state.last_tutor_message
        question = question_message.text
        goal_id = state.pending_goal_id
        knowledge_gap = is_idk(answer)
        idk_score = self.settings.idk_score_percent

        requests = [
            build_grading_prompt(context, question, answer, knowledge_gap=knowledge_gap),
            build_strict_grading_prompt(question, answer, knowledge_gap=knowledge_gap),
        ]
        if knowledge_gap:
            result = await self.oracle.invoke(
                requests, lambda payload: parse_knowledge_gap_payload(payload, idk_score), self.retry_policy
            )
        else:
            result = await self.oracle.invoke(
                requests, lambda payload: normalize_judgment(payload, idk_score), self.retry_policy
            )
        if result is None:
            return self._degraded(GRADING_APOLOGY, "grading_failed")

        judgment = result.value
        # Counters first: a lost write must leave no turn behind and the question pending
        try:
            progress = await self.progress.record_answer(learner_id, goal_id, judgment.is_correct, question)
        except ProgressWriteConflict as e:
            logger.error(f"❌ [SessionEngine] Progress write failed: {e}")
            return self._degraded(GRADING_APOLOGY, "progress_write_failed")

        turn = await self.turn_log.append_turn(TurnRecord(
            learner_id=learner_id,
            topic_id=topic_id,
            goal_id=goal_id,
            question=question,
            answer=answer,
            is_correct=judgment.is_correct,
            score_percent=judgment.score_percent,
            error_type=judgment.error_type,
            error_subtype=judgment.error_subtype,
            corrected_answer=judgment.corrected_answer,
            correction_text=judgment.correction_text,
            diff_markup=judgment.diff_markup,
            retries=result.attempts - 1,
            question_asked_at=question_message.created_at,
            answered_at=utc_now(),
        ))
        all_complete = await self._update_topic_completion(learner_id, topic_id, context.goals)

        correction = OutboundMessage(
            text=judgment.correction_text,
            message_type=MessageType.GRADED_CORRECTION,
            emoji=choose_emoji(judgment),
            payload={
                "turn_id": turn.id,
                "goal_id": goal_id,
                "learner_answer": answer,
                "corrected_answer": judgment.corrected_answer,
                "diff_markup": judgment.diff_markup,
                "is_correct": judgment.is_correct,
                "score_percent": judgment.score_percent,
                "error_type": judgment.error_type,
            },
        )
        if all_complete:
            prompt_text = FINAL_MOVEMENT_PROMPT
        else:
            prompt_text = MOVEMENT_PROMPTS[len(context.asked_questions) % len(MOVEMENT_PROMPTS)]
        movement = OutboundMessage(
            text=prompt_text,
            message_type=MessageType.MOVEMENT_PROMPT,
            options=list(judgment.options),
        )

        logger.info(
            f"✅ [SessionEngine] Graded answer: correct={judgment.is_correct} "
            f"score={judgment.score_percent}% goal progress={progress.questions_asked}"
        )
        metrics = None
        if all_complete:
            metrics = await self.metrics.compute(learner_id, topic_id, context.goals)
        return TutorTurnResult(
            action=TutorAction.GRADE_ANSWER,
            messages=[correction, movement],
            correction=judgment,
            metrics=metrics,
        )

    async def _explain(self, context: PromptContext, state: DerivedState,
                       learner_id: str, topic_id: str) -> TutorTurnResult:
        target_turn = None
        answer = None
        correction = None
        if state.awaiting_answer:
            question = state.last_tutor_message.text
        else:
            target_turn = await self.turn_log.latest_turn(learner_id, topic_id)
            if target_turn is not None:
                question = target_turn.question
                answer = target_turn.answer
                correction = target_turn.correction_text
            elif state.last_question is not None:
                question = state.last_question.text
            else:
                question = state.current_goal.title if state.current_goal else context.topic.title

        requests = [
            build_explanation_prompt(context, question, answer=answer, correction=correction),
            build_strict_explanation_prompt(question),
        ]
        result = await self.oracle.invoke(requests, parse_explanation_payload, self.retry_policy)
        if result is None:
            return self._degraded(EXPLANATION_APOLOGY, "explanation_failed")

        if target_turn is not None:
            await self.turn_log.increment_explain_count(target_turn.id)

        messages = [OutboundMessage(text=text) for text in result.value]
        messages.append(OutboundMessage(
            text=EXPLANATION_MOVEMENT_PROMPT,
            message_type=MessageType.MOVEMENT_PROMPT,
            options=["Got it", "Explain more"],
        ))
        return TutorTurnResult(action=TutorAction.EXPLAIN, messages=messages)

    async def _session_summary(self, learner_id: str, topic_id: str, topic_title: str,
                               goals: Sequence[Goal]) -> TutorTurnResult:
        metrics = await self.metrics.compute(learner_id, topic_id, goals)
        summary = OutboundMessage(
            text=format_session_summary(topic_title, metrics),
            message_type=MessageType.SESSION_SUMMARY,
            options=list(SUMMARY_OPTIONS),
            payload={"metrics": metrics.to_dict()},
        )
        return TutorTurnResult(action=TutorAction.SESSION_SUMMARY, messages=[summary], metrics=metrics)

    # ==================== Helpers ====================

    async def _update_topic_completion(self, learner_id: str, topic_id: str, goals: Sequence[Goal]) -> bool:
        """Refresh the topic completion percent; True when every goal is done."""
        percent = await self.progress.topic_completion_percent(learner_id, topic_id, goals)
        if self.curriculum is not None:
            await self.curriculum.mark_topic_completed(learner_id, topic_id, percent)
        progress = await self.progress.get_progress_for_goals(learner_id, [goal.id for goal in goals])
        return all(goal.id in progress and progress[goal.id].is_completed for goal in goals)

    @staticmethod
    def _degraded(text: str, reason: str) -> TutorTurnResult:
        logger.warning(f"⚠️ [SessionEngine] Degraded reply: {reason}")
        return TutorTurnResult(
            action=TutorAction.DEGRADED,
            messages=[OutboundMessage(text=text, payload={"degraded": True, "reason": reason})],
        )
