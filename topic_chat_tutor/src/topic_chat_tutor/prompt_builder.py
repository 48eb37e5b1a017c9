"""
Prompt Builder

Builds the oracle prompts for the three things the session engine asks
for: a new question, a grading of the learner's answer, and a short
explanation. Every prompt carries the topic, the goal list with status,
the questions already asked and an explicit JSON schema. The strict
variants ask only for the minimal object and are used for the retry.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from topic_chat_tutor.completion_oracle import OracleRequest
from topic_chat_tutor.models import Goal, Topic

SYSTEM_PROMPT = (
    "You are a friendly micro-assessment tutor. You ask one short question at a time, "
    "grade free-text answers fairly and explain mistakes simply. "
    "Always reply with a single valid JSON object and nothing else."
)

STRICT_SYSTEM_PROMPT = "Return only one valid JSON object matching the requested schema. No prose."

# Topic content is trimmed so prompts stay within a predictable size
MAX_CONTENT_CHARS = 4000

QUESTION_SCHEMA = """{
  "messages": [
    {"message": "optional short lead-in", "message_type": "text"},
    {"message": "the question, ending with a question mark?", "message_type": "text"}
  ]
}"""

GRADING_SCHEMA = """{
  "user_correction": {
    "is_correct": true or false,
    "score_percent": integer 0-100,
    "error_type": one of [Conceptual, Application, Logical Reasoning, Calculation, Spelling, Grammar, Vocabulary Misuse, Incomplete Answer, Misinterpreted Question, Partially Correct, Confused Response] or null when correct,
    "error_subtype": "short free-text refinement or null",
    "corrected_answer": "the learner's answer rewritten correctly",
    "diff_markup": "answer with <del>removed</del> and <ins>added</ins> spans, or null",
    "correction_text": "praise when correct, otherwise the correct answer explained in one or two sentences",
    "options": ["Got it", "Explain"]
  }
}"""

KNOWLEDGE_GAP_SCHEMA = """{
  "user_correction": {
    "is_correct": false,
    "corrected_answer": "the full correct answer to the question",
    "correction_text": "a short, encouraging explanation that answers the exact question"
  }
}"""

EXPLANATION_SCHEMA = """{
  "messages": [
    {"message": "short explanation part 1", "message_type": "text"},
    {"message": "short explanation part 2 with an example", "message_type": "text"}
  ]
}"""


@dataclass
class PromptContext:
    """Everything about the topic and learner progress a prompt needs."""
    topic: Topic
    goals: List[Goal]
    goal_status: Dict[str, str] = field(default_factory=dict)
    current_goal: Optional[Goal] = None
    asked_questions: List[str] = field(default_factory=list)


def _topic_block(context: PromptContext) -> str:
    content = (context.topic.content or "").strip()
    if len(content) > MAX_CONTENT_CHARS:
        content = content[:MAX_CONTENT_CHARS] + "..."
    return f"TOPIC: {context.topic.title}\nTOPIC CONTENT:\n{content or '(no additional content)'}"


def _goals_block(context: PromptContext) -> str:
    lines = []
    for index, goal in enumerate(sorted(context.goals, key=lambda g: g.order), start=1):
        status = context.goal_status.get(goal.id, "not started")
        marker = "  <- CURRENT GOAL" if context.current_goal and goal.id == context.current_goal.id else ""
        description = f": {goal.description}" if goal.description else ""
        lines.append(f"{index}. {goal.title}{description} [{status}]{marker}")
    return "LEARNING GOALS:\n" + ("\n".join(lines) if lines else "(none)")


def _asked_block(context: PromptContext) -> str:
    if not context.asked_questions:
        return "QUESTIONS ALREADY ASKED: none yet"
    listed = "\n".join(f"- {question}" for question in context.asked_questions)
    return f"QUESTIONS ALREADY ASKED (never repeat or rephrase these):\n{listed}"


def build_question_prompt(context: PromptContext, avoid_repetition: bool = False,
                          rejected_question: Optional[str] = None) -> OracleRequest:
    """Ask for one new, previously unasked question for the current goal."""
    goal = context.current_goal
    goal_line = f"Ask about the CURRENT GOAL: {goal.title}" if goal else "Ask about the topic"
    parts = [
        _topic_block(context),
        _goals_block(context),
        _asked_block(context),
        "TASK:",
        f"- {goal_line}.",
        "- Ask exactly ONE short question the learner can answer in a sentence.",
        "- The question must end with a question mark.",
    ]
    if avoid_repetition:
        repeated = f' Your previous suggestion "{rejected_question}" was already asked.' if rejected_question else ""
        parts.append(
            "- IMPORTANT: the question must be different from every question already asked." + repeated
            + " Pick another concept or angle from the goal."
        )
    parts.append(f"Respond with JSON in this format:\n{QUESTION_SCHEMA}")
    return OracleRequest(
        system_prompt=SYSTEM_PROMPT,
        user_prompt="\n\n".join(parts),
        temperature=0.8 if avoid_repetition else 0.7,
        label="question-dedup" if avoid_repetition else "question",
    )


def build_strict_question_prompt(context: PromptContext) -> OracleRequest:
    goal = context.current_goal.title if context.current_goal else context.topic.title
    asked = "; ".join(context.asked_questions) or "none"
    return OracleRequest(
        system_prompt=STRICT_SYSTEM_PROMPT,
        user_prompt=(
            f"Write one short quiz question about \"{goal}\" (topic: {context.topic.title}). "
            f"Do not repeat: {asked}. "
            'Return exactly: {"messages": [{"message": "<question>?", "message_type": "text"}]}'
        ),
        temperature=0.0,
        max_tokens=200,
        label="question-strict",
    )


def build_grading_prompt(context: PromptContext, question: str, answer: str,
                         knowledge_gap: bool = False) -> OracleRequest:
    """
    Ask the oracle to grade ``answer`` against ``question``.

    With ``knowledge_gap`` the learner said they don't know; the oracle only
    supplies the correct answer, the score is fixed by the engine.
    """
    parts = [
        _topic_block(context),
        _goals_block(context),
        _asked_block(context),
        f"QUESTION ASKED: {question}",
        f"LEARNER ANSWER: {answer}",
    ]
    if knowledge_gap:
        parts += [
            "TASK: The learner does not know the answer. Give the full correct answer to the exact "
            "question above, kindly, in one or two sentences. Do not restate the question generically.",
            f"Respond with JSON in this format:\n{KNOWLEDGE_GAP_SCHEMA}",
        ]
    else:
        parts += [
            "TASK: Grade the learner's answer to the exact question above.",
            "- Give partial credit in score_percent; minor spelling or grammar slips can still score high.",
            "- When correct, correction_text is short praise. When incorrect, state the correct answer.",
            f"Respond with JSON in this format:\n{GRADING_SCHEMA}",
        ]
    return OracleRequest(
        system_prompt=SYSTEM_PROMPT,
        user_prompt="\n\n".join(parts),
        temperature=0.3,
        label="knowledge-gap" if knowledge_gap else "grading",
    )


def build_strict_grading_prompt(question: str, answer: str, knowledge_gap: bool = False) -> OracleRequest:
    """Minimal judgment request used after a malformed grading reply."""
    if knowledge_gap:
        shape = '{"is_correct": false, "corrected_answer": "<answer>", "correction_text": "<one sentence>"}'
    else:
        shape = ('{"is_correct": <true|false>, "score_percent": <0-100>, "error_type": "<type or null>", '
                 '"correction_text": "<one sentence>"}')
    return OracleRequest(
        system_prompt=STRICT_SYSTEM_PROMPT,
        user_prompt=f"Question: {question}\nAnswer: {answer}\nReturn exactly this JSON object: {shape}",
        temperature=0.0,
        max_tokens=300,
        label="grading-strict",
    )


def build_explanation_prompt(context: PromptContext, question: str,
                             answer: Optional[str] = None,
                             correction: Optional[str] = None) -> OracleRequest:
    """Ask for 1-3 short elaboration messages about the last question."""
    parts = [
        _topic_block(context),
        _goals_block(context),
        f"QUESTION BEING DISCUSSED: {question}",
    ]
    if answer:
        parts.append(f"LEARNER ANSWER: {answer}")
    if correction:
        parts.append(f"CORRECTION ALREADY GIVEN: {correction}")
    parts += [
        "TASK: The learner asked for an explanation. Explain the concept behind the question in simple "
        "terms with an example. Split it into 1 to 3 SHORT messages. Do not ask a new question.",
        f"Respond with JSON in this format:\n{EXPLANATION_SCHEMA}",
    ]
    return OracleRequest(
        system_prompt=SYSTEM_PROMPT,
        user_prompt="\n\n".join(parts),
        temperature=0.5,
        label="explanation",
    )


def build_strict_explanation_prompt(question: str) -> OracleRequest:
    return OracleRequest(
        system_prompt=STRICT_SYSTEM_PROMPT,
        user_prompt=(
            f"Explain simply the idea behind this question: {question}\n"
            'Return exactly: {"messages": [{"message": "<explanation>", "message_type": "text"}]}'
        ),
        temperature=0.0,
        max_tokens=300,
        label="explanation-strict",
    )
