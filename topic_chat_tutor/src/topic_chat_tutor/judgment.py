"""
Judgment Normalization

Coerces whatever the completion oracle returned for a graded answer into
the canonical ``Judgment`` shape with documented defaults:

- missing or zero score: 100 when correct, otherwise the honesty floor (10)
- missing error type on an incorrect answer: "Conceptual"
- options: always "Got it" plus "Explain" (or "Explain more")
"""

import re
from typing import Any, Dict, List, Optional

from topic_chat_tutor.models import Judgment

KNOWLEDGE_GAP = "Knowledge Gap"
DEFAULT_ERROR_TYPE = "Conceptual"
DEFAULT_INCORRECT_SCORE = 10

ERROR_TYPES = (
    "No Answer Provided",
    "Knowledge Gap",
    "Confused Response",
    "Conceptual",
    "Application",
    "Logical Reasoning",
    "Calculation",
    "Spelling",
    "Grammar",
    "Vocabulary Misuse",
    "Incomplete Answer",
    "Misinterpreted Question",
    "Partially Correct",
)

_TRUE_STRINGS = {"true", "yes", "correct", "1"}

CORRECTION_TEXT_KEYS = (
    "correction_text", "correctionText", "feedback", "message", "explanation", "complete_answer", "completeAnswer",
)
CORRECTED_ANSWER_KEYS = (
    "corrected_answer", "correctedAnswer", "correct_answer", "correctAnswer", "complete_answer", "completeAnswer",
)


class JudgmentError(ValueError):
    """Raised when oracle output has no usable grading information."""


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _first_text(raw: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _unwrap(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten ``{user_correction: {..., feedback: {is_correct, ...}}}`` into one mapping."""
    nested = _first(raw, "user_correction", "correction", "judgment")
    data = nested if isinstance(nested, dict) else raw
    feedback = data.get("feedback")
    if isinstance(feedback, dict):
        data = {**data, **feedback}
    return data


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return None


def _coerce_score(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    # A decimal point marks the 0-1 scale: 1.0 is full marks, 1 is one percent
    fractional = isinstance(value, float)
    if isinstance(value, str):
        match = re.search(r"-?\d+(\.\d+)?(%?)", value)
        if not match:
            return None
        fractional = match.group(1) is not None and not match.group(2)
        value = match.group(0).rstrip("%")
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if fractional and 0 < score <= 1:
        score *= 100
    return max(0, min(100, int(round(score))))


def _canonical_error_type(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    for known in ERROR_TYPES:
        if known.lower() == text.lower():
            return known
    return text


def normalize_options(options: Any) -> List[str]:
    """Map free-form option labels onto "Got it" plus "Explain" or "Explain more"."""
    labels = options if isinstance(options, list) else []
    has_explain_more = any(isinstance(opt, str) and re.search(r"explain more", opt, re.I) for opt in labels)
    return ["Got it", "Explain more" if has_explain_more else "Explain"]


def normalize_judgment(raw: Any, idk_score: int = DEFAULT_INCORRECT_SCORE) -> Judgment:
    """
    Build a Judgment from a loosely shaped oracle object.

    Accepts both snake_case and camelCase keys, a nested
    ``user_correction`` / ``correction`` object, and a verdict nested one
    level further under ``feedback``.

    Raises:
        JudgmentError: If correctness cannot be determined or no corrective
            text is present.
    """
    if not isinstance(raw, dict):
        raise JudgmentError(f"expected an object, got {type(raw).__name__}")

    data = _unwrap(raw)

    is_correct = _coerce_bool(_first(data, "is_correct", "isCorrect", "correct"))
    if is_correct is None:
        raise JudgmentError("missing is_correct")

    correction_text = _first_text(data, *CORRECTION_TEXT_KEYS)
    if correction_text is None:
        raise JudgmentError("missing correction text")

    score = _coerce_score(_first(data, "score_percent", "scorePercent", "score"))
    if not score:
        score = 100 if is_correct else idk_score

    error_type = _canonical_error_type(_first(data, "error_type", "errorType"))
    if is_correct:
        error_type = None
    elif error_type is None:
        error_type = DEFAULT_ERROR_TYPE

    diff_markup = _first(data, "diff_markup", "diffMarkup", "diff_html", "diffHtml", "diff")
    corrected = _first_text(data, *CORRECTED_ANSWER_KEYS)
    subtype = _first(data, "error_subtype", "errorSubtype")

    return Judgment(
        is_correct=is_correct,
        score_percent=score,
        error_type=error_type,
        correction_text=correction_text,
        diff_markup=diff_markup if isinstance(diff_markup, str) and diff_markup else None,
        corrected_answer=corrected,
        error_subtype=subtype if isinstance(subtype, str) and subtype and not is_correct else None,
        options=normalize_options(data.get("options")),
    )


def knowledge_gap_judgment(correction_text: str,
                           corrected_answer: Optional[str] = None,
                           score_percent: int = DEFAULT_INCORRECT_SCORE) -> Judgment:
    """Judgment for an "I don't know" answer; the correction must answer the asked question."""
    return Judgment(
        is_correct=False,
        score_percent=score_percent,
        error_type=KNOWLEDGE_GAP,
        correction_text=correction_text.strip(),
        diff_markup=None,
        corrected_answer=corrected_answer,
        error_subtype=None,
        options=["Got it", "Explain"],
    )


def choose_emoji(judgment: Judgment) -> str:
    if judgment.is_correct:
        return "😊"
    if judgment.score_percent == 0:
        return "😓"
    if judgment.score_percent < 50:
        return "😢"
    if judgment.error_type in ("Spelling", "Grammar"):
        return "😅"
    return "😔"


def parse_knowledge_gap_payload(raw: Any, score_percent: int = DEFAULT_INCORRECT_SCORE) -> Judgment:
    """
    Read the correct answer out of a knowledge-gap reply.

    Correctness and score are fixed here regardless of what the oracle says.

    Raises:
        JudgmentError: If the reply has neither corrective text nor an answer
    """
    if not isinstance(raw, dict):
        raise JudgmentError(f"expected an object, got {type(raw).__name__}")
    data = _unwrap(raw)

    corrected = _first_text(data, *CORRECTED_ANSWER_KEYS)
    text = _first_text(data, *CORRECTION_TEXT_KEYS)

    if text is None and corrected is None:
        raise JudgmentError("knowledge-gap reply has no answer")
    if text is None:
        text = f"No problem! The answer is: {corrected}"
    return knowledge_gap_judgment(text, corrected, score_percent)
