"""
Learner Message Patterns

Fast, LLM-free classification of learner messages:
- "I don't know" style answers
- affirmative replies to a movement prompt ("yes", "ok", "got it")
- explicit explanation requests ("explain", "why?", "what does that mean")

Also holds the question text normalization used for duplicate detection.
"""

import re

IDK_PHRASES = (
    "i don't know",
    "i dont know",
    "i do not know",
    "don't know",
    "dont know",
    "dunno",
    "idk",
    "no idea",
    "i have no idea",
    "not sure",
    "i'm not sure",
    "im not sure",
    "i am not sure",
    "skip",
    "pass",
    "skip this",
    "i pass",
)

# Unambiguous inside a short message; "skip", "pass" and "not sure" only count alone
IDK_MARKERS = (
    "don't know",
    "dont know",
    "do not know",
    "no idea",
)

IDK_MAX_WORDS = 6

AFFIRMATIVE_PHRASES = (
    "yes",
    "yeah",
    "yep",
    "yup",
    "sure",
    "ok",
    "okay",
    "k",
    "got it",
    "gotit",
    "next",
    "go on",
    "go ahead",
    "move on",
    "let's go",
    "lets go",
    "continue",
    "ready",
    "sounds good",
    "alright",
    "all right",
    "confirm",
)

_EXPLAIN_PATTERNS = [
    re.compile(r"^(please\s+)?explain(\s+(more|again|that|this|it|please))*$"),
    re.compile(r"^(can|could|would)\s+you\s+(please\s+)?(explain|elaborate|clarify)\b.*$"),
    re.compile(r"^(please\s+)?(elaborate|clarify)(\s+(more|that|this|it|please))*$"),
    re.compile(r"^why(\s+(is|was|does|did|not)\s+(that|this|it)\b.*)?$"),
    re.compile(r"^what\s+does\s+(that|this|it)\s+mean\b.*$"),
    re.compile(r"^i\s+(don'?t|do\s+not)\s+understand\b.*$"),
    re.compile(r"^tell\s+me\s+more\b.*$"),
]

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[\s!.?,;:]+$")
_LEADING_PUNCTUATION = re.compile(r"^[\s!.?,;:]+")


def _clean(text: str) -> str:
    """Lowercase, collapse whitespace and strip surrounding punctuation."""
    cleaned = _WHITESPACE.sub(" ", (text or "").strip().lower())
    cleaned = cleaned.replace("’", "'")
    cleaned = _TRAILING_PUNCTUATION.sub("", cleaned)
    return _LEADING_PUNCTUATION.sub("", cleaned)


def normalize_question(text: str) -> str:
    """Canonical form used to compare questions: collapsed whitespace, stripped, lowercased."""
    return _WHITESPACE.sub(" ", (text or "").strip()).lower()


def is_question(text: str) -> bool:
    return "?" in (text or "")


def is_idk(text: str) -> bool:
    """True when the learner admits not knowing instead of answering."""
    cleaned = _clean(text)
    if not cleaned:
        return False
    if cleaned in IDK_PHRASES:
        return True
    if len(cleaned.split()) > IDK_MAX_WORDS:
        return False
    return any(re.search(rf"(?<![\w-]){re.escape(marker)}(?![\w-])", cleaned) for marker in IDK_MARKERS)


def is_affirmative(text: str) -> bool:
    """True for short confirmations such as "yes", "OK!" or "Got it."."""
    cleaned = _clean(text)
    if not cleaned:
        return False
    if cleaned in AFFIRMATIVE_PHRASES:
        return True
    # "yes please", "ok, next", "sure let's go"
    words = cleaned.replace(",", " ").split()
    return len(words) <= 4 and words[0] in AFFIRMATIVE_PHRASES and not is_explain_request(text)


def is_explain_request(text: str) -> bool:
    """
    True when the whole message asks for elaboration.

    Matching is anchored on the full message so an answer that happens to
    contain "why" or "explain" is still graded as an answer.
    """
    cleaned = _clean(text)
    if not cleaned:
        return False
    return any(pattern.match(cleaned) for pattern in _EXPLAIN_PATTERNS)
