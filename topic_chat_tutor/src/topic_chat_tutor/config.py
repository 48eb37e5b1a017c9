"""
Tutor Settings

Environment-driven configuration for the topic chat tutor.

Thresholds such as the weak-goal cutoff and the star-rating bands are
empirical values, so they live here instead of inside the aggregator.
"""

import os
from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() == "true"


def _parse_star_bands(raw: str) -> Tuple[int, ...]:
    """Parse "90,75,60,40" into descending thresholds for 5..2 stars."""
    bands = tuple(sorted((int(part) for part in raw.split(",") if part.strip()), reverse=True))
    if len(bands) != 4:
        raise ValueError(f"STAR_BANDS needs exactly 4 thresholds, got {raw!r}")
    return bands


@dataclass
class TutorSettings:
    """
    Runtime settings for the session engine, oracle and aggregator.

    Use ``TutorSettings.from_env()`` in the service; tests build the
    dataclass directly.
    """
    openai_model: str = "gpt-4o-mini"
    oracle_timeout_seconds: float = 20.0
    oracle_max_attempts: int = 2
    question_dedup_retries: int = 1
    transcript_tail_size: int = 10

    required_questions_per_goal: int = 2
    idk_score_percent: int = 10
    weak_goal_threshold: int = 70
    topic_complete_threshold: int = 50
    star_bands: Tuple[int, ...] = (90, 75, 60, 40)

    progress_write_retries: int = 3

    completion_sweep_enabled: bool = True
    completion_sweep_interval_seconds: float = 30.0

    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> "TutorSettings":
        cors = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
        return cls(
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            oracle_timeout_seconds=_env_float("ORACLE_TIMEOUT_SECONDS", 20.0),
            oracle_max_attempts=_env_int("ORACLE_MAX_ATTEMPTS", 2),
            question_dedup_retries=_env_int("QUESTION_DEDUP_RETRIES", 1),
            transcript_tail_size=_env_int("TRANSCRIPT_TAIL_SIZE", 10),
            required_questions_per_goal=_env_int("REQUIRED_QUESTIONS_PER_GOAL", 2),
            idk_score_percent=_env_int("IDK_SCORE_PERCENT", 10),
            weak_goal_threshold=_env_int("WEAK_GOAL_THRESHOLD", 70),
            topic_complete_threshold=_env_int("TOPIC_COMPLETE_THRESHOLD", 50),
            star_bands=_parse_star_bands(os.getenv("STAR_BANDS", "90,75,60,40")),
            progress_write_retries=_env_int("PROGRESS_WRITE_RETRIES", 3),
            completion_sweep_enabled=_env_bool("COMPLETION_SWEEP_ENABLED", True),
            completion_sweep_interval_seconds=_env_float("COMPLETION_SWEEP_INTERVAL_SECONDS", 30.0),
            cors_origins=[origin.strip() for origin in cors.split(",") if origin.strip()],
        )
