"""
Unit Tests for Tutor Settings

Tests environment parsing and defaults.
"""

import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "topic_chat_tutor", "src"))

from topic_chat_tutor.config import TutorSettings


class TestTutorSettings:
    """Test suite for TutorSettings.from_env."""

    ENV_KEYS = [
        "REQUIRED_QUESTIONS_PER_GOAL", "STAR_BANDS", "COMPLETION_SWEEP_ENABLED",
        "ORACLE_TIMEOUT_SECONDS", "CORS_ORIGINS", "WEAK_GOAL_THRESHOLD",
    ]

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in self.ENV_KEYS:
            monkeypatch.delenv(key, raising=False)

    def test_defaults(self):
        settings = TutorSettings.from_env()

        assert settings.required_questions_per_goal == 2
        assert settings.idk_score_percent == 10
        assert settings.weak_goal_threshold == 70
        assert settings.star_bands == (90, 75, 60, 40)
        assert settings.completion_sweep_enabled is True
        assert "http://localhost:3000" in settings.cors_origins

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("REQUIRED_QUESTIONS_PER_GOAL", "3")
        monkeypatch.setenv("STAR_BANDS", "40, 95, 80, 60")
        monkeypatch.setenv("COMPLETION_SWEEP_ENABLED", "false")
        monkeypatch.setenv("ORACLE_TIMEOUT_SECONDS", "7.5")
        monkeypatch.setenv("CORS_ORIGINS", "https://tutor.example.com, ")

        settings = TutorSettings.from_env()

        assert settings.required_questions_per_goal == 3
        assert settings.star_bands == (95, 80, 60, 40)
        assert settings.completion_sweep_enabled is False
        assert settings.oracle_timeout_seconds == 7.5
        assert settings.cors_origins == ["https://tutor.example.com"]

    def test_bad_star_bands(self, monkeypatch):
        monkeypatch.setenv("STAR_BANDS", "90,75")
        with pytest.raises(ValueError):
            TutorSettings.from_env()
