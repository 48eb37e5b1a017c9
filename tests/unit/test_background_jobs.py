"""
Unit Tests for Keyed Locks and Periodic Jobs

Tests per-key serialization, the non-overlapping run guard and the topic
completion sweep.
"""

import asyncio
import pytest
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "topic_chat_tutor", "src"))

from topic_chat_tutor.curriculum_store import CurriculumStore
from topic_chat_tutor.goal_progress import GoalProgressTracker
from topic_chat_tutor.keyed_locks import KeyedLockRegistry
from topic_chat_tutor.models import Goal, Topic
from topic_chat_tutor.periodic_runner import PeriodicJob, RunGuard, TopicCompletionSweep


class TestKeyedLockRegistry:
    """Test suite for KeyedLockRegistry."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        registry = KeyedLockRegistry()
        order = []

        async def worker(name):
            async with registry.acquire(("u1", "t1")):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        registry = KeyedLockRegistry()
        inside = asyncio.Event()

        async def holder():
            async with registry.acquire("k1"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()

        assert registry.is_locked("k1")
        async with registry.acquire("k2"):
            assert registry.is_locked("k1")
            assert registry.is_locked("k2")
        await task
        assert not registry.is_locked("k1")


class TestRunGuard:
    """Test suite for RunGuard."""

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self):
        guard = RunGuard()
        release = asyncio.Event()
        calls = []

        async def slow_job():
            calls.append("run")
            await release.wait()

        first = asyncio.create_task(guard.try_run(slow_job))
        await asyncio.sleep(0)

        assert guard.running
        assert await guard.try_run(slow_job) is False
        assert guard.skipped_runs == 1

        release.set()
        assert await first is True
        assert calls == ["run"]
        assert not guard.running


class TestPeriodicJob:
    """Test suite for PeriodicJob."""

    @pytest.mark.asyncio
    async def test_run_now_records_status(self):
        runs = []

        async def job():
            runs.append(1)

        periodic = PeriodicJob("Test", interval_seconds=60, job=job)
        assert await periodic.run_now()

        status = periodic.get_status()
        assert runs == [1]
        assert status["run_count"] == 1
        assert status["last_error"] is None
        assert status["last_run"] is not None

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self):
        async def broken():
            raise RuntimeError("database unavailable")

        periodic = PeriodicJob("Broken", interval_seconds=60, job=broken)
        await periodic.run_now()

        assert periodic.last_error == "database unavailable"
        assert periodic.run_count == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        ticks = asyncio.Event()

        async def job():
            ticks.set()

        periodic = PeriodicJob("Loop", interval_seconds=0.01, job=job)
        await periodic.start()
        await asyncio.wait_for(ticks.wait(), timeout=1.0)
        await periodic.stop()

        assert periodic.task is None
        assert not periodic.running
        assert periodic.run_count >= 1

    @pytest.mark.asyncio
    async def test_disabled_job_never_starts(self):
        async def job():
            raise AssertionError("should not run")

        periodic = PeriodicJob("Off", interval_seconds=0.01, job=job, enabled=False)
        await periodic.start()

        assert periodic.task is None
        assert periodic.get_status()["enabled"] is False


class TestTopicCompletionSweep:
    """Test suite for TopicCompletionSweep."""

    @pytest.mark.asyncio
    async def test_marks_completed_topics(self):
        curriculum = CurriculumStore(complete_threshold=50)
        curriculum.add_topic(Topic(id="t1", title="Tokenization"), [
            Goal(id="g1", topic_id="t1", title="Tokens", order=1),
            Goal(id="g2", topic_id="t1", title="Subwords", order=2),
        ])
        tracker = GoalProgressTracker(required_questions=2)
        await tracker.record_answer("u1", "g1", True)
        await tracker.record_answer("u1", "g1", False)
        await tracker.record_answer("u2", "g2", True)

        refreshed = await TopicCompletionSweep(tracker, curriculum).run()

        assert refreshed == 2
        done = await curriculum.get_topic_progress("u1", "t1")
        started = await curriculum.get_topic_progress("u2", "t1")
        assert done["completion_percent"] == 50
        assert done["is_completed"] is True
        assert started["completion_percent"] == 0
        assert started["is_completed"] is False
