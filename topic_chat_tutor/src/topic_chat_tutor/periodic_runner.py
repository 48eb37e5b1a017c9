"""
Periodic Background Jobs

Runs a coroutine on a fixed interval as a background task that doesn't
block the API. Every tick goes through a RunGuard: if the previous run is
still in progress the tick is skipped instead of overlapping it.

The only job today is the topic completion sweep, which re-derives each
learner's topic completion from goal progress and marks topics complete.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class RunGuard:
    """Single-slot, non-reentrant guard owned by one scheduler."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.skipped_runs = 0

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def try_run(self, job: Callable[[], Awaitable[Any]]) -> bool:
        """
        Run ``job`` unless a previous run is still active.

        Returns:
            True if the job ran, False if the cycle was skipped
        """
        if self._lock.locked():
            self.skipped_runs += 1
            return False
        async with self._lock:
            await job()
        return True


class PeriodicJob:
    """
    Fixed-interval background job.

    Args:
        name: Label used in logs and status
        interval_seconds: Seconds between ticks
        job: Coroutine function to run each tick
        enabled: Whether start() actually schedules anything
        initial_delay_seconds: Wait before the first tick
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
        enabled: bool = True,
        initial_delay_seconds: float = 0.0,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.enabled = enabled
        self.initial_delay_seconds = initial_delay_seconds
        self.guard = RunGuard()
        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.run_count = 0

    async def start(self):
        """Start the background loop."""
        if not self.enabled:
            logger.info(f"📚 [{self.name}] Background job is disabled")
            return
        if self.running:
            logger.warning(f"⚠️ [{self.name}] Already running")
            return

        self.running = True
        logger.info(f"🔄 [{self.name}] Starting (interval: {self.interval_seconds}s)")
        self.task = asyncio.create_task(self._loop())

    async def stop(self):
        """Stop the background loop and wait for it to exit."""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info(f"🛑 [{self.name}] Stopped")

    async def _loop(self):
        if self.initial_delay_seconds:
            await asyncio.sleep(self.initial_delay_seconds)
        while self.running:
            await self.run_now()
            await asyncio.sleep(self.interval_seconds)

    async def run_now(self) -> bool:
        """
        Run one tick immediately (still guarded).

        Returns:
            False when skipped because a run is in progress
        """
        ran = await self.guard.try_run(self._run_once)
        if not ran:
            logger.info(f"⏭️ [{self.name}] Previous run still in progress, skipping this cycle")
        return ran

    async def _run_once(self):
        started = datetime.now()
        try:
            await self.job()
        except Exception as e:
            # Keep the loop alive; the next tick retries
            self.last_error = str(e)
            logger.error(f"❌ [{self.name}] Run failed: {e}", exc_info=True)
            return
        self.last_run = datetime.now()
        self.last_error = None
        self.run_count += 1
        duration = (self.last_run - started).total_seconds()
        logger.info(f"✅ [{self.name}] Run completed in {duration:.1f}s")

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "running": self.running,
            "in_progress": self.guard.running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "skipped_runs": self.guard.skipped_runs,
            "interval_seconds": self.interval_seconds,
        }


class TopicCompletionSweep:
    """
    Recomputes topic completion for every (learner, topic) with progress.

    Args:
        progress_tracker: GoalProgressTracker
        curriculum_store: CurriculumStore
    """

    def __init__(self, progress_tracker, curriculum_store):
        self.progress = progress_tracker
        self.curriculum = curriculum_store

    async def run(self) -> int:
        """Returns the number of (learner, topic) pairs refreshed."""
        rows = await self.progress.list_progress()
        goal_topics = await self.curriculum.find_goal_topics(sorted({row.goal_id for row in rows}))

        pairs: Set[Tuple[str, str]] = set()
        for row in rows:
            topic_id = goal_topics.get(row.goal_id)
            if topic_id is not None:
                pairs.add((row.learner_id, topic_id))

        for learner_id, topic_id in sorted(pairs):
            goals = await self.curriculum.list_goals(topic_id)
            percent = await self.progress.topic_completion_percent(learner_id, topic_id, goals)
            await self.curriculum.mark_topic_completed(learner_id, topic_id, percent)

        logger.info(f"📊 [TopicCompletionSweep] Refreshed {len(pairs)} learner topics")
        return len(pairs)
