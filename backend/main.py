"""
FastAPI Backend for the Topic Chat Tutor

Provides REST API endpoints with:
- Bearer token authentication
- Micro-assessment topic chat (questions, grading, explanations, summary)
- Session metrics, topic analytics and Learn More plans
- Supabase persistence (in-memory stores when Supabase is not configured)
- Background topic completion sweep
"""

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from dataclasses import dataclass
import os
import sys
import time
import logging
import signal

# Setup logging with colors and structured output
from lib.logger import setup_logging, get_logger

setup_logging(level=logging.INFO, use_colors=True)

logger = get_logger("backend.main")

# Add the topic_chat_tutor package to Python path (when not pip-installed)
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'topic_chat_tutor', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.supabase_client import get_optional_supabase_client
from lib.auth import get_current_user

from topic_chat_tutor.completion_oracle import CompletionOracle
from topic_chat_tutor.config import TutorSettings
from topic_chat_tutor.curriculum_store import CurriculumStore, TopicNotFoundError
from topic_chat_tutor.goal_progress import GoalProgressTracker
from topic_chat_tutor.learn_more import build_learning_plan
from topic_chat_tutor.metrics_aggregator import MetricsAggregator, format_session_summary
from topic_chat_tutor.models import ChatMessage as TranscriptEntry, TutorTurnResult
from topic_chat_tutor.periodic_runner import PeriodicJob, TopicCompletionSweep
from topic_chat_tutor.session_engine import SessionEngine
from topic_chat_tutor.transcript_store import TranscriptStore
from topic_chat_tutor.turn_log import TurnLog


# ==================== Service Wiring ====================

@dataclass
class TutorServices:
    """Everything the endpoints need, built once per process."""
    settings: TutorSettings
    curriculum: CurriculumStore
    progress: GoalProgressTracker
    turn_log: TurnLog
    transcript: TranscriptStore
    metrics: MetricsAggregator
    engine: SessionEngine
    completion_sweep: PeriodicJob


def build_services(supabase_client=None, settings: Optional[TutorSettings] = None,
                   oracle: Optional[CompletionOracle] = None) -> TutorServices:
    """Wire stores, oracle and engine (in-memory stores when supabase_client is None)."""
    settings = settings or TutorSettings.from_env()
    curriculum = CurriculumStore(supabase_client, complete_threshold=settings.topic_complete_threshold)
    progress = GoalProgressTracker(
        supabase_client,
        required_questions=settings.required_questions_per_goal,
        write_retries=settings.progress_write_retries,
    )
    turn_log = TurnLog(supabase_client)
    transcript = TranscriptStore(supabase_client)
    metrics = MetricsAggregator(turn_log, progress, settings)
    engine = SessionEngine(
        oracle=oracle or CompletionOracle(model=settings.openai_model),
        progress_tracker=progress,
        turn_log=turn_log,
        transcript_store=transcript,
        curriculum_store=curriculum,
        metrics_aggregator=metrics,
        settings=settings,
    )
    sweep = TopicCompletionSweep(progress, curriculum)
    completion_sweep = PeriodicJob(
        name="TopicCompletionSweep",
        interval_seconds=settings.completion_sweep_interval_seconds,
        job=sweep.run,
        enabled=settings.completion_sweep_enabled,
        initial_delay_seconds=settings.completion_sweep_interval_seconds,
    )
    return TutorServices(
        settings=settings,
        curriculum=curriculum,
        progress=progress,
        turn_log=turn_log,
        transcript=transcript,
        metrics=metrics,
        engine=engine,
        completion_sweep=completion_sweep,
    )


_services: Optional[TutorServices] = None


def get_services() -> TutorServices:
    """Get or create the singleton service container."""
    global _services
    if _services is None:
        supabase = get_optional_supabase_client()
        if supabase is None:
            logger.warning("Supabase not configured - using in-memory stores")
        _services = build_services(supabase)
    return _services


# Initialize FastAPI app
app = FastAPI(
    title="Topic Chat Tutor API",
    description="Micro-assessment tutoring chat with goal tracking and session reports",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=TutorSettings.from_env().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== Pydantic Models ====================

class MessageRequest(BaseModel):
    content: str = ""


class OptionRequest(BaseModel):
    option: str


class TimeSpentRequest(BaseModel):
    seconds: int = Field(ge=0, le=24 * 3600)


class OutboundMessageModel(BaseModel):
    text: str
    type: str
    options: Optional[List[str]] = None
    emoji: Optional[str] = None
    payload: Dict[str, Any] = {}


class TutorTurnResponse(BaseModel):
    action: str
    messages: List[OutboundMessageModel]
    correction: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None


class TranscriptMessageModel(BaseModel):
    id: Optional[str]
    sender: str
    text: str
    type: str
    payload: Dict[str, Any] = {}
    created_at: Optional[str] = None


class MetricsResponse(BaseModel):
    topic_id: str
    metrics: Dict[str, Any]
    report: str


class TimeSpentResponse(BaseModel):
    topic_id: str
    time_spent_seconds: int


# ==================== Helper Functions ====================

def to_turn_response(result: TutorTurnResult) -> TutorTurnResponse:
    return TutorTurnResponse(**result.to_dict())


def to_transcript_model(message: TranscriptEntry) -> TranscriptMessageModel:
    return TranscriptMessageModel(
        id=message.id,
        sender=message.sender.value,
        text=message.text,
        type=message.message_type.value,
        payload=message.payload,
        created_at=message.created_at.isoformat() if message.created_at else None,
    )


async def run_turn(path: str, user: dict, action) -> TutorTurnResponse:
    """Run an engine call with consistent logging and error mapping."""
    started = time.perf_counter()
    logger.request("POST", path, user_id=user["id"])
    try:
        result = await action()
    except TopicNotFoundError:
        raise HTTPException(status_code=404, detail="Topic not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Topic chat turn failed", error=e, data={"path": path})
        raise HTTPException(status_code=500, detail="Something went wrong. Please try again.")

    logger.response(200, path, time.perf_counter() - started, data={"action": result.action.value})
    return to_turn_response(result)


async def load_goals(services: TutorServices, topic_id: str):
    try:
        await services.curriculum.get_topic(topic_id)
    except TopicNotFoundError:
        raise HTTPException(status_code=404, detail="Topic not found")
    return await services.curriculum.list_goals(topic_id)


# ==================== API Endpoints ====================

@app.get("/")
async def root(services: TutorServices = Depends(get_services)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "Topic Chat Tutor API",
        "version": "1.0.0",
        "oracle_available": services.engine.oracle.available,
        "supabase_connected": services.progress.use_supabase,
    }


@app.post("/api/topic-chats/{topic_id}/messages", response_model=TutorTurnResponse)
async def send_message(topic_id: str, request: MessageRequest,
                       user: dict = Depends(get_current_user),
                       services: TutorServices = Depends(get_services)):
    """Send a learner message (or an empty one to get the next question)."""
    return await run_turn(
        f"/api/topic-chats/{topic_id}/messages",
        user,
        lambda: services.engine.handle_learner_message(user["id"], topic_id, request.content),
    )


@app.post("/api/topic-chats/{topic_id}/options", response_model=TutorTurnResponse)
async def choose_option(topic_id: str, request: OptionRequest,
                        user: dict = Depends(get_current_user),
                        services: TutorServices = Depends(get_services)):
    """Tap "Got it", "Explain" or "Explain more"."""
    return await run_turn(
        f"/api/topic-chats/{topic_id}/options",
        user,
        lambda: services.engine.handle_option(user["id"], topic_id, request.option),
    )


@app.get("/api/topic-chats/{topic_id}/messages", response_model=List[TranscriptMessageModel])
async def get_messages(topic_id: str,
                       user: dict = Depends(get_current_user),
                       services: TutorServices = Depends(get_services)):
    """Full transcript of the learner's chat for a topic."""
    messages = await services.transcript.list_messages(topic_id, user["id"])
    return [to_transcript_model(message) for message in messages]


@app.get("/api/topic-chats/{topic_id}/metrics", response_model=MetricsResponse)
async def get_metrics(topic_id: str,
                      user: dict = Depends(get_current_user),
                      services: TutorServices = Depends(get_services)):
    """Session metrics and the formatted report (safe to call repeatedly)."""
    try:
        topic = await services.curriculum.get_topic(topic_id)
    except TopicNotFoundError:
        raise HTTPException(status_code=404, detail="Topic not found")
    goals = await services.curriculum.list_goals(topic_id)
    metrics = await services.metrics.compute(user["id"], topic_id, goals)
    return MetricsResponse(
        topic_id=topic_id,
        metrics=metrics.to_dict(),
        report=format_session_summary(topic.title, metrics),
    )


@app.get("/api/topic-chats/{topic_id}/analytics")
async def get_analytics(topic_id: str,
                        user: dict = Depends(get_current_user),
                        services: TutorServices = Depends(get_services)):
    """All-time analytics over every graded turn of the topic."""
    await load_goals(services, topic_id)
    analytics = await services.turn_log.get_topic_analytics(user["id"], topic_id)
    return {"topic_id": topic_id, "analytics": analytics}


@app.get("/api/topic-chats/{topic_id}/learn-more/plan")
async def get_learn_more_plan(topic_id: str,
                              user: dict = Depends(get_current_user),
                              services: TutorServices = Depends(get_services)):
    """Remediation plan built from the weak goals of the last session."""
    goals = await load_goals(services, topic_id)
    metrics = await services.metrics.compute(user["id"], topic_id, goals)
    turns = await services.turn_log.list_turns(user["id"], [goal.id for goal in goals])
    plan = build_learning_plan(metrics, turns)
    return {"topic_id": topic_id, "plan": plan.to_dict()}


@app.post("/api/topic-chats/{topic_id}/time", response_model=TimeSpentResponse)
async def add_time_spent(topic_id: str, request: TimeSpentRequest,
                         user: dict = Depends(get_current_user),
                         services: TutorServices = Depends(get_services)):
    """Add seconds spent in the topic chat."""
    await load_goals(services, topic_id)
    progress = await services.curriculum.add_time_spent(user["id"], topic_id, request.seconds)
    return TimeSpentResponse(topic_id=topic_id, time_spent_seconds=progress.get("time_spent_seconds", 0))


@app.get("/api/background/status")
async def background_status(user: dict = Depends(get_current_user),
                            services: TutorServices = Depends(get_services)):
    return services.completion_sweep.get_status()


@app.on_event("startup")
async def startup_event():
    """Startup event - start the topic completion sweep."""
    services = get_services()
    logger.section("TOPIC CHAT TUTOR STARTING", {
        "model": services.settings.openai_model,
        "supabase": services.progress.use_supabase,
        "sweep_interval_seconds": services.settings.completion_sweep_interval_seconds,
    })
    await services.completion_sweep.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event - stop the topic completion sweep."""
    if _services is not None:
        await _services.completion_sweep.stop()
        logger.info("🛑 Topic completion sweep stopped")


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
