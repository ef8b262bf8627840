"""
Arrival collector - FastAPI control surface

Provides REST API for:
- Scheduler status (lifecycle, last scan, timers, API usage)
- Starting/stopping the scheduler and running a manual scan
"""
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from arrival_collector.arrival_detector import ArrivalDetector
from arrival_collector.config import get_settings
from arrival_collector.database import (
    ApiCallCounter,
    ArrivalLogStore,
    PendingArrivalStore,
    SchedulerSettingsStore,
    SessionLocal,
    TargetRegistry,
    engine,
    init_db,
)
from arrival_collector.operating_window import validate_hours
from arrival_collector.orchestrator import CollectionOrchestrator
from arrival_collector.prediction_client import ArrivalPredictionClient
from arrival_collector.timer_manager import TimerManager
from arrival_collector.tracking import SchedulerSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Arrival Collector",
    description="Adaptive bus arrival polling and arrival logging",
    version="0.1.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global service instances
orchestrator: Optional[CollectionOrchestrator] = None
settings_store: Optional[SchedulerSettingsStore] = None


def build_orchestrator(session_factory=SessionLocal) -> CollectionOrchestrator:
    """Wire the scheduler components from configuration"""
    settings = get_settings()

    call_counter = ApiCallCounter(session_factory)
    client = ArrivalPredictionClient(
        api_key=settings.arrival_api_key,
        arrival_url=settings.arrival_api_url,
        station_url=settings.station_api_url,
        seoul_url=settings.seoul_api_url,
        timeout=settings.http_timeout_seconds,
        call_counter=call_counter,
    )
    detector = ArrivalDetector(
        log_store=ArrivalLogStore(session_factory),
        pending_store=PendingArrivalStore(session_factory),
        imminent_threshold=settings.imminent_threshold_seconds,
        duplicate_window_seconds=settings.duplicate_window_seconds,
        pending_max_age_seconds=settings.pending_max_age_seconds,
    )
    timer_manager = TimerManager(
        prediction_client=client,
        detector=detector,
        imminent_threshold=settings.imminent_threshold_seconds,
        approach_threshold=settings.approach_threshold_seconds,
        fallback_retry_seconds=settings.fallback_retry_seconds,
        rescan_seconds=settings.default_interval_minutes * 60,
    )
    return CollectionOrchestrator(
        settings_store=build_settings_store(session_factory),
        registry=TargetRegistry(session_factory),
        prediction_client=client,
        timer_manager=timer_manager,
        default_interval_minutes=settings.default_interval_minutes,
        call_counter=call_counter,
        daily_api_call_limit=settings.daily_api_call_limit,
    )


def build_settings_store(session_factory=SessionLocal) -> SchedulerSettingsStore:
    settings = get_settings()
    return SchedulerSettingsStore(session_factory, SchedulerSettings(
        enabled=settings.default_enabled,
        interval_minutes=settings.default_interval_minutes,
        start_hour=settings.default_start_hour,
        end_hour=settings.default_end_hour,
    ))


def _stored_settings() -> Optional[SchedulerSettings]:
    try:
        return settings_store.read()
    except Exception as e:
        logger.error(f"Failed to load scheduler settings: {e}")
        return None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global orchestrator, settings_store

    logger.info("Starting arrival collector...")
    init_db(engine)

    if orchestrator is None:
        orchestrator = build_orchestrator()
    settings_store = orchestrator.settings_store

    stored = _stored_settings()
    if stored and stored.enabled:
        logger.info("Scheduler enabled in settings, starting")
        orchestrator.start()

    logger.info("Arrival collector ready!")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down arrival collector...")
    if orchestrator:
        await orchestrator.stop()
        await orchestrator.timer_manager.shutdown()


# Pydantic models for API
class SchedulerAction(BaseModel):
    action: str
    intervalMinutes: int = 5
    startHour: int = 5
    endHour: int = 24


# API Endpoints

@app.get("/api")
async def api_root():
    """API root endpoint"""
    return {
        "message": "Arrival Collector",
        "version": "0.1.0",
        "docs": "/docs"
    }


@app.get("/api/scheduler")
async def get_scheduler_status() -> Dict[str, Any]:
    """
    Get scheduler status

    Starts the scheduler if stored settings say it should be running.
    """
    stored = _stored_settings()

    if stored and stored.enabled and not orchestrator.is_running:
        logger.info("Settings say enabled but scheduler is not running, starting")
        orchestrator.start()

    return {
        **orchestrator.status(),
        'settings': stored.to_dict() if stored else None,
    }


@app.post("/api/scheduler")
async def control_scheduler(request: SchedulerAction) -> Dict[str, Any]:
    """
    Control the scheduler

    Actions: start, stop, run
    """
    if request.action == "start":
        try:
            validate_hours(request.startHour, request.endHour)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if request.intervalMinutes < 1:
            raise HTTPException(status_code=422, detail="intervalMinutes must be at least 1")

        settings_store.save(SchedulerSettings(
            enabled=True,
            interval_minutes=request.intervalMinutes,
            start_hour=request.startHour,
            end_hour=request.endHour,
        ))
        orchestrator.interval_minutes = request.intervalMinutes
        started = orchestrator.start()
        return {
            'success': True,
            'message': 'Scheduler started' if started else 'Scheduler already running',
            **orchestrator.status(),
        }

    if request.action == "stop":
        stopped = await orchestrator.stop()
        stored = _stored_settings() or SchedulerSettings()
        stored.enabled = False
        settings_store.save(stored)
        return {
            'success': True,
            'message': 'Scheduler stopped' if stopped else 'Scheduler was not running',
            **orchestrator.status(),
        }

    if request.action == "run":
        result = await orchestrator.run_manually()
        return {
            'success': not result.skipped,
            'message': 'Manual scan complete' if not result.skipped else 'Scan already in progress',
            **result.to_dict(),
        }

    raise HTTPException(status_code=400, detail="Invalid action. Use: start, stop, or run")


@app.get("/api/timers")
async def list_timers():
    """
    List timer state of every tracked target
    """
    return {
        'active_timers': orchestrator.timer_manager.active_timer_count(),
        'timers': orchestrator.timer_manager.status_snapshot(),
    }


@app.get("/api/usage")
async def get_api_usage():
    """
    Today's outbound prediction API calls
    """
    return {
        'today_count': orchestrator.api_calls_today(),
        'daily_limit': orchestrator.daily_api_call_limit,
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "arrival_collector.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info"
    )
