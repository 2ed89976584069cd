"""FastAPI server for the Reminder Notification Service.

This module exposes the operational surface of the reminder engine:
location updates, scheduler control, notification administration, the
Twilio call status webhook and the WebSocket push channel.

One ReminderEngine is built at startup and shared through app.state.
Authentication is handled upstream; the acting user is passed as user_id.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

import crud
import database
import schemas
from background_worker import ReminderScheduler
from channels import parse_duration
from config import settings
from logger_config import setup_logger
from reminder_engine import NotFoundError, ReminderEngine, build_reminder_engine

logger = setup_logger(__name__, 'api.log')


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine once per process and run the scheduler alongside the API."""
    engine = getattr(app.state, "reminder_engine", None) or build_reminder_engine()
    scheduler = ReminderScheduler(engine)
    app.state.reminder_engine = engine
    app.state.scheduler = scheduler

    if settings.WORKER_ENABLED:
        scheduler.start()
    else:
        logger.info("Worker disabled; reminder loops not started")

    try:
        yield
    finally:
        await scheduler.aclose()
        app.state.reminder_engine = None
        app.state.scheduler = None


# Create FastAPI application
app = FastAPI(
    title="Reminder Notification Service API",
    description="Time and location reminder notifications over email, voice call and WebSocket push",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> ReminderEngine:
    return request.app.state.reminder_engine


def get_scheduler(request: Request) -> ReminderScheduler:
    return request.app.state.scheduler


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Notification Service API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "reminders": "/api/reminders",
            "push": "/ws/{user_id}"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "reminder_notification_service",
        "database": settings.DATABASE_URL.split("://")[0]
    }


# ---------------------------------------------------------------------------
# Reminder engine endpoints
# ---------------------------------------------------------------------------

@app.post("/api/reminders/location-update", response_model=schemas.LocationUpdateResponse)
async def update_location(
    location: schemas.LocationUpdate,
    user_id: str = Query(..., description="Acting user's ID"),
    engine: ReminderEngine = Depends(get_engine)
):
    """Store the user's current location and fire reminders now within range.

    Request body example:
    ```json
    {"latitude": 40.0005, "longitude": -74.0005}
    ```
    """
    try:
        triggered = await engine.handle_location_update(user_id, location.latitude, location.longitude)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return schemas.LocationUpdateResponse(
        latitude=location.latitude,
        longitude=location.longitude,
        triggered=triggered,
        timestamp=datetime.now(timezone.utc)
    )


@app.get("/api/reminders/active", response_model=schemas.ActiveReminders)
def get_active_reminders(
    user_id: str = Query(..., description="Acting user's ID"),
    db: Session = Depends(database.get_db)
):
    """List the user's non-deleted reminders, newest first."""
    reminders = crud.get_user_reminders(db, user_id)
    return {"reminders": reminders, "count": len(reminders)}


@app.get("/api/reminders/pending", response_model=schemas.PendingReminders)
def get_pending_reminders(
    user_id: str = Query(..., description="Acting user's ID"),
    engine: ReminderEngine = Depends(get_engine)
):
    """Reminders still waiting on their time trigger, location trigger, or both."""
    return engine.get_pending_reminders(user_id)


@app.post("/api/reminders/service/start")
async def start_reminder_service(scheduler: ReminderScheduler = Depends(get_scheduler)):
    """Start both reminder loops (idempotent)."""
    scheduler.start()
    return {"message": "Reminder service started successfully"}


@app.post("/api/reminders/service/stop")
async def stop_reminder_service(scheduler: ReminderScheduler = Depends(get_scheduler)):
    """Stop both reminder loops (idempotent). Scheduled call retries still run."""
    scheduler.stop()
    return {"message": "Reminder service stopped successfully"}


@app.get("/api/reminders/service/status", response_model=schemas.ServiceStatus)
def get_reminder_service_status(scheduler: ReminderScheduler = Depends(get_scheduler)):
    """Loop state and number of in-flight reservations."""
    return scheduler.status()


@app.post("/api/reminders/service/trigger-time", response_model=schemas.TriggerResult)
async def trigger_time_check(scheduler: ReminderScheduler = Depends(get_scheduler)):
    """Run one time-trigger pass now."""
    processed = await scheduler.trigger_time_check()
    return {"message": "Time-based reminder check triggered successfully", "processed": len(processed or [])}


@app.post("/api/reminders/service/trigger-location", response_model=schemas.TriggerResult)
async def trigger_location_check(scheduler: ReminderScheduler = Depends(get_scheduler)):
    """Run one location-trigger pass now."""
    processed = await scheduler.trigger_location_check()
    return {"message": "Location-based reminder check triggered successfully", "processed": len(processed or [])}


@app.put("/api/reminders/{reminder_id}/reset-notification", response_model=schemas.ReminderResponse)
def reset_notification_status(
    reminder_id: str,
    body: schemas.ResetNotificationRequest = Body(...),
    engine: ReminderEngine = Depends(get_engine)
):
    """Let a trigger fire again.

    Request body example:
    ```json
    {"trigger_type": "time"}
    ```
    """
    try:
        return engine.reset_notification(reminder_id, body.trigger_type)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/reminders/{reminder_id}/notification-history", response_model=schemas.NotificationHistory)
def get_notification_history(reminder_id: str, engine: ReminderEngine = Depends(get_engine)):
    """Notified flags and timestamps for both trigger types."""
    try:
        return engine.get_notification_history(reminder_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ---------------------------------------------------------------------------
# Provider webhook and push channel
# ---------------------------------------------------------------------------

async def _read_call_status(request: Request) -> Tuple[Optional[str], Optional[str], int]:
    """Extract (call reference, status, duration) from Twilio form posts or JSON."""
    if request.headers.get("content-type", "").startswith("application/json"):
        body = await request.json()
        return body.get("callReference"), body.get("status"), parse_duration(body.get("duration"))

    form = await request.form()
    return form.get("CallSid"), form.get("CallStatus"), parse_duration(form.get("CallDuration"))


@app.post("/api/webhooks/twilio/call-status", response_class=PlainTextResponse)
async def twilio_call_status(request: Request, engine: ReminderEngine = Depends(get_engine)):
    """Twilio call status callback.

    Always answers 200 so Twilio does not retry the delivery.
    """
    try:
        call_reference, status, duration = await _read_call_status(request)
        logger.info(f"Twilio webhook received for call {call_reference}: {status}")
        await engine.handle_call_status(call_reference, status, duration)
    except Exception as e:
        logger.error(f"Error handling Twilio webhook: {e}", exc_info=True)
    return "OK"


@app.websocket("/ws/{user_id}")
async def push_channel(websocket: WebSocket, user_id: str):
    """Real-time notifications for one user."""
    push = websocket.app.state.reminder_engine.push
    await push.connect(websocket, user_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        push.disconnect(websocket, user_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
