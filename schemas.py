"""Pydantic schemas for the Reminder Notification Service API.

IMPORTANT: datetimes read back from SQLite are naive; response schemas
re-attach UTC so clients never see local-looking timestamps.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional

from database import CallStatusEnum, as_utc


class Coordinates(BaseModel):
    """A latitude/longitude pair."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")


class LocationUpdate(Coordinates):
    """Body of a location update from the user's device."""

    class Config:
        json_schema_extra = {"example": {"latitude": 40.0005, "longitude": -74.0005}}


class LocationUpdateResponse(BaseModel):
    latitude: float
    longitude: float
    triggered: List[str] = Field(default_factory=list, description="Reminder IDs notified by this update")
    timestamp: datetime


class ResetNotificationRequest(BaseModel):
    trigger_type: str = Field(..., description="'time' or 'location'")


class NotificationHistory(BaseModel):
    time_notified: bool
    time_notified_at: Optional[datetime] = None
    location_notified: bool
    location_notified_at: Optional[datetime] = None


class ServiceStatus(BaseModel):
    time_loop_running: bool
    location_loop_running: bool
    in_flight_count: int
    timestamp: datetime


class TriggerResult(BaseModel):
    message: str
    processed: int


class ReminderResponse(BaseModel):
    """Reminder as returned by the operational endpoints."""

    id: str
    user_id: str
    description: str
    coordinates: Optional[Coordinates] = None
    location_name: Optional[str] = None
    trigger_time: Optional[datetime] = None

    time_notified: bool
    time_notified_at: Optional[datetime] = None
    location_notified: bool
    location_notified_at: Optional[datetime] = None

    call_attempts: int
    call_status: CallStatusEnum
    last_call_attempt_at: Optional[datetime] = None

    created_at: datetime

    @field_validator(
        "trigger_time", "time_notified_at", "location_notified_at",
        "last_call_attempt_at", "created_at"
    )
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    class Config:
        """Pydantic configuration"""
        from_attributes = True  # Enable ORM mode for SQLAlchemy models


class PendingReminders(BaseModel):
    time_based: List[ReminderResponse]
    location_based: List[ReminderResponse]
    total: int


class ActiveReminders(BaseModel):
    reminders: List[ReminderResponse]
    count: int
