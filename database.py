"""Database module for the Reminder Notification Service.

This module defines SQLAlchemy models and database session management.
IMPORTANT: all timestamps are stored as timezone-aware UTC DateTime objects.
"""

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Integer, Float,
    ForeignKey, Enum as SQLEnum, Index,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from datetime import datetime, timezone
from typing import Optional
import enum

from config import settings

# SQLAlchemy Base
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to datetimes read back naive (SQLite drops tzinfo)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TriggerType(str, enum.Enum):
    """The two independent ways a reminder can fire"""
    TIME = "time"
    LOCATION = "location"


class CallStatusEnum(enum.Enum):
    """Voice call state for a reminder"""
    NOT_CALLED = "not_called"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELLED = "cancelled"


class User(Base):
    """Reminder owner - contact details and last reported location."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, doc="Unique user ID (UUID)")
    firstname = Column(String, nullable=False)
    lastname = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)
    phone_number = Column(String, nullable=False, doc="Number the reminder call is placed to")
    calling_number = Column(String, nullable=True, doc="Provisioned Twilio number calls are placed from")

    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    reminders = relationship("Reminder", back_populates="owner")

    @property
    def current_location(self) -> Optional[dict]:
        if self.current_latitude is None or self.current_longitude is None:
            return None
        return {"latitude": self.current_latitude, "longitude": self.current_longitude}

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Reminder(Base):
    """Reminder model - content, triggers and per-channel notification state.

    A reminder fires on time (trigger_time), on location (latitude/longitude),
    or both. Each trigger type has its own notified flag.
    """

    __tablename__ = "reminders"

    id = Column(String, primary_key=True, doc="Unique reminder ID (UUID)")
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    description = Column(String, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String, nullable=True)
    trigger_time = Column(DateTime(timezone=True), nullable=True, index=True)

    # Per-trigger notification state
    time_notified = Column(Boolean, nullable=False, default=False)
    time_notified_at = Column(DateTime(timezone=True), nullable=True)
    location_notified = Column(Boolean, nullable=False, default=False)
    location_notified_at = Column(DateTime(timezone=True), nullable=True)

    # Voice call state
    call_attempts = Column(Integer, nullable=False, default=0)
    last_call_attempt_at = Column(DateTime(timezone=True), nullable=True)
    call_status = Column(SQLEnum(CallStatusEnum), nullable=False, default=CallStatusEnum.NOT_CALLED)
    active_call_reference = Column(String, nullable=True, index=True)

    # Soft delete (managed by the CRUD layer)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    owner = relationship("User", back_populates="reminders", lazy="joined")

    __table_args__ = (
        Index('idx_reminder_time_pending', 'time_notified', 'is_deleted', 'trigger_time'),
        Index('idx_reminder_location_pending', 'location_notified', 'is_deleted'),
        Index('idx_reminder_user_deleted', 'user_id', 'is_deleted'),
    )

    @property
    def coordinates(self) -> Optional[dict]:
        if self.latitude is None or self.longitude is None:
            return None
        return {"latitude": self.latitude, "longitude": self.longitude}

    def __repr__(self):
        return (
            f"<Reminder(id={self.id}, user={self.user_id}, "
            f"trigger_time={self.trigger_time}, call_status={self.call_status.value})>"
        )


def build_engine(database_url: str):
    """Create an engine for the given URL."""
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
        echo=False  # Set to True for SQL debugging
    )


def init_db(bind) -> None:
    """Create all tables on the given engine."""
    Base.metadata.create_all(bind=bind)


# Database Engine Setup
engine = build_engine(settings.DATABASE_URL)

# Session Factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Database session dependency for FastAPI.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Create all tables
init_db(engine)
