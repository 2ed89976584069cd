"""Store operations for the Reminder Notification Service.

This module is the only place that queries or updates Reminder and User rows.
IMPORTANT: All datetime parameters and return values are datetime objects, NOT strings.
"""

from sqlalchemy.orm import Session
from typing import List, Optional, Tuple
import uuid
from datetime import datetime, timezone

from database import Reminder, User, CallStatusEnum, TriggerType, utcnow
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_user(db: Session, user_data: dict) -> User:
    """Create a reminder owner.

    Args:
        db: Database session
        user_data: Dictionary with user fields
            - firstname, email, phone_number: str
            - lastname, calling_number: Optional[str]

    Returns:
        User: Created user object
    """
    user = User(
        id=user_data.get('id') or str(uuid.uuid4()),
        firstname=user_data['firstname'],
        lastname=user_data.get('lastname', ''),
        email=user_data['email'],
        phone_number=user_data['phone_number'],
        calling_number=user_data.get('calling_number'),
        created_at=utcnow(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user(db: Session, user_id: str) -> Optional[User]:
    """Get a non-deleted user by ID."""
    return db.query(User).filter(
        User.id == user_id,
        User.is_deleted.is_(False)
    ).first()


def update_user_location(
    db: Session,
    user_id: str,
    latitude: float,
    longitude: float
) -> Optional[User]:
    """Persist the user's most recently reported location.

    Returns:
        Optional[User]: Updated user if found, None otherwise
    """
    user = get_user(db, user_id)
    if not user:
        return None

    user.current_latitude = latitude
    user.current_longitude = longitude
    user.location_updated_at = utcnow()
    db.commit()
    db.refresh(user)
    return user


def create_reminder(db: Session, reminder_data: dict) -> Reminder:
    """Create a new reminder in the database.

    Args:
        db: Database session
        reminder_data: Dictionary with reminder fields
            - user_id: str
            - description: str
            - coordinates: Optional[dict] with latitude/longitude
            - location_name: Optional[str]
            - trigger_time: Optional[datetime] (MUST be datetime object!)

    Returns:
        Reminder: Created reminder object
    """
    coordinates = reminder_data.get('coordinates') or {}
    now = utcnow()

    # Empty location labels are stored as null
    location_name = reminder_data.get('location_name') or None

    db_reminder = Reminder(
        id=reminder_data.get('id') or str(uuid.uuid4()),
        user_id=reminder_data['user_id'],
        description=reminder_data['description'],
        latitude=coordinates.get('latitude'),
        longitude=coordinates.get('longitude'),
        location_name=location_name,
        trigger_time=_to_utc(reminder_data.get('trigger_time')),
        time_notified=False,
        location_notified=False,
        call_attempts=0,
        call_status=CallStatusEnum.NOT_CALLED,
        is_deleted=False,
        created_at=now,
        updated_at=now,
    )

    db.add(db_reminder)
    db.commit()
    db.refresh(db_reminder)
    return db_reminder


def get_reminder(db: Session, reminder_id: str, include_deleted: bool = False) -> Optional[Reminder]:
    """Get a specific reminder by ID.

    Args:
        db: Database session
        reminder_id: Reminder UUID
        include_deleted: Also return soft-deleted reminders

    Returns:
        Optional[Reminder]: Reminder object if found, None otherwise
    """
    query = db.query(Reminder).filter(Reminder.id == reminder_id)
    if not include_deleted:
        query = query.filter(Reminder.is_deleted.is_(False))
    return query.first()


def soft_delete_reminder(db: Session, reminder_id: str, user_id: str) -> bool:
    """Mark a reminder deleted.

    Returns:
        bool: True if deleted, False if not found
    """
    reminder = get_reminder(db, reminder_id)
    if not reminder or reminder.user_id != user_id:
        return False

    reminder.is_deleted = True
    reminder.deleted_at = utcnow()
    db.commit()
    return True


def get_user_reminders(db: Session, user_id: str) -> List[Reminder]:
    """Get a user's active (non-deleted) reminders, newest first."""
    return db.query(Reminder).filter(
        Reminder.user_id == user_id,
        Reminder.is_deleted.is_(False)
    ).order_by(Reminder.created_at.desc()).all()


def get_due_time_reminders(db: Session, now: Optional[datetime] = None) -> List[Reminder]:
    """Get reminders whose time trigger is due and not yet notified.

    Criteria:
    - trigger_time is set and <= now
    - time_notified is False
    - not soft-deleted

    Args:
        db: Database session
        now: Reference time (defaults to current UTC time)

    Returns:
        List[Reminder]: Candidates ordered by trigger_time
    """
    now = _to_utc(now) or utcnow()
    return db.query(Reminder).filter(
        Reminder.trigger_time.isnot(None),
        Reminder.trigger_time <= now,
        Reminder.time_notified.is_(False),
        Reminder.is_deleted.is_(False)
    ).order_by(Reminder.trigger_time).all()


def get_location_reminders(db: Session, user_id: Optional[str] = None) -> List[Reminder]:
    """Get reminders with coordinates whose location trigger has not fired.

    Distance is not checked here; see triggers.TriggerEvaluator.

    Args:
        db: Database session
        user_id: Optional owner filter

    Returns:
        List[Reminder]: Location reminders not yet location-notified
    """
    query = db.query(Reminder).filter(
        Reminder.latitude.isnot(None),
        Reminder.longitude.isnot(None),
        Reminder.location_notified.is_(False),
        Reminder.is_deleted.is_(False)
    )
    if user_id:
        query = query.filter(Reminder.user_id == user_id)
    return query.order_by(Reminder.created_at).all()


def mark_notified(
    db: Session,
    reminder_id: str,
    trigger_type: TriggerType,
    when: Optional[datetime] = None
) -> Optional[Reminder]:
    """Set the notified flag and timestamp for one trigger type.

    Only the fields of the given trigger type are touched.
    """
    reminder = get_reminder(db, reminder_id, include_deleted=True)
    if not reminder:
        return None

    when = when or utcnow()
    if TriggerType(trigger_type) is TriggerType.TIME:
        reminder.time_notified = True
        reminder.time_notified_at = when
    else:
        reminder.location_notified = True
        reminder.location_notified_at = when

    db.commit()
    db.refresh(reminder)
    return reminder


def reset_notification(db: Session, reminder_id: str, trigger_type: TriggerType) -> Optional[Reminder]:
    """Clear the notified flag and timestamp for one trigger type.

    Call state (call_attempts, call_status) is left untouched.
    """
    reminder = get_reminder(db, reminder_id)
    if not reminder:
        return None

    if TriggerType(trigger_type) is TriggerType.TIME:
        reminder.time_notified = False
        reminder.time_notified_at = None
    else:
        reminder.location_notified = False
        reminder.location_notified_at = None

    db.commit()
    db.refresh(reminder)
    return reminder


def get_pending_reminders(db: Session, user_id: str) -> Tuple[List[Reminder], List[Reminder]]:
    """Split a user's active reminders by which trigger has yet to fire.

    A hybrid reminder can appear in both lists.

    Returns:
        Tuple of (time-pending reminders, location-pending reminders)
    """
    active = get_user_reminders(db, user_id)
    time_pending = [r for r in active if r.trigger_time is not None and not r.time_notified]
    location_pending = [r for r in active if r.coordinates is not None and not r.location_notified]
    return time_pending, location_pending


def begin_call_attempt(db: Session, reminder_id: str) -> Optional[Reminder]:
    """Record a new outbound call attempt.

    Sets call_status to CALLING, increments call_attempts, stamps
    last_call_attempt_at and clears the previous call reference.
    """
    reminder = get_reminder(db, reminder_id, include_deleted=True)
    if not reminder:
        return None

    reminder.call_status = CallStatusEnum.CALLING
    reminder.call_attempts = (reminder.call_attempts or 0) + 1
    reminder.last_call_attempt_at = utcnow()
    reminder.active_call_reference = None

    db.commit()
    db.refresh(reminder)
    return reminder


def set_active_call_reference(db: Session, reminder_id: str, call_reference: str) -> Optional[Reminder]:
    """Store the provider's reference for the in-flight call."""
    reminder = get_reminder(db, reminder_id, include_deleted=True)
    if not reminder:
        return None

    reminder.active_call_reference = call_reference
    db.commit()
    db.refresh(reminder)
    return reminder


def set_call_status(db: Session, reminder_id: str, status: CallStatusEnum) -> Optional[Reminder]:
    """Update the reminder's call status."""
    reminder = get_reminder(db, reminder_id, include_deleted=True)
    if not reminder:
        return None

    reminder.call_status = status
    db.commit()
    db.refresh(reminder)
    return reminder


def get_reminder_by_call_reference(db: Session, call_reference: str) -> Optional[Reminder]:
    """Find the reminder whose active call matches the provider reference."""
    if not call_reference:
        return None
    return db.query(Reminder).filter(
        Reminder.active_call_reference == call_reference
    ).first()
