"""Reminder notification engine.

Ties trigger evaluation, the in-flight guard and the notification channels
together:

    evaluate -> reserve -> dispatch email + call + push -> mark notified -> release

Channel failures are logged and isolated; the notified flag for the trigger
type is set once the dispatch step has run, whatever the channel outcomes.
Voice call retries are handled separately by CallStatusTracker.

One engine is built per process (see build_reminder_engine) and handed to the
scheduler and the API.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

import crud
import database
from call_tracker import CallStatusTracker
from channels import (
    EmailChannel, PushChannel, ReminderNotification, VoiceChannel,
    build_email_html, build_email_subject, build_email_text,
)
from config import LOCATION_RETRIGGER_WINDOW
from database import CallStatusEnum, Reminder, TriggerType, as_utc
from dedup import InFlightGuard
from logger_config import setup_logger
from triggers import TriggerEvaluator

logger = setup_logger(__name__, 'engine.log')

PUSH_EVENT = "notification"


class NotFoundError(LookupError):
    """Requested entity does not exist or is soft-deleted."""


class ReminderNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    pass


def parse_trigger_type(value) -> TriggerType:
    """Validate a trigger type; raises ValueError for anything but time/location."""
    try:
        return TriggerType(getattr(value, "value", value))
    except ValueError:
        raise ValueError('trigger_type must be either "time" or "location"') from None


class ReminderEngine:
    """Evaluates reminders and sends their notifications."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        voice: VoiceChannel,
        email: EmailChannel,
        push: PushChannel,
        tracker: Optional[CallStatusTracker] = None,
        evaluator: Optional[TriggerEvaluator] = None,
        guard: Optional[InFlightGuard] = None,
        location_retrigger_window: float = LOCATION_RETRIGGER_WINDOW
    ):
        self.session_factory = session_factory
        self.voice = voice
        self.email = email
        self.push = push
        self.tracker = tracker or CallStatusTracker(voice, session_factory)
        self.evaluator = evaluator or TriggerEvaluator()
        self.guard = guard or InFlightGuard()
        self.location_retrigger_window = location_retrigger_window

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def process_reminder(self, reminder: Reminder, trigger_type: TriggerType) -> ReminderNotification:
        """Send every notification for one reminder firing and mark it notified.

        Email, voice call and push run concurrently. A failing channel is
        logged and does not stop the others or the notified update.

        Args:
            reminder: Reminder row (owner loaded)
            trigger_type: Which trigger fired

        Returns:
            ReminderNotification: The payload that was dispatched
        """
        trigger_type = TriggerType(trigger_type)
        notification = ReminderNotification.from_reminder(reminder, trigger_type)
        owner = reminder.owner

        channels = ("email", "call", "push")
        results = await asyncio.gather(
            self._send_email(owner.email, owner.firstname, notification),
            self._place_call(reminder.id, owner.calling_number, notification),
            self._push(notification),
            return_exceptions=True
        )
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"{channel} notification failed for reminder {reminder.id}: {result}",
                    exc_info=result
                )

        db = self.session_factory()
        try:
            crud.mark_notified(db, reminder.id, trigger_type)
        finally:
            db.close()

        logger.info(
            f"Reminder processed for user {reminder.user_id}: "
            f"{reminder.description} ({trigger_type.value})"
        )
        return notification

    async def _send_email(self, to: str, firstname: str, notification: ReminderNotification) -> None:
        await self.email.send_email(
            to=to,
            subject=build_email_subject(notification),
            text=build_email_text(firstname, notification),
            html=build_email_html(firstname, notification)
        )
        logger.info(f"Reminder email sent to {to}")

    async def _place_call(
        self,
        reminder_id: str,
        calling_number: Optional[str],
        notification: ReminderNotification
    ) -> None:
        if not calling_number:
            return
        await self.tracker.dispatch_call(reminder_id, notification)

    async def _push(self, notification: ReminderNotification) -> None:
        await self.push.emit_to_user(
            notification.user_id,
            PUSH_EVENT,
            {"type": "reminder_triggered", "data": notification.to_dict()}
        )

    async def _process_candidates(self, candidates: List[Reminder], trigger_type: TriggerType) -> List[str]:
        processed = []
        for reminder in candidates:
            if not self.guard.reserve(reminder.id, trigger_type):
                logger.info(f"Reminder {reminder.id} already being processed, skipping")
                continue

            succeeded = False
            try:
                await self.process_reminder(reminder, trigger_type)
                processed.append(reminder.id)
                succeeded = True
            except Exception as e:
                logger.error(f"Error processing reminder {reminder.id} ({trigger_type.value}): {e}", exc_info=True)
            finally:
                if succeeded and trigger_type is TriggerType.LOCATION:
                    # Location jitter would re-fire immediately otherwise
                    self.guard.release_later(reminder.id, trigger_type, self.location_retrigger_window)
                else:
                    self.guard.release(reminder.id, trigger_type)
        return processed

    # ------------------------------------------------------------------
    # Trigger passes
    # ------------------------------------------------------------------

    async def check_time_reminders(self, now: Optional[datetime] = None) -> Optional[List[str]]:
        """One time-trigger pass.

        Returns:
            Optional[List[str]]: IDs of processed reminders, None if the store query failed
        """
        db = self.session_factory()
        try:
            candidates = self.evaluator.time_candidates(db, now)
        except Exception as e:
            logger.error(f"Error checking time-based reminders: {e}", exc_info=True)
            return None
        finally:
            db.close()

        if not candidates:
            logger.debug("No time-based reminders due")
            return []

        logger.info(f"Found {len(candidates)} time-based reminder(s) due")
        return await self._process_candidates(candidates, TriggerType.TIME)

    async def check_location_reminders(
        self,
        user_id: Optional[str] = None,
        current_location: Optional[Mapping[str, float]] = None
    ) -> Optional[List[str]]:
        """One location-trigger pass against owners' last reported locations.

        Returns:
            Optional[List[str]]: IDs of processed reminders, None if the store query failed
        """
        db = self.session_factory()
        try:
            candidates = self.evaluator.location_candidates(db, user_id, current_location)
        except Exception as e:
            logger.error(f"Error checking location-based reminders: {e}", exc_info=True)
            return None
        finally:
            db.close()

        if not candidates:
            logger.debug("No location-based reminders triggered")
            return []

        processed = await self._process_candidates(candidates, TriggerType.LOCATION)
        if processed:
            logger.info(f"Found {len(processed)} location-based reminder(s) triggered")
        return processed

    async def handle_location_update(self, user_id: str, latitude: float, longitude: float) -> List[str]:
        """Store the user's new location and fire any reminders now in range.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        db = self.session_factory()
        try:
            user = crud.update_user_location(db, user_id, latitude, longitude)
        finally:
            db.close()

        if not user:
            raise UserNotFoundError(f"User {user_id} not found")

        processed = await self.check_location_reminders(
            user_id=user_id,
            current_location={"latitude": latitude, "longitude": longitude}
        )
        return processed or []

    async def handle_call_status(self, call_reference: str, status: str, duration: int = 0) -> Optional[CallStatusEnum]:
        """Entry point for the provider's call status webhook."""
        return await self.tracker.handle_status(call_reference, status, duration)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------

    def reset_notification(self, reminder_id: str, trigger_type) -> Reminder:
        """Allow a trigger to fire again. Call state is left as is.

        Raises:
            ValueError: Invalid trigger type
            ReminderNotFoundError: Unknown or deleted reminder
        """
        trigger_type = parse_trigger_type(trigger_type)
        db = self.session_factory()
        try:
            reminder = crud.reset_notification(db, reminder_id, trigger_type)
        finally:
            db.close()

        if not reminder:
            raise ReminderNotFoundError(f"Reminder {reminder_id} not found")
        logger.info(f"Notification status reset for reminder {reminder_id} ({trigger_type.value})")
        return reminder

    def get_notification_history(self, reminder_id: str) -> Dict[str, Optional[object]]:
        """Both trigger types' notified flags and timestamps.

        Raises:
            ReminderNotFoundError: Unknown or deleted reminder
        """
        db = self.session_factory()
        try:
            reminder = crud.get_reminder(db, reminder_id)
            if not reminder:
                raise ReminderNotFoundError(f"Reminder {reminder_id} not found")
            return {
                "time_notified": reminder.time_notified,
                "time_notified_at": as_utc(reminder.time_notified_at),
                "location_notified": reminder.location_notified,
                "location_notified_at": as_utc(reminder.location_notified_at),
            }
        finally:
            db.close()

    def get_pending_reminders(self, user_id: str) -> Dict[str, object]:
        """The user's reminders still waiting on their time or location trigger."""
        db = self.session_factory()
        try:
            time_based, location_based = crud.get_pending_reminders(db, user_id)
        finally:
            db.close()
        return {
            "time_based": time_based,
            "location_based": location_based,
            "total": len(time_based) + len(location_based),
        }

    def add_to_tracking(self, reminder_id: str, trigger_type) -> None:
        self.guard.reserve(reminder_id, parse_trigger_type(trigger_type))

    def remove_from_tracking(self, reminder_id: str, trigger_type) -> None:
        self.guard.release(reminder_id, parse_trigger_type(trigger_type))

    @property
    def in_flight_count(self) -> int:
        return len(self.guard)

    async def aclose(self) -> None:
        """Cancel pending call polls/retries and drop reservations."""
        await self.tracker.aclose()
        self.guard.clear()


def build_reminder_engine(
    session_factory: Optional[Callable[[], Session]] = None,
    push: Optional[PushChannel] = None
) -> ReminderEngine:
    """Build the process-wide engine with provider channels from settings."""
    session_factory = session_factory or database.SessionLocal
    voice = VoiceChannel()
    return ReminderEngine(
        session_factory=session_factory,
        voice=voice,
        email=EmailChannel(),
        push=push or PushChannel(),
        tracker=CallStatusTracker(voice, session_factory)
    )
