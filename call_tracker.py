"""Voice call state machine for reminders.

    not_called -> calling -> {completed, failed, busy, no_answer, cancelled}

A call is dispatched, then its outcome arrives either through the provider's
status webhook or through a delayed poll, whichever comes first. Non-completed
outcomes schedule one more attempt after CALL_RETRY_DELAY while call_attempts
is below MAX_CALL_ATTEMPTS. Results for a call reference that is no longer the
reminder's active_call_reference are ignored.
"""

import asyncio
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

import crud
from channels import (
    ChannelError, ReminderNotification, VoiceChannel, build_call_message,
)
from config import MAX_CALL_ATTEMPTS, settings
from database import CallStatusEnum, TriggerType
from logger_config import setup_logger

logger = setup_logger(__name__, 'engine.log')

# Provider statuses reported while a call is still in progress
IN_PROGRESS_STATUSES = {"queued", "initiated", "ringing", "in-progress"}

POLL = "poll"
RETRY = "retry"


def classify_call_status(status: str, duration: int) -> Optional[CallStatusEnum]:
    """Map a provider status to a terminal CallStatusEnum.

    Returns None while the call is still in progress.
    """
    if not status:
        logger.warning("Call status missing from provider payload, recording as failed")
        return CallStatusEnum.FAILED

    status = status.lower()
    if status in IN_PROGRESS_STATUSES:
        return None
    if status == "completed":
        return CallStatusEnum.COMPLETED if duration > 0 else CallStatusEnum.NO_ANSWER
    if status == "no-answer":
        return CallStatusEnum.NO_ANSWER
    if status == "busy":
        return CallStatusEnum.BUSY
    if status == "canceled":
        return CallStatusEnum.CANCELLED
    return CallStatusEnum.FAILED


class CallStatusTracker:
    """Dispatches reminder calls and reacts to their outcomes."""

    def __init__(
        self,
        voice: VoiceChannel,
        session_factory: Callable[[], Session],
        status_callback_url: str = None,
        poll_delay: float = None,
        retry_delay: float = None,
        max_attempts: int = MAX_CALL_ATTEMPTS
    ):
        self.voice = voice
        self.session_factory = session_factory
        self.status_callback_url = status_callback_url or (
            f"{settings.BASE_URL.rstrip('/')}/api/webhooks/twilio/call-status"
        )
        self.poll_delay = settings.CALL_STATUS_POLL_DELAY if poll_delay is None else poll_delay
        self.retry_delay = settings.CALL_RETRY_DELAY if retry_delay is None else retry_delay
        self.max_attempts = max_attempts
        self._tasks: Dict[asyncio.Task, str] = {}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_call(
        self,
        reminder_id: str,
        notification: Optional[ReminderNotification] = None
    ) -> Optional[str]:
        """Place one call attempt for the reminder.

        Skips silently when the owner has no provisioned calling number or
        when the attempt limit is reached.

        Returns:
            Optional[str]: The new call reference, or None if no call was placed
        """
        db = self.session_factory()
        try:
            reminder = crud.get_reminder(db, reminder_id, include_deleted=True)
            if not reminder:
                logger.error(f"Reminder {reminder_id} not found for call")
                return None

            owner = reminder.owner
            if not owner or not owner.calling_number:
                logger.debug(f"No calling number for owner of reminder {reminder_id}, skipping call")
                return None

            if reminder.call_attempts >= self.max_attempts:
                logger.info(
                    f"Max call attempts ({self.max_attempts}) reached for reminder {reminder_id}. "
                    f"No more attempts."
                )
                return None

            if notification is None:
                trigger = TriggerType.TIME if reminder.trigger_time is not None else TriggerType.LOCATION
                notification = ReminderNotification.from_reminder(reminder, trigger)

            to_number = owner.phone_number
            from_number = owner.calling_number
            reminder = crud.begin_call_attempt(db, reminder_id)
            attempt = reminder.call_attempts
        finally:
            db.close()

        logger.info(f"Calling {to_number} for reminder {reminder_id} (attempt {attempt}/{self.max_attempts})")

        try:
            call_reference = await self.voice.place_call(
                to=to_number,
                from_=from_number,
                message=build_call_message(notification),
                status_callback_url=self.status_callback_url
            )
        except Exception as e:
            logger.error(
                f"Call placement failed for reminder {reminder_id}: {e}",
                exc_info=not isinstance(e, ChannelError)
            )
            self._record_status(reminder_id, CallStatusEnum.FAILED)
            if attempt < self.max_attempts:
                self._schedule(self._retry_after(reminder_id, None, self.retry_delay), RETRY)
            return None

        db = self.session_factory()
        try:
            crud.set_active_call_reference(db, reminder_id, call_reference)
        finally:
            db.close()

        logger.info(f"Reminder call initiated for reminder {reminder_id}. Call SID: {call_reference}")
        self._schedule(self._poll_after(reminder_id, call_reference, self.poll_delay), POLL)
        return call_reference

    # ------------------------------------------------------------------
    # Outcome handling
    # ------------------------------------------------------------------

    async def handle_status(
        self,
        call_reference: str,
        status: str,
        duration: int = 0,
        reminder_id: Optional[str] = None
    ) -> Optional[CallStatusEnum]:
        """Apply a call outcome from the webhook or from a poll.

        Args:
            call_reference: Provider call reference the outcome belongs to
            status: Provider status string (completed, no-answer, busy, ...)
            duration: Call duration in seconds
            reminder_id: Known reminder (poll path); looked up by reference otherwise

        Returns:
            Optional[CallStatusEnum]: New status, or None if the outcome was ignored
        """
        db = self.session_factory()
        try:
            if reminder_id:
                reminder = crud.get_reminder(db, reminder_id, include_deleted=True)
            else:
                reminder = crud.get_reminder_by_call_reference(db, call_reference)

            if not reminder or not call_reference or reminder.active_call_reference != call_reference:
                logger.info(f"Ignoring status '{status}' for inactive call {call_reference}")
                return None

            if reminder.call_status != CallStatusEnum.CALLING:
                logger.debug(f"Call {call_reference} already resolved as {reminder.call_status.value}")
                return None

            new_status = classify_call_status(status, duration)
            if new_status is None:
                logger.debug(f"Call {call_reference} still in progress ({status})")
                return None

            crud.set_call_status(db, reminder.id, new_status)
            reminder_id = reminder.id
            attempts = reminder.call_attempts
        finally:
            db.close()

        if new_status == CallStatusEnum.COMPLETED:
            logger.info(f"Call completed successfully for reminder {reminder_id}")
        elif attempts < self.max_attempts:
            logger.info(
                f"Call {new_status.value} for reminder {reminder_id}. "
                f"Retrying in {self.retry_delay}s (attempt {attempts + 1}/{self.max_attempts})"
            )
            self._schedule(self._retry_after(reminder_id, call_reference, self.retry_delay), RETRY)
        else:
            logger.info(
                f"Call {new_status.value} for reminder {reminder_id} after {attempts} attempt(s). "
                f"Email notification already sent."
            )
        return new_status

    # ------------------------------------------------------------------
    # Delayed tasks
    # ------------------------------------------------------------------

    def _is_current(self, reminder_id: str, call_reference: Optional[str], awaiting_outcome: bool) -> bool:
        """True if call_reference is still the reminder's active call.

        awaiting_outcome selects whether the call must still be CALLING
        (poll) or already resolved (retry).
        """
        db = self.session_factory()
        try:
            reminder = crud.get_reminder(db, reminder_id, include_deleted=True)
            if reminder is None or reminder.active_call_reference != call_reference:
                return False
            return (reminder.call_status == CallStatusEnum.CALLING) == awaiting_outcome
        finally:
            db.close()

    async def _poll_after(self, reminder_id: str, call_reference: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            if not self._is_current(reminder_id, call_reference, awaiting_outcome=True):
                logger.debug(f"Skipping status poll for superseded call {call_reference}")
                return
            result = await self.voice.get_call_status(call_reference)
            await self.handle_status(call_reference, result.status, result.duration, reminder_id=reminder_id)
        except Exception as e:
            logger.error(f"Error checking call status for reminder {reminder_id}: {e}", exc_info=True)

    async def _retry_after(self, reminder_id: str, call_reference: Optional[str], delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            if not self._is_current(reminder_id, call_reference, awaiting_outcome=False):
                logger.info(f"Skipping retry for reminder {reminder_id}: call state changed")
                return
            await self.dispatch_call(reminder_id)
        except Exception as e:
            logger.error(f"Error retrying call for reminder {reminder_id}: {e}", exc_info=True)

    def _record_status(self, reminder_id: str, status: CallStatusEnum) -> None:
        db = self.session_factory()
        try:
            crud.set_call_status(db, reminder_id, status)
        finally:
            db.close()

    def _schedule(self, coro, kind: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks[task] = kind
        task.add_done_callback(lambda t: self._tasks.pop(t, None))
        return task

    def pending_tasks(self, kind: Optional[str] = None) -> int:
        """Number of scheduled polls/retries not yet finished."""
        return sum(1 for k in self._tasks.values() if kind is None or k == kind)

    async def wait_idle(self, kind: Optional[str] = None) -> None:
        """Await scheduled tasks (of one kind) until none remain."""
        while True:
            tasks = [t for t, k in self._tasks.items() if kind is None or k == kind]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel all scheduled polls and retries."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
