"""Reminder trigger evaluation.

Two independent predicates decide whether a reminder should fire now:
- time: trigger_time set, due, not yet time-notified, not deleted
- location: coordinates set, not yet location-notified, not deleted, and
  the owner's last reported location within PROXIMITY_THRESHOLD_KM

The evaluator only selects candidates. It never marks anything notified.
"""

from datetime import datetime
from typing import List, Mapping, Optional

from sqlalchemy.orm import Session

import crud
from config import PROXIMITY_THRESHOLD_KM
from database import Reminder, as_utc, utcnow
from geo import is_within_proximity


class TriggerEvaluator:
    """Selects reminders whose time or location trigger matches."""

    def __init__(self, threshold_km: float = PROXIMITY_THRESHOLD_KM):
        self.threshold_km = threshold_km

    @staticmethod
    def is_time_due(reminder: Reminder, now: Optional[datetime] = None) -> bool:
        if reminder.trigger_time is None or reminder.time_notified or reminder.is_deleted:
            return False
        return as_utc(reminder.trigger_time) <= (as_utc(now) or utcnow())

    def is_near(self, reminder: Reminder, current_location: Optional[Mapping[str, float]]) -> bool:
        """Location predicate for one reminder against a reported location."""
        if reminder.location_notified or reminder.is_deleted:
            return False
        target = reminder.coordinates
        if target is None or not current_location:
            return False
        if current_location.get("latitude") is None or current_location.get("longitude") is None:
            return False
        return is_within_proximity(current_location, target, self.threshold_km)

    def time_candidates(self, db: Session, now: Optional[datetime] = None) -> List[Reminder]:
        """Reminders whose time trigger is due, in store order."""
        now = as_utc(now) or utcnow()
        return [r for r in crud.get_due_time_reminders(db, now) if self.is_time_due(r, now)]

    def location_candidates(
        self,
        db: Session,
        user_id: Optional[str] = None,
        current_location: Optional[Mapping[str, float]] = None
    ) -> List[Reminder]:
        """Reminders whose owner is within range of the reminder's coordinates.

        Args:
            db: Database session
            user_id: Restrict to one owner
            current_location: Location to test against; defaults to each
                owner's most recently reported location

        Returns:
            List[Reminder]: Matching reminders in store order
        """
        candidates = []
        for reminder in crud.get_location_reminders(db, user_id):
            location = current_location
            if location is None and reminder.owner is not None:
                location = reminder.owner.current_location
            if self.is_near(reminder, location):
                candidates.append(reminder)
        return candidates
