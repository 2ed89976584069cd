"""In-flight reservations for (reminder, trigger type) pairs.

Reservations live in process memory only and are lost on restart. A
reminder that was not yet marked notified is simply picked up again on
the next tick.
"""

import asyncio
from typing import Dict, Optional, Tuple

from database import TriggerType

ReservationKey = Tuple[str, TriggerType]


class InFlightGuard:
    """Prevents the same reminder+trigger from being processed twice at once.

    All methods are synchronous and run between await points, so the
    check-and-set in reserve() cannot interleave with another coroutine.
    """

    def __init__(self):
        self._reserved: Dict[ReservationKey, bool] = {}
        self._release_handles: Dict[ReservationKey, asyncio.TimerHandle] = {}

    @staticmethod
    def key(reminder_id: str, trigger_type: TriggerType) -> ReservationKey:
        return (str(reminder_id), TriggerType(trigger_type))

    def reserve(self, reminder_id: str, trigger_type: TriggerType) -> bool:
        """Reserve the pair. Returns False if it is already reserved."""
        key = self.key(reminder_id, trigger_type)
        if key in self._reserved:
            return False
        self._reserved[key] = True
        return True

    def release(self, reminder_id: str, trigger_type: TriggerType) -> None:
        """Drop the reservation immediately."""
        key = self.key(reminder_id, trigger_type)
        self._reserved.pop(key, None)
        handle = self._release_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def release_later(self, reminder_id: str, trigger_type: TriggerType, delay: float) -> None:
        """Keep the reservation for delay seconds, then drop it."""
        key = self.key(reminder_id, trigger_type)
        if key not in self._reserved:
            return

        previous = self._release_handles.pop(key, None)
        if previous is not None:
            previous.cancel()

        loop = asyncio.get_running_loop()
        self._release_handles[key] = loop.call_later(delay, self._expire, key)

    def _expire(self, key: ReservationKey) -> None:
        self._release_handles.pop(key, None)
        self._reserved.pop(key, None)

    def is_reserved(self, reminder_id: str, trigger_type: TriggerType) -> bool:
        return self.key(reminder_id, trigger_type) in self._reserved

    def clear(self) -> None:
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        self._reserved.clear()

    def __len__(self) -> int:
        return len(self._reserved)

    def __contains__(self, key: Optional[ReservationKey]) -> bool:
        return key in self._reserved
