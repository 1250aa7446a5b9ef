"""
Deferred one-shot reminders for upcoming step transitions.

The scheduler only arms and disarms reminders; delivering them is the job of
an external notification service. Ids are unique per scheduler instance,
cancelling an unknown id is a no-op, and cancel_all is idempotent.
"""

import itertools
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from stepkeeper.logger import get_logger
from stepkeeper.session.models import ReminderKind, ReminderPayload, ScheduledReminder, Step

logger = get_logger(__name__)


def build_step_complete_payload(
    step: Step, step_index: int, next_step: Optional[Step]
) -> ReminderPayload:
    if next_step is None:
        body = f"{step.title} done. That was the last step!"
    else:
        body = f"Time to move to the next step: {next_step.title}"
    return ReminderPayload(
        step_index=step_index, step_id=step.id, title="Step Complete!", body=body
    )


def build_next_up_payload(next_step: Step, next_index: int) -> ReminderPayload:
    return ReminderPayload(
        step_index=next_index,
        step_id=next_step.id,
        title="Get Ready!",
        body=f"Next up: {next_step.title}",
    )


class ReminderScheduler(ABC):
    """Abstract reminder scheduler; failures raise SchedulerError."""

    @abstractmethod
    async def schedule(
        self, kind: ReminderKind, payload: ReminderPayload, fire_at: int
    ) -> str:
        """
        Arm a reminder.

        Args:
            kind: step_complete or next_up_warning
            payload: What the notification should say
            fire_at: Absolute epoch-ms instant to fire at

        Returns:
            The new reminder id.
        """
        pass

    @abstractmethod
    async def cancel(self, reminder_id: str) -> None:
        pass

    @abstractmethod
    async def cancel_all(self) -> None:
        pass


class InMemoryReminderScheduler(ReminderScheduler):
    """Registry-backed scheduler; stands in for the OS notification service."""

    def __init__(self):
        self._reminders: Dict[str, ScheduledReminder] = {}
        self._counter = itertools.count(1)

    async def schedule(
        self, kind: ReminderKind, payload: ReminderPayload, fire_at: int
    ) -> str:
        kind = ReminderKind(kind)
        reminder_id = f"{kind.value}-{next(self._counter)}-{uuid.uuid4().hex[:8]}"
        self._reminders[reminder_id] = ScheduledReminder(
            id=reminder_id, kind=kind, fire_at=fire_at, payload=payload
        )
        logger.info(
            f"Scheduled {kind.value} reminder {reminder_id} for step "
            f"{payload.step_index} at {fire_at}"
        )
        return reminder_id

    async def cancel(self, reminder_id: str) -> None:
        if self._reminders.pop(reminder_id, None) is not None:
            logger.info(f"Cancelled reminder: {reminder_id}")
        else:
            logger.debug(f"Cancel ignored for unknown reminder: {reminder_id}")

    async def cancel_all(self) -> None:
        count = len(self._reminders)
        self._reminders.clear()
        logger.info(f"Cancelled all reminders ({count})")

    def list_scheduled(self) -> List[ScheduledReminder]:
        return sorted(self._reminders.values(), key=lambda r: r.fire_at)

    def get(self, reminder_id: str) -> Optional[ScheduledReminder]:
        return self._reminders.get(reminder_id)

    @property
    def active_count(self) -> int:
        return len(self._reminders)
