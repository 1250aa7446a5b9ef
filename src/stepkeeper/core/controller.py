"""
Session Controller: owns a running training session and keeps it correct
across process suspension.

While the app is active the controller's in-memory timer is authoritative.
When the app leaves the foreground it persists a snapshot and arms reminders
for the upcoming step transition; when it comes back it loads the snapshot,
reconciles it against the wall clock, advances through any steps that ran out
while suspended, and disarms reminders that are no longer relevant.

Transitions never await I/O. Store and scheduler calls are queued on an
EffectRunner and their failures only ever degrade durability.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set, Tuple

from stepkeeper.clock import Clock, SystemClock
from stepkeeper.config import CONFIG, RecoverySettings
from stepkeeper.core.effects import EffectRunner
from stepkeeper.core.reminders import (
    ReminderScheduler,
    build_next_up_payload,
    build_step_complete_payload,
)
from stepkeeper.errors import ListenerError, ReconciliationError
from stepkeeper.logger import get_logger
from stepkeeper.session.lifecycle import LifecycleObserver
from stepkeeper.session.models import (
    LifecycleState,
    ReminderKind,
    SessionSummary,
    Step,
    StepAdvance,
    StepResult,
    TrainingSessionSnapshot,
    validate_snapshot,
    validate_steps,
)
from stepkeeper.session.recovery import (
    elapsed_in_step,
    format_remaining,
    reconcile,
    should_show_next_up,
    step_deadline,
)
from stepkeeper.session.snapshot_store import SnapshotStore

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    BACKGROUNDED = "backgrounded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


LIVE_STATES = (SessionState.RUNNING, SessionState.PAUSED, SessionState.BACKGROUNDED)


@dataclass(frozen=True)
class SessionProgress:
    step_index: int
    step_count: int
    remaining_ms: int
    remaining_label: str
    step_fraction: float
    total_fraction: float
    show_next_up: bool
    next_step: Optional[Step]


class SessionController:
    """
    Drives a step-based training session through its lifecycle.

    Collaborators are injected so platform adapters and test doubles can be
    swapped freely; the controller subscribes to the observer on construction.
    """

    def __init__(
        self,
        store: SnapshotStore,
        scheduler: ReminderScheduler,
        observer: LifecycleObserver,
        clock: Optional[Clock] = None,
        settings: Optional[RecoverySettings] = None,
        effects: Optional[EffectRunner] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.observer = observer
        self.clock = clock or SystemClock()
        self.settings = settings or CONFIG
        self._effects = effects or EffectRunner(
            max_retries=self.settings.effect_max_retries,
            backoff_seconds=self.settings.effect_backoff_seconds,
        )

        self._state = SessionState.IDLE
        self._steps: List[Step] = []
        self._snapshot: Optional[TrainingSessionSnapshot] = None
        self._paused_at: Optional[int] = None
        self._paused_in_background = False
        self._armed: List[str] = []
        self._generation = 0
        self._tombstones: Set[Tuple[str, int, int]] = set()
        self._saved_identities: Set[Tuple[str, int, int]] = set()
        self._last_saved: Optional[Tuple[str, int, int]] = None

        self._step_listeners: List[Callable[[StepAdvance], None]] = []
        self._complete_listeners: List[Callable[[SessionSummary], None]] = []

        self._ticking = False
        self._ticker: Optional[asyncio.Task] = None

        self._unsubscribe_lifecycle = observer.subscribe(self._on_lifecycle_change)

    # -- Consumer API --------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def steps(self) -> List[Step]:
        return list(self._steps)

    @property
    def snapshot(self) -> Optional[TrainingSessionSnapshot]:
        """A copy of the in-memory snapshot (the controller keeps ownership)."""
        return self._snapshot.model_copy(deep=True) if self._snapshot else None

    @property
    def armed_reminders(self) -> List[str]:
        return list(self._armed)

    def start_session(self, program_id: str, steps: Sequence[Step]) -> None:
        """
        Start a fresh session at step 0, replacing any previous one.

        Raises:
            ValueError: If the program's steps are invalid.
        """
        if errors := validate_steps(steps):
            raise ValueError(f"Invalid program '{program_id}': {'; '.join(errors)}")

        if self._state in LIVE_STATES:
            logger.warning(
                f"Starting '{program_id}' replaces live session "
                f"'{self._snapshot.program_id if self._snapshot else '?'}'"
            )

        now = self.clock.now_ms()
        self._generation += 1
        self._tombstones.clear()
        self._saved_identities.clear()
        self._last_saved = None
        self._steps = list(steps)
        self._snapshot = TrainingSessionSnapshot(
            program_id=program_id,
            current_step_index=0,
            remaining_ms=self._steps[0].duration_ms,
            total_elapsed_ms=0,
            step_start_time=now,
            paused_duration_ms=0,
            step_results=[],
        )
        self._paused_at = None
        self._paused_in_background = False
        self._state = SessionState.RUNNING

        # Only one snapshot may exist: drop whatever an earlier session left.
        self._submit_clear()
        self._disarm_reminders(cancel_all=True)
        logger.info(f"Session started: {program_id} ({len(self._steps)} steps)")

    def pause(self) -> bool:
        """Stop the clock. Returns False when the session is not running."""
        if self._state is not SessionState.RUNNING:
            logger.debug(f"pause() ignored in state {self._state.value}")
            return False

        self.tick()
        if self._state is not SessionState.RUNNING:
            return False

        self._paused_at = self.clock.now_ms()
        self._state = SessionState.PAUSED
        logger.info(f"Session paused at step {self._snapshot.current_step_index}")
        return True

    def resume(self) -> bool:
        """Restart the clock after pause(). Returns False when not paused."""
        if self._state is not SessionState.PAUSED:
            logger.debug(f"resume() ignored in state {self._state.value}")
            return False

        now = self.clock.now_ms()
        self._fold_pause(now)
        self._state = SessionState.RUNNING
        self._refresh_remaining(now)
        logger.info(f"Session resumed at step {self._snapshot.current_step_index}")
        return True

    def cancel(self) -> None:
        """
        Abandon the session from any state.

        In-memory state is dropped immediately; clearing the stored snapshot
        and the reminders happens in the background. Saved identities are
        remembered so a clear that failed cannot bring the session back in
        this process, and if the clear fails the stored record is overwritten
        with a cancelled marker that later processes refuse to recover.
        """
        cancelled = self._snapshot.model_copy(deep=True) if self._snapshot else None
        if self._snapshot is not None:
            self._tombstones.add(_identity(self._snapshot))
        self._tombstones.update(self._saved_identities)
        self._saved_identities.clear()
        self._last_saved = None

        self._generation += 1
        generation = self._generation
        self._state = SessionState.CANCELLED
        self._snapshot = None
        self._steps = []
        self._paused_at = None
        self._paused_in_background = False

        self._effects.submit(
            "clear snapshot",
            self.store.clear,
            on_error=lambda error: self._mark_cancelled(generation, cancelled),
        )
        self._disarm_reminders(cancel_all=True)
        self.stop_ticking()
        logger.info("Session cancelled")

    def skip_step(self) -> bool:
        """Finish the current step early, recording it as skipped."""
        if self._state is not SessionState.RUNNING:
            logger.debug(f"skip_step() ignored in state {self._state.value}")
            return False

        now = self.clock.now_ms()
        self.tick()
        if self._state is not SessionState.RUNNING:
            return False
        self._finish_step(
            completed_at=now,
            elapsed_ms=elapsed_in_step(self._snapshot, now),
            skipped=True,
            recovered=False,
        )
        return True

    def tick(self) -> None:
        """Advance the in-memory timer to the current wall-clock time."""
        if self._state is not SessionState.RUNNING:
            return
        self._advance_through(self.clock.now_ms(), recovered=False)

    def get_current_step_index(self) -> int:
        return self._snapshot.current_step_index if self._snapshot else 0

    def get_remaining_ms(self) -> int:
        if self._snapshot is None or self._state is SessionState.COMPLETED:
            return 0
        if self._state is SessionState.PAUSED:
            return self._remaining_at(self._paused_at)
        if self._state is SessionState.RUNNING:
            return self._remaining_at(self.clock.now_ms())
        return self._snapshot.remaining_ms

    def progress(self) -> Optional[SessionProgress]:
        """Progress figures for the UI, or None without a session."""
        if self._snapshot is None or not self._steps:
            return None

        index = self._snapshot.current_step_index
        step = self._steps[index]
        remaining = self.get_remaining_ms()
        step_fraction = min(1.0, max(0.0, (step.duration_ms - remaining) / step.duration_ms))
        if self._state is SessionState.COMPLETED:
            step_fraction = 1.0
        next_step = self._steps[index + 1] if index + 1 < len(self._steps) else None
        return SessionProgress(
            step_index=index,
            step_count=len(self._steps),
            remaining_ms=remaining,
            remaining_label=format_remaining(remaining),
            step_fraction=step_fraction,
            total_fraction=(index + step_fraction) / len(self._steps),
            show_next_up=next_step is not None
            and should_show_next_up(remaining, self.settings.next_up_lead_ms),
            next_step=next_step,
        )

    def on_step_advance(self, callback: Callable[[StepAdvance], None]) -> Callable[[], None]:
        self._step_listeners.append(callback)
        return lambda: _discard(self._step_listeners, callback)

    def on_session_complete(
        self, callback: Callable[[SessionSummary], None]
    ) -> Callable[[], None]:
        self._complete_listeners.append(callback)
        return lambda: _discard(self._complete_listeners, callback)

    async def recover_session(self, program_id: str, steps: Sequence[Step]) -> bool:
        """
        Resume a session persisted by an earlier process (cold start).

        Returns:
            True if a trustworthy snapshot was found and the session resumed.
        """
        if self._state in LIVE_STATES:
            logger.warning("recover_session() ignored: a session is already live")
            return False
        if errors := validate_steps(steps):
            raise ValueError(f"Invalid program '{program_id}': {'; '.join(errors)}")

        outcome = await self._load_now()
        if isinstance(outcome, ReconciliationError):
            self._discard_snapshot(str(outcome))
            return False
        if isinstance(outcome, BaseException):
            logger.error(f"Could not load snapshot for recovery: {outcome}")
            return False
        if outcome is None:
            logger.info("No persisted session to recover")
            return False
        if _identity(outcome) in self._tombstones or outcome.cancelled_at is not None:
            logger.warning("Ignoring snapshot of a cancelled session")
            self._submit_clear()
            return False

        now = self.clock.now_ms()
        try:
            validate_snapshot(
                outcome,
                steps,
                program_id=program_id,
                now=now,
                stale_after_ms=self.settings.stale_after_ms,
            )
        except ReconciliationError as e:
            self._discard_snapshot(str(e))
            return False

        self._generation += 1
        self._steps = list(steps)
        self._snapshot = outcome
        self._last_saved = _identity(outcome)
        self._saved_identities = {self._last_saved}
        self._paused_at = None
        self._paused_in_background = False
        # Reminder ids from the previous process are unknown here.
        self._disarm_reminders(cancel_all=True)
        self._apply_recovery(now)
        logger.info(f"Recovered session {program_id} at step {self.get_current_step_index()}")
        return True

    async def drain(self) -> None:
        """Wait for queued store/scheduler work to finish."""
        await self._effects.drain()

    def start_ticking(self) -> None:
        """Run tick() every ``tick_interval_seconds`` on the current event loop."""
        if self._ticking:
            return
        self._ticking = True
        self._ticker = asyncio.get_running_loop().create_task(self._run_loop())

    def stop_ticking(self) -> None:
        self._ticking = False
        if self._ticker:
            self._ticker.cancel()
            self._ticker = None

    async def close(self) -> None:
        """Detach from the observer and stop background work."""
        self._unsubscribe_lifecycle()
        self.stop_ticking()
        await self._effects.drain()
        await self._effects.close()

    # -- Lifecycle -----------------------------------------------------------

    def _on_lifecycle_change(self, state: LifecycleState) -> None:
        if state is LifecycleState.ACTIVE:
            if self._state is SessionState.BACKGROUNDED:
                self._begin_restore()
        elif self._state in (SessionState.RUNNING, SessionState.PAUSED):
            self._enter_background()

    def _enter_background(self) -> None:
        self.tick()
        if self._state not in (SessionState.RUNNING, SessionState.PAUSED):
            return

        now = self.clock.now_ms()
        was_paused = self._state is SessionState.PAUSED
        if was_paused:
            self._fold_pause(now)
        else:
            self._refresh_remaining(now)

        self._paused_in_background = was_paused
        self._snapshot.backgrounded_at = now
        self._state = SessionState.BACKGROUNDED
        self._generation += 1

        # Save first: the process may be killed at any moment from here on.
        saved = self._snapshot.model_copy(deep=True)
        identity = _identity(saved)
        self._saved_identities.add(identity)
        self._last_saved = None
        self._effects.submit(
            "save snapshot",
            lambda: self.store.save(saved),
            on_result=lambda _: self._record_saved(identity),
        )

        self._disarm_reminders()
        if not was_paused:
            self._arm_reminders(now)
        logger.info(
            f"Session backgrounded at step {self._snapshot.current_step_index} "
            f"with {self._snapshot.remaining_ms}ms left"
        )

    def _begin_restore(self) -> None:
        self._generation += 1
        generation = self._generation
        self._effects.submit(
            "load snapshot",
            self.store.load,
            on_result=lambda loaded: self._finish_restore(generation, loaded),
            on_error=lambda error: self._restore_failed(generation, error),
        )

    def _finish_restore(
        self, generation: int, loaded: Optional[TrainingSessionSnapshot]
    ) -> None:
        if generation != self._generation or self._state is not SessionState.BACKGROUNDED:
            logger.debug("Stale restore ignored")
            return

        snapshot = loaded
        if snapshot is None:
            logger.warning("No persisted snapshot found on resume; using in-memory state")
            snapshot = self._snapshot.model_copy(deep=True)
        elif not self._is_current_save(snapshot):
            # The latest save never landed; the stored record is older than memory.
            logger.warning("Persisted snapshot is out of date; using in-memory state")
            snapshot = self._snapshot.model_copy(deep=True)

        now = self.clock.now_ms()
        try:
            validate_snapshot(
                snapshot,
                self._steps,
                program_id=self._snapshot.program_id,
                now=now,
                stale_after_ms=self.settings.stale_after_ms,
            )
        except ReconciliationError as e:
            self._discard_snapshot(str(e))
            return

        self._snapshot = snapshot
        self._disarm_reminders()
        self._apply_recovery(now)

    def _restore_failed(self, generation: int, error: BaseException) -> None:
        if isinstance(error, ReconciliationError):
            if generation == self._generation and self._state is SessionState.BACKGROUNDED:
                self._discard_snapshot(str(error))
            return
        logger.warning(f"Snapshot load failed ({error}); falling back to in-memory state")
        self._finish_restore(generation, None)

    def _apply_recovery(self, now: int) -> None:
        snapshot = self._snapshot
        backgrounded_at = snapshot.backgrounded_at if snapshot.backgrounded_at is not None else now
        snapshot.backgrounded_at = None

        if self._paused_in_background:
            self._paused_in_background = False
            # Still paused: the whole suspension counts as paused time.
            snapshot.paused_duration_ms += now - backgrounded_at
            self._paused_at = now
            self._state = SessionState.PAUSED
            self._refresh_remaining(now)
            logger.info(f"Session restored paused after {now - backgrounded_at}ms away")
            return

        self._state = SessionState.RUNNING
        logger.info(f"Session restored after {now - backgrounded_at}ms in background")
        self._advance_through(now, recovered=True)

    # -- Step progression ----------------------------------------------------

    def _advance_through(self, now: int, recovered: bool) -> None:
        """Move past every step whose time ran out by ``now``."""
        while self._state is SessionState.RUNNING:
            step = self._steps[self._snapshot.current_step_index]
            result = reconcile(self._snapshot, step.duration_ms, now)
            self._snapshot.remaining_ms = result.remaining_ms
            if not result.should_advance:
                return
            self._finish_step(
                completed_at=step_deadline(self._snapshot, step.duration_ms),
                elapsed_ms=step.duration_ms,
                skipped=False,
                recovered=recovered,
            )

    def _finish_step(
        self, completed_at: int, elapsed_ms: int, skipped: bool, recovered: bool
    ) -> None:
        snapshot = self._snapshot
        index = snapshot.current_step_index
        step = self._steps[index]
        result = StepResult.for_step(
            step, index, completed_at, elapsed_ms, skipped=skipped, recovered=recovered
        )
        snapshot.step_results.append(result)
        snapshot.total_elapsed_ms += result.metrics.elapsed_ms

        if index + 1 >= len(self._steps):
            snapshot.remaining_ms = 0
            self._complete(completed_at)
            return

        next_step = self._steps[index + 1]
        snapshot.current_step_index = index + 1
        # The next step begins where this one ended, so time that ran past the
        # boundary while suspended counts against the next step.
        snapshot.step_start_time = completed_at
        snapshot.paused_duration_ms = 0
        snapshot.remaining_ms = next_step.duration_ms
        logger.info(
            f"Advanced to step {index + 1}/{len(self._steps)}: {next_step.title}"
            + (" (recovered)" if recovered else "")
        )
        self._emit(
            self._step_listeners,
            StepAdvance(
                previous_index=index,
                current_index=index + 1,
                result=result,
                recovered=recovered,
            ),
        )

    def _complete(self, completed_at: int) -> None:
        snapshot = self._snapshot
        self._state = SessionState.COMPLETED
        self._generation += 1
        self._submit_clear()
        self._disarm_reminders()
        summary = SessionSummary(
            program_id=snapshot.program_id,
            total_elapsed_ms=snapshot.total_elapsed_ms,
            completed_at=completed_at,
            step_results=list(snapshot.step_results),
        )
        logger.info(
            f"Session complete: {snapshot.program_id} "
            f"({len(snapshot.step_results)} steps, {snapshot.total_elapsed_ms}ms)"
        )
        self._emit(self._complete_listeners, summary)

    # -- Reminders -----------------------------------------------------------

    def _arm_reminders(self, now: int) -> None:
        index = self._snapshot.current_step_index
        step = self._steps[index]
        next_step = self._steps[index + 1] if index + 1 < len(self._steps) else None
        deadline = step_deadline(self._snapshot, step.duration_ms)
        generation = self._generation

        if deadline > now:
            payload = build_step_complete_payload(step, index, next_step)
            self._effects.submit(
                f"schedule {ReminderKind.STEP_COMPLETE.value}",
                lambda: self.scheduler.schedule(ReminderKind.STEP_COMPLETE, payload, deadline),
                on_result=lambda rid: self._record_armed(generation, rid),
            )

        warn_at = deadline - self.settings.next_up_lead_ms
        if next_step is not None and warn_at > now:
            payload_next = build_next_up_payload(next_step, index + 1)
            self._effects.submit(
                f"schedule {ReminderKind.NEXT_UP_WARNING.value}",
                lambda: self.scheduler.schedule(
                    ReminderKind.NEXT_UP_WARNING, payload_next, warn_at
                ),
                on_result=lambda rid: self._record_armed(generation, rid),
            )

    def _record_armed(self, generation: int, reminder_id: str) -> None:
        if generation != self._generation:
            # The session moved on before the reminder was armed.
            self._submit_cancel(reminder_id)
            return
        self._armed.append(reminder_id)

    def _disarm_reminders(self, cancel_all: bool = False) -> None:
        armed, self._armed = self._armed, []
        for reminder_id in armed:
            self._submit_cancel(reminder_id)
        if cancel_all:
            self._effects.submit("cancel all reminders", self.scheduler.cancel_all)

    def _submit_cancel(self, reminder_id: str) -> None:
        self._effects.submit(
            f"cancel reminder {reminder_id}", lambda: self.scheduler.cancel(reminder_id)
        )

    # -- Internal ------------------------------------------------------------

    def _submit_clear(self) -> None:
        self._effects.submit("clear snapshot", self.store.clear)

    def _record_saved(self, identity: Tuple[str, int, int]) -> None:
        if identity in self._saved_identities:
            self._last_saved = identity

    def _is_current_save(self, snapshot: TrainingSessionSnapshot) -> bool:
        return (
            self._last_saved is not None
            and _identity(snapshot) == self._last_saved
            and snapshot.backgrounded_at == self._snapshot.backgrounded_at
        )

    def _mark_cancelled(
        self, generation: int, snapshot: Optional[TrainingSessionSnapshot]
    ) -> None:
        """Overwrite a record that could not be cleared so no process recovers it."""
        if snapshot is None or generation != self._generation:
            return
        snapshot.cancelled_at = self.clock.now_ms()
        logger.warning(
            f"Could not clear snapshot of cancelled session {snapshot.program_id}; "
            "marking it cancelled instead"
        )
        self._effects.submit("mark snapshot cancelled", lambda: self.store.save(snapshot))

    async def _load_now(self):
        """Load through the effect queue so earlier saves and clears land first."""
        future = asyncio.get_running_loop().create_future()

        def settle(value):
            if not future.done():
                future.set_result(value)

        self._effects.submit("load snapshot", self.store.load, on_result=settle, on_error=settle)
        return await future

    def _discard_snapshot(self, reason: str) -> None:
        logger.warning(f"Discarding untrustworthy snapshot ({reason}); starting fresh")
        self._generation += 1
        self._state = SessionState.IDLE
        self._snapshot = None
        self._steps = []
        self._paused_at = None
        self._paused_in_background = False
        self._submit_clear()
        self._disarm_reminders(cancel_all=True)

    def _fold_pause(self, now: int) -> None:
        if self._paused_at is not None:
            self._snapshot.paused_duration_ms += max(0, now - self._paused_at)
            self._paused_at = None

    def _refresh_remaining(self, now: int) -> None:
        self._snapshot.remaining_ms = self._remaining_at(now)

    def _remaining_at(self, now: int) -> int:
        step = self._steps[self._snapshot.current_step_index]
        return reconcile(self._snapshot, step.duration_ms, now).remaining_ms

    def _emit(self, listeners: list, event) -> None:
        for listener in list(listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"{ListenerError(listener, type(event).__name__, e)}")

    async def _run_loop(self):
        """Tick loop; stops once the session is no longer live."""
        while self._ticking:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Tick error: {e}")
            if self._state not in LIVE_STATES:
                self._ticking = False
                break
            try:
                await asyncio.sleep(self.settings.tick_interval_seconds)
            except asyncio.CancelledError:
                break


def _identity(snapshot: TrainingSessionSnapshot) -> Tuple[str, int, int]:
    return (snapshot.program_id, snapshot.current_step_index, snapshot.step_start_time)


def _discard(listeners: list, callback) -> None:
    try:
        listeners.remove(callback)
    except ValueError:
        pass
