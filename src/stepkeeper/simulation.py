"""
Offline session simulation.

Plays a program against a manual clock, optionally sending the app to the
background and back at given offsets, and records what the controller did.
Used by ``stepkeeper simulate`` and handy for reproducing recovery issues.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from stepkeeper.clock import ManualClock
from stepkeeper.config import CONFIG, RecoverySettings
from stepkeeper.core.controller import LIVE_STATES, SessionController
from stepkeeper.core.reminders import InMemoryReminderScheduler
from stepkeeper.logger import get_logger
from stepkeeper.session.lifecycle import LifecycleObserver
from stepkeeper.session.models import LifecycleState, ScheduledReminder, SessionSummary, Step
from stepkeeper.session.recovery import format_remaining
from stepkeeper.session.snapshot_store import InMemorySnapshotStore, SnapshotStore

logger = get_logger(__name__)


def load_program(path: Path) -> Tuple[str, List[Step]]:
    """
    Read a program file.

    Expected shape: {"id": "...", "steps": [{"id", "type", "title", "durationSec"}, ...]}
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    program_id = str(data.get("id") or Path(path).stem)
    steps = [Step.from_dict(entry) for entry in data.get("steps", [])]
    return program_id, steps


@dataclass
class SimulationReport:
    events: List[str] = field(default_factory=list)
    reminders: List[ScheduledReminder] = field(default_factory=list)
    summary: Optional[SessionSummary] = None
    final_state: str = ""

    def log(self, at_ms: int, message: str) -> None:
        self.events.append(f"[{format_remaining(at_ms)}] {message}")


async def run_simulation(
    program_id: str,
    steps: Sequence[Step],
    *,
    background_at_s: Optional[int] = None,
    resume_at_s: Optional[int] = None,
    tick_s: int = 1,
    settings: Optional[RecoverySettings] = None,
    store: Optional[SnapshotStore] = None,
) -> SimulationReport:
    """Run a whole session in simulated time and return what happened."""
    settings = settings or CONFIG
    clock = ManualClock(start_ms=0)
    observer = LifecycleObserver()
    scheduler = InMemoryReminderScheduler()
    controller = SessionController(
        store=store or InMemorySnapshotStore(),
        scheduler=scheduler,
        observer=observer,
        clock=clock,
        settings=settings,
    )
    report = SimulationReport()

    controller.on_step_advance(
        lambda e: report.log(
            clock.now_ms(),
            f"step {e.previous_index} -> {e.current_index}"
            + (" (recovered)" if e.recovered else ""),
        )
    )

    def completed(summary: SessionSummary) -> None:
        report.summary = summary
        report.log(clock.now_ms(), f"complete after {summary.total_elapsed_ms}ms")

    controller.on_session_complete(completed)

    controller.start_session(program_id, steps)
    report.log(0, f"start {program_id} ({len(steps)} steps)")

    limit_s = sum(step.duration_ms for step in steps) // 1000 + (resume_at_s or 0) + tick_s
    elapsed_s = 0
    while controller.state in LIVE_STATES and elapsed_s <= limit_s:
        if background_at_s is not None and elapsed_s == background_at_s:
            observer.notify(LifecycleState.BACKGROUNDED)
            await controller.drain()
            report.reminders = scheduler.list_scheduled()
            report.log(
                clock.now_ms(),
                f"backgrounded with {controller.get_remaining_ms()}ms left, "
                f"{len(report.reminders)} reminders armed",
            )
        if resume_at_s is not None and elapsed_s == resume_at_s:
            observer.notify(LifecycleState.ACTIVE)
            await controller.drain()
            report.log(
                clock.now_ms(),
                f"resumed at step {controller.get_current_step_index()} "
                f"with {controller.get_remaining_ms()}ms left",
            )

        controller.tick()
        clock.advance(tick_s * 1000)
        elapsed_s += tick_s

    await controller.close()
    report.final_state = controller.state.value
    logger.debug(f"Simulation finished in state {report.final_state}")
    return report
