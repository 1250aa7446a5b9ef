"""Shared pytest fixtures and configuration."""

import pytest

from stepkeeper.clock import ManualClock
from stepkeeper.config import RecoverySettings
from stepkeeper.core.controller import SessionController
from stepkeeper.core.reminders import InMemoryReminderScheduler
from stepkeeper.session.lifecycle import LifecycleObserver
from stepkeeper.session.models import Step, StepResult, TrainingSessionSnapshot
from stepkeeper.session.snapshot_store import InMemorySnapshotStore

T0 = 1_700_000_000_000


@pytest.fixture
def clock():
    """A manual wall clock starting at T0."""
    return ManualClock(start_ms=T0)


@pytest.fixture
def settings(tmp_path):
    """Settings with no retry backoff so failure tests run instantly."""
    return RecoverySettings(
        data_dir=tmp_path,
        effect_backoff_seconds=0.0,
        effect_max_retries=3,
        next_up_lead_ms=5_000,
    )


@pytest.fixture
def store():
    return InMemorySnapshotStore()


@pytest.fixture
def scheduler():
    return InMemoryReminderScheduler()


@pytest.fixture
def observer():
    return LifecycleObserver()


@pytest.fixture
def steps():
    """Exercise (60s), rest (30s), exercise (45s)."""
    return [
        Step(id="warmup", title="Jumping Jacks", duration_ms=60_000, kind="exercise"),
        Step(id="rest-1", title="Rest", duration_ms=30_000, kind="rest", tip="Hydrate"),
        Step(
            id="pushups",
            title="Push-ups",
            duration_ms=45_000,
            kind="exercise",
            target_reps=15,
        ),
    ]


@pytest.fixture
def controller(store, scheduler, observer, clock, settings):
    return SessionController(
        store=store,
        scheduler=scheduler,
        observer=observer,
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def make_snapshot(steps):
    """Build a snapshot at a given step, with consistent step results."""

    def _make(
        index: int = 0,
        step_start_time: int = T0,
        backgrounded_at=None,
        paused_duration_ms: int = 0,
        remaining_ms=None,
        program_id: str = "hiit-1",
    ) -> TrainingSessionSnapshot:
        results = [
            StepResult.for_step(steps[i], i, T0 + 1_000 * (i + 1), steps[i].duration_ms)
            for i in range(index)
        ]
        return TrainingSessionSnapshot(
            program_id=program_id,
            current_step_index=index,
            remaining_ms=steps[index].duration_ms if remaining_ms is None else remaining_ms,
            total_elapsed_ms=sum(r.metrics.elapsed_ms for r in results),
            step_start_time=step_start_time,
            paused_duration_ms=paused_duration_ms,
            step_results=results,
            backgrounded_at=backgrounded_at,
        )

    return _make
