"""
Wall-clock reconciliation of a session snapshot.

Pure functions only: no I/O, no logging, no clock reads. Callers pass
``now`` explicitly and validate snapshots beforehand.
"""

import math
from dataclasses import dataclass

from stepkeeper.session.models import TrainingSessionSnapshot


@dataclass(frozen=True)
class Reconciliation:
    remaining_ms: int
    should_advance: bool


def elapsed_in_step(snapshot: TrainingSessionSnapshot, now: int) -> int:
    """Active (unpaused) time spent in the current step, never negative."""
    return max(0, now - snapshot.step_start_time - snapshot.paused_duration_ms)


def reconcile(
    snapshot: TrainingSessionSnapshot, step_duration_ms: int, now: int
) -> Reconciliation:
    """
    Compute the remaining time in the snapshot's current step at ``now``.

    Paused time is excluded from elapsed time, so pausing never consumes the
    step budget.
    """
    elapsed = now - snapshot.step_start_time - snapshot.paused_duration_ms
    remaining_ms = max(0, step_duration_ms - elapsed)
    return Reconciliation(remaining_ms=remaining_ms, should_advance=remaining_ms == 0)


def step_deadline(snapshot: TrainingSessionSnapshot, step_duration_ms: int) -> int:
    """Wall-clock instant at which the current step runs out, absent further pauses."""
    return snapshot.step_start_time + snapshot.paused_duration_ms + step_duration_ms


def should_show_next_up(remaining_ms: int, lead_ms: int) -> bool:
    """True inside the warning window before a step ends."""
    return 0 < remaining_ms <= lead_ms


def format_remaining(ms: int) -> str:
    """Format a countdown as MM:SS, rounding partial seconds up."""
    total_seconds = math.ceil(max(0, ms) / 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"
