"""
Data models for training sessions.

- Step: a single timed unit of a program (exercise or rest)
- StepResult: typed outcome of a finished step
- TrainingSessionSnapshot: the persisted record of an in-progress session
- ScheduledReminder: a deferred notification owned by a reminder scheduler
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stepkeeper.errors import ReconciliationError

StepKind = Literal["exercise", "rest"]


class LifecycleState(str, Enum):
    """Process lifecycle as reported by the OS."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUNDED = "backgrounded"


class ReminderKind(str, Enum):
    STEP_COMPLETE = "step_complete"
    NEXT_UP_WARNING = "next_up_warning"


@dataclass(frozen=True)
class Step:
    """A single timed unit within a training program."""

    id: str
    title: str
    duration_ms: int
    kind: StepKind = "exercise"
    description: Optional[str] = None
    target_reps: Optional[int] = None
    tip: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Step":
        """Build a step from a program file entry (``durationSec`` or ``duration_ms``)."""
        if "duration_ms" in data:
            duration_ms = int(data["duration_ms"])
        else:
            duration_ms = int(float(data.get("durationSec", 0)) * 1000)
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            duration_ms=duration_ms,
            kind=data.get("type") or data.get("kind") or "exercise",
            description=data.get("description"),
            target_reps=data.get("targetReps"),
            tip=data.get("tip"),
        )


def validate_steps(steps: Sequence[Step]) -> List[str]:
    """Return a list of problems with a program's steps (empty when valid)."""
    errors: List[str] = []
    if not steps:
        errors.append("Program has no steps")
        return errors

    seen = set()
    for index, step in enumerate(steps):
        if step.duration_ms <= 0:
            errors.append(
                f"Step {index + 1} ({step.title}) has invalid duration: {step.duration_ms}ms"
            )
        if step.kind not in ("exercise", "rest"):
            errors.append(f"Step {index + 1} ({step.title}) has unknown type: {step.kind}")
        if step.id in seen:
            errors.append(f"Step {index + 1} reuses id '{step.id}'")
        seen.add(step.id)
    return errors


class _RecordModel(BaseModel):
    """Base for persisted records: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ExerciseMetrics(_RecordModel):
    kind: Literal["exercise"] = "exercise"
    planned_ms: int = Field(ge=0)
    elapsed_ms: int = Field(ge=0)
    skipped: bool = False
    recovered: bool = False
    target_reps: Optional[int] = None


class RestMetrics(_RecordModel):
    kind: Literal["rest"] = "rest"
    planned_ms: int = Field(ge=0)
    elapsed_ms: int = Field(ge=0)
    skipped: bool = False
    recovered: bool = False


StepMetrics = Annotated[Union[ExerciseMetrics, RestMetrics], Field(discriminator="kind")]


class StepResult(_RecordModel):
    """Outcome of one completed step."""

    step_id: str
    step_index: int = Field(ge=0)
    completed_at: int
    metrics: StepMetrics

    @classmethod
    def for_step(
        cls,
        step: Step,
        step_index: int,
        completed_at: int,
        elapsed_ms: int,
        *,
        skipped: bool = False,
        recovered: bool = False,
    ) -> "StepResult":
        elapsed_ms = max(0, int(elapsed_ms))
        if step.kind == "rest":
            metrics = RestMetrics(
                planned_ms=step.duration_ms,
                elapsed_ms=elapsed_ms,
                skipped=skipped,
                recovered=recovered,
            )
        else:
            metrics = ExerciseMetrics(
                planned_ms=step.duration_ms,
                elapsed_ms=elapsed_ms,
                skipped=skipped,
                recovered=recovered,
                target_reps=step.target_reps,
            )
        return cls(
            step_id=step.id,
            step_index=step_index,
            completed_at=completed_at,
            metrics=metrics,
        )


class TrainingSessionSnapshot(_RecordModel):
    """The single persisted unit of session state. Times are epoch ms."""

    program_id: str
    current_step_index: int = Field(ge=0)
    remaining_ms: int = Field(ge=0)
    total_elapsed_ms: int = Field(ge=0)
    step_start_time: int
    paused_duration_ms: int = Field(ge=0)
    step_results: List[StepResult] = Field(default_factory=list)
    backgrounded_at: Optional[int] = None
    cancelled_at: Optional[int] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "TrainingSessionSnapshot":
        return cls.model_validate_json(raw)


def validate_snapshot(
    snapshot: TrainingSessionSnapshot,
    steps: Sequence[Step],
    *,
    program_id: Optional[str] = None,
    now: Optional[int] = None,
    stale_after_ms: Optional[int] = None,
) -> None:
    """
    Check a loaded snapshot before it is reconciled.

    Raises:
        ReconciliationError: describing the first violated invariant.
    """
    if program_id is not None and snapshot.program_id != program_id:
        raise ReconciliationError(
            f"snapshot belongs to program '{snapshot.program_id}', expected '{program_id}'"
        )
    if not 0 <= snapshot.current_step_index < len(steps):
        raise ReconciliationError(
            f"step index {snapshot.current_step_index} outside program of {len(steps)} steps"
        )
    if len(snapshot.step_results) != snapshot.current_step_index:
        raise ReconciliationError(
            f"{len(snapshot.step_results)} step results recorded for step index "
            f"{snapshot.current_step_index}"
        )
    for field_name in ("remaining_ms", "total_elapsed_ms", "paused_duration_ms"):
        if getattr(snapshot, field_name) < 0:
            raise ReconciliationError(f"{field_name} is negative")
    if snapshot.remaining_ms > steps[snapshot.current_step_index].duration_ms:
        raise ReconciliationError("remaining time exceeds the step duration")

    if now is None:
        return
    if snapshot.backgrounded_at is None:
        raise ReconciliationError("snapshot has no backgroundedAt instant")
    if snapshot.step_start_time > snapshot.backgrounded_at:
        raise ReconciliationError("step started after the session was backgrounded")
    if snapshot.backgrounded_at > now:
        raise ReconciliationError("backgroundedAt lies in the future")
    if stale_after_ms is not None and now - snapshot.backgrounded_at > stale_after_ms:
        raise ReconciliationError(
            f"snapshot is stale (backgrounded {now - snapshot.backgrounded_at}ms ago, "
            f"limit {stale_after_ms}ms)"
        )


@dataclass
class ReminderPayload:
    step_index: int
    step_id: str
    title: str
    body: str


@dataclass
class ScheduledReminder:
    id: str
    kind: ReminderKind
    fire_at: int
    payload: ReminderPayload


@dataclass
class StepAdvance:
    """Emitted to listeners whenever the session moves to another step."""

    previous_index: int
    current_index: int
    result: StepResult
    recovered: bool = False


@dataclass
class SessionSummary:
    """Emitted once when the last step finishes."""

    program_id: str
    total_elapsed_ms: int
    completed_at: int
    step_results: List[StepResult] = field(default_factory=list)
