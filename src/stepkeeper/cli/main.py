"""
Top-level CLI commands: simulate, validate.
"""

import asyncio
import os
from pathlib import Path
from typing import Optional

import typer

from stepkeeper.config import CONFIG
from stepkeeper.session.models import validate_steps
from stepkeeper.session.recovery import format_remaining
from stepkeeper.session.snapshot_store import JsonFileSnapshotStore
from stepkeeper.simulation import load_program, run_simulation


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from stepkeeper.logger import setup_logging

    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)

    if not verbose:
        os.environ["LOGURU_LEVEL"] = "WARNING"


def _read_program(path: Path):
    try:
        return load_program(path)
    except (OSError, ValueError, KeyError) as e:
        typer.echo(f"❌ Could not read program {path}: {e}")
        raise typer.Exit(code=1)


def register_commands(app: typer.Typer):
    """Register top-level commands on the main app."""

    @app.command()
    def simulate(
        program: Path = typer.Argument(help="Program JSON file"),
        background_at: Optional[int] = typer.Option(
            None, "--background-at", help="Seconds into the session to background the app"
        ),
        resume_at: Optional[int] = typer.Option(
            None, "--resume-at", help="Seconds into the session to bring the app back"
        ),
        persist: bool = typer.Option(
            False, "--persist", help="Write snapshots to the state directory instead of memory"
        ),
        directory: Optional[str] = typer.Option(
            None, "--dir", help="State directory for --persist (defaults to <data_dir>/state)"
        ),
    ):
        """Play a program in simulated time, optionally backgrounding it."""
        if resume_at is not None and (background_at is None or resume_at <= background_at):
            typer.echo("❌ --resume-at needs an earlier --background-at")
            raise typer.Exit(code=1)

        program_id, steps = _read_program(program)
        if errors := validate_steps(steps):
            for error in errors:
                typer.echo(f"❌ {error}")
            raise typer.Exit(code=1)

        settings = CONFIG.model_copy(update={"effect_backoff_seconds": 0.0})
        store = None
        if persist:
            store = JsonFileSnapshotStore(base_dir=directory or str(settings.state_dir))
            typer.echo(f"💾 Persisting snapshots to {store.path}")
        report = asyncio.run(
            run_simulation(
                program_id,
                steps,
                background_at_s=background_at,
                resume_at_s=resume_at,
                settings=settings,
                store=store,
            )
        )

        for line in report.events:
            typer.echo(line)

        if report.reminders:
            typer.echo("\n🔔 Reminders armed while backgrounded:")
            for reminder in report.reminders:
                typer.echo(
                    f"   {format_remaining(reminder.fire_at)}  {reminder.kind.value:<16} "
                    f"{reminder.payload.body}"
                )

        typer.echo(f"\nFinal state: {report.final_state}")
        if report.summary:
            typer.echo(
                f"✅ {len(report.summary.step_results)} steps in "
                f"{format_remaining(report.summary.total_elapsed_ms)}"
            )

    @app.command()
    def validate(program: Path = typer.Argument(help="Program JSON file")):
        """Check a program file for invalid steps."""
        program_id, steps = _read_program(program)
        if errors := validate_steps(steps):
            for error in errors:
                typer.echo(f"❌ {error}")
            raise typer.Exit(code=1)

        total_ms = sum(step.duration_ms for step in steps)
        typer.echo(f"✅ {program_id}: {len(steps)} steps, {format_remaining(total_ms)} total")
