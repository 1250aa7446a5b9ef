"""
CLI subcommands for the persisted session snapshot.

Usage:
    stepkeeper snapshot show [--dir PATH]
    stepkeeper snapshot clear [--dir PATH]
"""

import asyncio
import json
from typing import Optional

import typer

from stepkeeper.errors import PersistenceError, ReconciliationError
from stepkeeper.session.snapshot_store import JsonFileSnapshotStore

snapshot_app = typer.Typer(help="Inspect or remove the persisted training snapshot")


def _store(directory: Optional[str]) -> JsonFileSnapshotStore:
    return JsonFileSnapshotStore(base_dir=directory)


@snapshot_app.command("show")
def snapshot_show(
    directory: Optional[str] = typer.Option(
        None, "--dir", help="State directory (defaults to <data_dir>/state)"
    ),
):
    """Print the stored snapshot, if any."""
    store = _store(directory)
    try:
        snapshot = asyncio.run(store.load())
    except ReconciliationError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)
    except PersistenceError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=2)

    if snapshot is None:
        typer.echo(f"No snapshot stored at {store.path}")
        return
    typer.echo(json.dumps(snapshot.to_dict(), indent=2))


@snapshot_app.command("clear")
def snapshot_clear(
    directory: Optional[str] = typer.Option(
        None, "--dir", help="State directory (defaults to <data_dir>/state)"
    ),
):
    """Delete the stored snapshot."""
    store = _store(directory)
    try:
        asyncio.run(store.clear())
    except PersistenceError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=2)
    typer.echo(f"✅ Cleared {store.path}")
