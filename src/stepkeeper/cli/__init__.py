"""
stepkeeper CLI.

- main:     simulate, validate
- snapshot: show, clear
"""

import typer

from stepkeeper.cli.main import configure_logging, register_commands
from stepkeeper.cli.snapshot import snapshot_app

app = typer.Typer(help="stepkeeper - background recovery for timed training sessions")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    stepkeeper - background recovery for timed training sessions.
    """
    configure_logging(verbose)


register_commands(app)

app.add_typer(snapshot_app, name="snapshot")

if __name__ == "__main__":
    app()
