"""Main Typer app for higgsctl CLI.

Usage:
    higgsctl health --url http://localhost:3000
    higgsctl metrics --match higgs_http
"""

import os

import typer

from higgsctl.commands.health import health_cmd
from higgsctl.commands.metrics import metrics_cmd

# Disable typer's rich integration to avoid compatibility issues
os.environ["_TYPER_STANDARD_TRACEBACK"] = "1"

app = typer.Typer(pretty_exceptions_enable=False, rich_markup_mode=None, no_args_is_help=True)
app.command("health")(health_cmd)
app.command("metrics")(metrics_cmd)


def main():
    """Entry point for higgsctl CLI."""
    app()


if __name__ == "__main__":
    main()
