"""Health command for higgsctl."""

import logging
from typing import Annotated

import httpx
import typer

from higgsctl.client import WorkerClient
from higgsctl.display import display_health


def health_cmd(
    url: Annotated[str, typer.Option("--url", "-u", help="Worker base URL")] = "http://localhost:3000",
    timeout: Annotated[float, typer.Option("--timeout", help="Request timeout in seconds")] = 5.0,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show request logging")] = False,
):
    """Show aggregated health of a running worker.

    Exits with 0 when healthy, 1 when degraded or unreachable.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING,
                        format='%(levelname)s: %(message)s')

    client = WorkerClient(url, timeout=timeout)
    try:
        info = client.health()
    except httpx.HTTPError as e:
        typer.secho(f"Cannot reach worker at {url}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    display_health(info)
    if not info.is_healthy:
        raise typer.Exit(1)
