"""Metrics command for higgsctl."""

from typing import Annotated

import httpx
import typer

from higgsctl.client import WorkerClient
from higgsctl.display import display_metrics


def metrics_cmd(
    url: Annotated[str, typer.Option("--url", "-u", help="Worker base URL")] = "http://localhost:3000",
    match: Annotated[str | None, typer.Option("--match", "-m", help="Only show metrics starting with this prefix")] = None,
    timeout: Annotated[float, typer.Option("--timeout", help="Request timeout in seconds")] = 5.0,
):
    """Print the Prometheus metrics of a running worker."""
    client = WorkerClient(url, timeout=timeout)
    try:
        text = client.metrics()
    except httpx.HTTPError as e:
        typer.secho(f"Cannot fetch metrics from {url}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    display_metrics(text, filter_prefix=match)
