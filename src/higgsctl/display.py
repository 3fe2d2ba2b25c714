"""Display formatting for higgsctl using Rich library."""

from rich.console import Console
from rich.table import Table
from rich.text import Text

from higgsctl.client import HealthInfo


# Service state symbols (simple ASCII)
STATE_SYMBOLS = {
    "ready": "●",
    "uninitialized": "○",
    "closing": "◐",
    "closed": "-",
}

STATE_COLORS = {
    "ready": "green",
    "uninitialized": "cyan",
    "closing": "yellow",
    "closed": "dim",
}

OVERALL_COLORS = {
    "healthy": "green",
    "degraded": "yellow",
}


def format_state(state: str) -> Text:
    symbol = STATE_SYMBOLS.get(state, "?")
    color = STATE_COLORS.get(state, "dim")
    return Text(f"{symbol} {state}", style=color)


def format_uptime(seconds: float | None) -> str:
    """Format uptime as e.g. '2d 3h', '4h 12m', '5m 3s', '42s'."""
    if seconds is None:
        return "-"
    seconds = int(seconds)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_bytes(size: int | None) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def display_health(info: HealthInfo, console: Console | None = None):
    """Print the overall status line and a table of service states."""
    console = console or Console()

    color = OVERALL_COLORS.get(info.status, "red")
    header = Text()
    header.append(f"{info.status.upper()}", style=f"bold {color}")
    header.append(f"  worker {info.worker if info.worker is not None else '?'}", style="bold")
    header.append(f"  pid {info.pid}  up {format_uptime(info.uptime)}", style="dim")
    if info.environment:
        header.append(f"  [{info.environment}]", style="dim")
    console.print(header)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Service")
    table.add_column("State")
    for name, state in info.services.items():
        table.add_row(name, format_state(state))
    console.print(table)

    memory = Text(f"Memory: rss {format_bytes(info.memory.get('rss'))}, "
                  f"vms {format_bytes(info.memory.get('vms'))}", style="dim")
    console.print(memory)

    if info.monitoring:
        detail = info.monitoring.get("detail", {})
        console.print(
            Text(f"Monitoring: {info.monitoring.get('status', '?')} "
                 f"(requests {detail.get('requests', 0)}, "
                 f"error rate {detail.get('error_rate', 0.0):.2%})", style="dim")
        )


def display_metrics(text: str, console: Console | None = None, filter_prefix: str | None = None):
    """Print raw metrics, optionally only lines starting with filter_prefix."""
    console = console or Console()
    for line in text.splitlines():
        if filter_prefix and not line.startswith(filter_prefix):
            continue
        style = "dim" if line.startswith("#") else None
        console.print(line, style=style, markup=False, highlight=False)
