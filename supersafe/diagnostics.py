"""
Logging setup and console output for Supersafe
"""

import logging
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

# Rich console for pretty output
console = Console()

_installed_handlers = []


def enable_diagnostics(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    use_rich: bool = True,
):
    """Enable logging with the given level.

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
    _installed_handlers.clear()

    if use_rich:
        handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(format))
    _installed_handlers.append(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(format))
        _installed_handlers.append(file_handler)

    root_logger.setLevel(log_level)
    for h in _installed_handlers:
        root_logger.addHandler(h)

    logging.getLogger("supersafe").setLevel(log_level)
    # aiohttp is chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(max(log_level, logging.INFO))


def stats_table(stats: Dict[str, Any], title: str = "Monitoring statistics") -> Table:
    """Render a flat stats dict as a two-column rich table."""
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    for key, value in stats.items():
        if isinstance(value, float):
            value = f"{value:.1f}"
        table.add_row(key.replace("_", " "), str(value))

    return table
