"""
Supersafe CLI Module

Usage:
    from supersafe.cli import run_cli

    run_cli(["watch", "--camera", "0"])
"""

from .main import main, run_cli
from .parser import create_parser, parse_args
from .handlers import (
    handle_watch,
    handle_analyze,
    handle_config,
)

__all__ = [
    "main",
    "run_cli",
    "create_parser",
    "parse_args",
    "handle_watch",
    "handle_analyze",
    "handle_config",
]
