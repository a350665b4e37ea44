"""
CLI Main Entry Point
"""

import sys

from .parser import create_parser, parse_args
from .handlers import handle_analyze, handle_config, handle_watch
from ..diagnostics import console
from ..exceptions import SupersafeError


def run_cli(args=None) -> int:
    """
    Run the CLI with given arguments.

    Returns:
        Exit code (0 = success)
    """
    parsed = parse_args(args)

    handlers = {
        "watch": handle_watch,
        "analyze": handle_analyze,
        "config": handle_config,
    }

    if not parsed.command:
        create_parser().print_help()
        return 0

    return handlers[parsed.command](parsed)


def main():
    """Main entry point."""
    try:
        sys.exit(run_cli())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SupersafeError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
