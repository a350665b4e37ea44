"""
CLI Argument Parser

Defines all CLI arguments and subcommands.
"""

import argparse
from typing import List, Optional

from .. import __version__
from ..config import config


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="supersafe",
        description="Supersafe - AI-powered threat detection for home security cameras",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  supersafe watch --camera 0
  supersafe watch --image ./frames --interval 2 --duration 60 --no-speech
  supersafe analyze snapshot.jpg
  supersafe config --show
  supersafe config --set SS_TTS_VOICE=af_sky --save
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_watch_parser(subparsers)
    _add_analyze_parser(subparsers)
    _add_config_parser(subparsers)

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser


def _add_watch_parser(subparsers):
    """Add watch subcommand parser."""
    watch = subparsers.add_parser(
        "watch",
        help="Monitor a camera and record threats",
        description="Capture a frame every few seconds, classify it and keep a threat timeline",
    )

    source = watch.add_mutually_exclusive_group()
    source.add_argument("--camera", "-c", type=int, default=None,
                        help=f"Camera index (default: {config.get('SS_CAMERA_DEVICE')})")
    source.add_argument("--image", "-i", default=None,
                        help="Image file or directory of images to use instead of a camera")

    watch.add_argument("--interval", type=float, default=None,
                       help=f"Seconds between captures (default: {config.get('SS_CAPTURE_INTERVAL')})")
    watch.add_argument("--duration", "-t", type=float, default=0,
                       help="Stop after this many seconds (0 = until Ctrl+C)")
    watch.add_argument("--no-speech", action="store_true", help="Do not speak alerts")
    watch.add_argument("--format", "-f", choices=["yaml", "json"], default=None,
                       help="Timeline output format")
    watch.add_argument("--debug", action="store_true", help="Enable debug logging")


def _add_analyze_parser(subparsers):
    """Add analyze subcommand parser."""
    analyze = subparsers.add_parser(
        "analyze",
        help="Classify a single image",
        description="Send one image for threat classification and print the result as JSON",
    )
    analyze.add_argument("image", help="Image file")
    analyze.add_argument("--speak", action="store_true",
                         help="Speak the alert if the threat level qualifies")
    analyze.add_argument("--debug", action="store_true", help="Enable debug logging")


def _add_config_parser(subparsers):
    """Add config subcommand parser."""
    cfg = subparsers.add_parser("config", help="Show or change configuration")
    cfg.add_argument("--show", action="store_true", help="Show current configuration")
    cfg.add_argument("--set", action="append", metavar="KEY=VALUE", default=[],
                     help="Set a configuration value (repeatable)")
    cfg.add_argument("--save", action="store_true", help="Write changed values to .env")


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return create_parser().parse_args(args)
