"""
CLI Command Handlers
"""

import argparse
import asyncio
import json
from typing import Optional

import yaml
from rich.table import Table

from ..analysis_client import AnalysisClient
from ..audio_queue import AudioAlertQueue, get_player
from ..config import DEFAULTS, config
from ..diagnostics import console, enable_diagnostics, stats_table
from ..event_store import EventStore
from ..exceptions import SupersafeError, TransportError
from ..frame_source import CameraConfig, CameraFrameSource, FrameSource, ImageFileFrameSource
from ..models import MonitoringState, ThreatAnalysis, ThreatEvent, ThreatLevel
from ..scheduler import MonitorConfig, MonitoringScheduler
from ..speech_client import SpeechClient

LEVEL_STYLES = {
    ThreatLevel.LOW: "yellow",
    ThreatLevel.MEDIUM: "dark_orange",
    ThreatLevel.HIGH: "bold red",
}


def _setup_logging(debug: bool):
    enable_diagnostics(
        level="DEBUG" if debug else config.get("SS_LOG_LEVEL", "INFO"),
        log_file=config.get("SS_LOG_FILE") or None,
    )


def _print_state(state: MonitoringState):
    console.print(f"[dim]● {state.label}[/dim]")


def _print_event(event: Optional[ThreatEvent]):
    if event is None:
        console.print("[dim]  no threat[/dim]")
        return
    style = LEVEL_STYLES.get(event.threat_level, "white")
    console.print(
        f"[{style}]{event.threat_level.value.upper()} threat[/{style}] "
        f"({event.confidence:.0%}) {event.summary}\n"
        f"  → {event.suggested_action}"
    )


def _print_error(message: str):
    console.print(f"[red]⚠ {message}[/red]")


def format_timeline(store: EventStore, fmt: str = "yaml") -> str:
    events = store.to_dicts()
    if fmt == "json":
        return json.dumps(events, indent=2, ensure_ascii=False)
    return yaml.safe_dump(events, sort_keys=False, allow_unicode=True, default_flow_style=False)


# ============================================================================
# watch
# ============================================================================

def _make_source(args: argparse.Namespace) -> FrameSource:
    if args.image:
        return ImageFileFrameSource(args.image)
    camera_config = CameraConfig.from_env()
    if args.camera is not None:
        camera_config.device = args.camera
    return CameraFrameSource(camera_config)


async def _run_watch(
    scheduler: MonitoringScheduler,
    audio_queue: Optional[AudioAlertQueue],
    duration: float,
) -> int:
    interrupted = False
    try:
        scheduler.set_camera_ready(scheduler.frame_source.is_ready)
        if not scheduler.start():
            return 1
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        interrupted = True
        raise
    finally:
        await scheduler.aclose(timeout=0 if interrupted else 30)
        if audio_queue is not None:
            if not interrupted:
                try:
                    await asyncio.wait_for(audio_queue.join(), timeout=60)
                except asyncio.TimeoutError:
                    pass
            await audio_queue.aclose()
        await scheduler.analysis_client.aclose()
        if scheduler.speech_client is not None:
            await scheduler.speech_client.aclose()
    return 0


def handle_watch(args: argparse.Namespace) -> int:
    """Handle the 'watch' command."""
    _setup_logging(args.debug)
    monitor_config = MonitorConfig.from_env()

    source = _make_source(args)
    try:
        source.open()
    except SupersafeError as e:
        _print_error(str(e))
        return 1

    audio_queue = None
    speech_client = None
    if not args.no_speech:
        audio_queue = AudioAlertQueue(get_player())
        speech_client = SpeechClient(audio_queue=audio_queue)

    store = EventStore(monitor_config.event_capacity)
    scheduler = MonitoringScheduler(
        source,
        AnalysisClient(),
        store,
        speech_client=speech_client,
        interval=args.interval or monitor_config.interval,
        speech_min_level=monitor_config.speech_min_level,
        on_analysis_complete=_print_event,
        on_transient_error=_print_error,
        on_monitoring_state_changed=_print_state,
    )

    console.print(
        f"[bold]Supersafe[/bold] watching {getattr(source, 'path', None) or 'camera'} "
        f"every {scheduler.interval:g}s. Press Ctrl+C to stop."
    )

    code = 0
    try:
        code = asyncio.run(_run_watch(scheduler, audio_queue, args.duration))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    finally:
        source.close()

    console.print(stats_table(scheduler.stats.to_dict()))
    if len(store):
        console.print(f"\n[bold]Threat activity timeline[/bold] ({len(store)} events)")
        console.print(format_timeline(store, args.format or config.get("SS_OUTPUT_FORMAT", "yaml")),
                      markup=False, highlight=False)
    else:
        console.print("\nNo recent threats")
    return code


# ============================================================================
# analyze
# ============================================================================

async def _analyze_once(path: str, speak: bool) -> ThreatAnalysis:
    source = ImageFileFrameSource(path)
    source.open()
    image = await source.capture()

    async with AnalysisClient() as client:
        analysis = await client.analyze(image)

    if speak and analysis.should_announce(MonitorConfig.from_env().speech_min_level):
        queue = AudioAlertQueue(get_player())
        async with SpeechClient(audio_queue=queue) as speech:
            await speech.announce(analysis)
        await queue.join()

    return analysis


def handle_analyze(args: argparse.Namespace) -> int:
    """Handle the 'analyze' command."""
    _setup_logging(args.debug)
    try:
        analysis = asyncio.run(_analyze_once(args.image, args.speak))
    except TransportError as e:
        _print_error(f"Analysis failed: {e}")
        return 2
    except SupersafeError as e:
        _print_error(str(e))
        return 1

    console.print_json(data=analysis.to_dict())
    return 0


# ============================================================================
# config
# ============================================================================

def handle_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    changed = []
    for item in args.set:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or key not in DEFAULTS:
            _print_error(f"Unknown setting: {item} (expected KEY=VALUE with a known SS_* key)")
            return 1
        config.set(key, value.strip())
        changed.append(key)

    if changed and args.save:
        config.save(keys_only=changed)
        console.print(f"[green]✓ Saved {', '.join(changed)} to .env[/green]")
    elif changed:
        console.print("[yellow]Values set for this run only, add --save to persist[/yellow]")

    if args.show or not changed:
        table = Table(title="Supersafe configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in config.masked().items():
            table.add_row(key, value or "[dim](not set)[/dim]")
        console.print(table)

    return 0
