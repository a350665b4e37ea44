"""
Supersafe - privacy-first AI home security monitor

Samples frames from a camera, asks a remote vision model whether anything
threatening is in view, keeps a short in-memory timeline of threats and
speaks alerts for the serious ones.

Heavy modules are imported lazily, only when accessed.
"""

__version__ = "0.1.0"
__author__ = "Softreck"
__license__ = "Apache-2.0"


def __getattr__(name):
    """Lazy import handler - imports modules only when accessed."""

    if name in ("ThreatLevel", "ThreatAnalysis", "ThreatEvent", "MonitoringState", "EncodedImage"):
        from . import models
        return getattr(models, name)

    if name in ("AnalysisClient", "AnalysisConfig"):
        from . import analysis_client
        return getattr(analysis_client, name)

    if name in ("SpeechClient", "SpeechConfig"):
        from . import speech_client
        return getattr(speech_client, name)

    if name in ("AudioAlertQueue", "AudioAlertResource", "AudioPlayer"):
        from . import audio_queue
        return getattr(audio_queue, name)

    if name == "EventStore":
        from .event_store import EventStore
        return EventStore

    if name in ("MonitoringScheduler", "MonitorConfig"):
        from . import scheduler
        return getattr(scheduler, name)

    if name in ("FrameSource", "ImageFileFrameSource", "CameraFrameSource"):
        from . import frame_source
        return getattr(frame_source, name)

    if name in ("SupersafeError", "ConfigurationError", "TransportError",
                "FrameSourceError", "PlaybackError", "ResourceReleasedError"):
        from . import exceptions
        return getattr(exceptions, name)

    if name == "enable_diagnostics":
        from .diagnostics import enable_diagnostics
        return enable_diagnostics

    raise AttributeError(f"module 'supersafe' has no attribute '{name}'")


__all__ = [
    # Models
    "ThreatLevel",
    "ThreatAnalysis",
    "ThreatEvent",
    "MonitoringState",
    "EncodedImage",

    # Pipeline
    "AnalysisClient",
    "AnalysisConfig",
    "SpeechClient",
    "SpeechConfig",
    "AudioAlertQueue",
    "AudioAlertResource",
    "AudioPlayer",
    "EventStore",
    "MonitoringScheduler",
    "MonitorConfig",

    # Frame sources
    "FrameSource",
    "ImageFileFrameSource",
    "CameraFrameSource",

    # Diagnostics
    "enable_diagnostics",

    # Exceptions
    "SupersafeError",
    "ConfigurationError",
    "TransportError",
    "FrameSourceError",
    "PlaybackError",
    "ResourceReleasedError",
]
