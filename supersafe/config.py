"""
Supersafe Configuration Module

Handles loading configuration from:
1. .env file
2. Environment variables
3. Default values

Usage:
    from supersafe.config import config

    interval = config.get_float("SS_CAPTURE_INTERVAL", 5.0)
    config.set("SS_TTS_VOICE", "af_sky")
    config.save(keys_only=["SS_TTS_VOICE"])
"""

__all__ = ["config", "Config", "DEFAULTS", "CONFIG_CATEGORIES"]

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULTS = {
    # Remote inference
    "SS_VENICE_API_KEY": "",
    "SS_CHAT_URL": "https://api.venice.ai/api/v1/chat/completions",
    "SS_SPEECH_URL": "https://api.venice.ai/api/v1/audio/speech",
    "SS_VISION_MODEL": "qwen3-vl-235b-a22b",
    "SS_HTTP_TIMEOUT": "60",

    # Speech alerts
    "SS_SPEECH_ENABLED": "true",
    "SS_SPEECH_MIN_LEVEL": "medium",   # lowest threat level that is spoken
    "SS_TTS_MODEL": "tts-kokoro",
    "SS_TTS_VOICE": "af_sky",
    "SS_TTS_SPEED": "1",
    "SS_AUDIO_PLAYER": "auto",         # auto, afplay, ffplay, mpg123, mpv, none

    # Monitoring
    "SS_CAPTURE_INTERVAL": "5",        # seconds between captures
    "SS_EVENT_CAPACITY": "50",

    # Camera
    "SS_CAMERA_DEVICE": "0",
    "SS_FRAME_WIDTH": "0",             # 0 = native camera size
    "SS_FRAME_HEIGHT": "0",
    "SS_JPEG_QUALITY": "70",

    # Output
    "SS_OUTPUT_FORMAT": "yaml",

    # Logging
    "SS_LOG_LEVEL": "INFO",
    "SS_LOG_FILE": "",
}

# Configuration categories used when writing a fresh .env
CONFIG_CATEGORIES = {
    "Remote inference": [
        ("SS_VENICE_API_KEY", "API Key", "Bearer credential for the inference endpoints"),
        ("SS_CHAT_URL", "Chat URL", "Vision chat-completions endpoint"),
        ("SS_SPEECH_URL", "Speech URL", "Speech synthesis endpoint"),
        ("SS_VISION_MODEL", "Vision Model", "Multimodal model used for threat classification"),
        ("SS_HTTP_TIMEOUT", "HTTP Timeout", "Request timeout in seconds"),
    ],
    "Speech alerts": [
        ("SS_SPEECH_ENABLED", "Speech Enabled", "Speak alerts for qualifying events (true/false)"),
        ("SS_SPEECH_MIN_LEVEL", "Minimum Level", "Lowest threat level that is spoken: low, medium, high"),
        ("SS_TTS_MODEL", "TTS Model", "Speech synthesis model"),
        ("SS_TTS_VOICE", "TTS Voice", "Speech synthesis voice"),
        ("SS_TTS_SPEED", "TTS Speed", "Speech speed multiplier"),
        ("SS_AUDIO_PLAYER", "Audio Player", "Playback command: auto, afplay, ffplay, mpg123, mpv, none"),
    ],
    "Monitoring": [
        ("SS_CAPTURE_INTERVAL", "Interval (seconds)", "Seconds between frame captures"),
        ("SS_EVENT_CAPACITY", "Timeline Size", "Maximum number of events kept in memory"),
    ],
    "Camera": [
        ("SS_CAMERA_DEVICE", "Device", "OpenCV camera index"),
        ("SS_FRAME_WIDTH", "Frame Width", "Width of frames sent for analysis (0 = native)"),
        ("SS_FRAME_HEIGHT", "Frame Height", "Height of frames sent for analysis (0 = native)"),
        ("SS_JPEG_QUALITY", "JPEG Quality", "Encoding quality 1-100"),
    ],
    "Output": [
        ("SS_OUTPUT_FORMAT", "Timeline Format", "Timeline export format: yaml, json"),
    ],
    "Logging": [
        ("SS_LOG_LEVEL", "Log Level", "Logging level: DEBUG, INFO, WARNING, ERROR"),
        ("SS_LOG_FILE", "Log File", "Path to log file (empty = console only)"),
    ],
}

SECRET_KEYS = ("SS_VENICE_API_KEY",)

# Levels searched for .env, starting at the working directory
ENV_SEARCH_DEPTH = 5


def _parse_env_line(line: str) -> Optional[Tuple[str, str]]:
    """(key, value) for a KEY=VALUE line; None for blanks, comments and junk."""
    line = line.strip()
    if line.startswith("#"):
        return None
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    return key, value.strip().strip('"').strip("'")


class Config:
    """Configuration manager for Supersafe"""

    def __init__(self):
        self._config: Dict[str, str] = {}
        self._env_file: Optional[Path] = None
        self._load()

    def _find_env_file(self) -> Optional[Path]:
        """Nearest .env, looking upwards from the working directory."""
        cwd = Path.cwd()
        for directory in [cwd, *cwd.parents][:ENV_SEARCH_DEPTH]:
            candidate = directory / ".env"
            if candidate.is_file():
                return candidate
        return None

    def _load(self):
        """Defaults, overlaid by .env, overlaid by the process environment."""
        self._env_file = self._find_env_file()
        from_file = self._read_env_file(self._env_file) if self._env_file else {}
        from_environ = {key: os.environ[key] for key in DEFAULTS if key in os.environ}

        self._config = dict(DEFAULTS)
        self._config.update(from_file)
        self._config.update(from_environ)

    @staticmethod
    def _read_env_file(path: Path) -> Dict[str, str]:
        """Known SS_* assignments in a .env file. Unreadable files give {}."""
        try:
            text = path.read_text()
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return {}

        values = {}
        for line in text.splitlines():
            entry = _parse_env_line(line)
            if entry is not None and entry[0] in DEFAULTS:
                values[entry[0]] = entry[1]
        return values

    def get(self, key: str, default: Any = None) -> str:
        """Get configuration value"""
        value = self._config.get(key)
        if value is None or value == "":
            if default is not None:
                return str(default)
            return DEFAULTS.get(key, "")
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean"""
        val = self.get(key, str(default))
        return val.lower() in ("true", "1", "yes", "on")

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer"""
        try:
            return int(self.get(key, str(default)))
        except ValueError:
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float"""
        try:
            return float(self.get(key, str(default)))
        except ValueError:
            return default

    def set(self, key: str, value: str):
        """Set configuration value"""
        self._config[key] = str(value)

    def save(self, path: Optional[Path] = None, keys_only: Optional[List[str]] = None):
        """Save configuration to .env file.

        Args:
            path: Path to save to (default: current .env file)
            keys_only: If provided and the file exists, only these keys are
                rewritten; everything else in the file is preserved
        """
        if path is None:
            path = self._env_file or Path.cwd() / ".env"

        if path.exists():
            with open(path, "r") as f:
                existing_lines = f.readlines()

            written = set()
            updated_lines = []
            for line in existing_lines:
                stripped = line.strip()
                if stripped and not stripped.startswith("#") and "=" in stripped:
                    key = stripped.split("=", 1)[0].strip()
                    if key in self._config and (keys_only is None or key in keys_only):
                        updated_lines.append(f"{key}={self._config[key]}\n")
                        written.add(key)
                        continue
                updated_lines.append(line)

            # Keys that were asked for but are not in the file yet
            for key in keys_only or []:
                if key not in written and key in self._config:
                    updated_lines.append(f"{key}={self._config[key]}\n")

            with open(path, "w") as f:
                f.writelines(updated_lines)
        else:
            lines = []
            for category, items in CONFIG_CATEGORIES.items():
                lines.append(f"\n# {category}")
                for key, label, desc in items:
                    value = self._config.get(key, DEFAULTS.get(key, ""))
                    lines.append(f"{key}={value}")

            with open(path, "w") as f:
                f.write("# Supersafe Configuration\n")
                f.write("# Generated by: supersafe config --save\n")
                f.write("\n".join(lines))
                f.write("\n")

        self._env_file = path

    def to_dict(self) -> Dict[str, str]:
        """Get all configuration as dictionary"""
        return self._config.copy()

    def masked(self) -> Dict[str, str]:
        """Configuration with credentials hidden, safe to print or log"""
        data = self.to_dict()
        for key in SECRET_KEYS:
            if data.get(key):
                data[key] = "***" + data[key][-4:]
        return data

    def reload(self):
        """Reload configuration from files"""
        self._load()


# Global config instance
config = Config()
