"""
Audio Alert Queue

Plays synthesized alert audio strictly one clip at a time, in the order the
clips were enqueued. A clip that fails to play is released and skipped so a
single bad resource never stalls the queue.

Architecture:
    SpeechClient.announce()  →  AudioAlertQueue.enqueue(resource)
                                       ↓
                               _drain() task (one at a time)
                                       ↓
                               AudioPlayer.play(resource) → resource.release()

Usage:
    from supersafe.audio_queue import AudioAlertQueue, get_player

    queue = AudioAlertQueue(get_player())
    queue.enqueue(AudioAlertResource(mp3_bytes))
    await queue.join()
"""

import asyncio
import logging
import os
import platform
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

from .config import config
from .exceptions import PlaybackError, ResourceReleasedError

logger = logging.getLogger(__name__)


class AudioAlertResource:
    """Handle to one synthesized clip.

    The bytes are written to a temporary file the first time ``path`` is
    requested. After ``release()`` the handle is dead: every accessor raises
    ResourceReleasedError.
    """

    def __init__(self, data: bytes, content_type: str = "audio/mpeg"):
        self._data: Optional[bytes] = data
        self.content_type = content_type
        self._path: Optional[Path] = None
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def _check(self):
        if self._released:
            raise ResourceReleasedError("Audio resource has already been released")

    @property
    def data(self) -> bytes:
        self._check()
        return self._data

    @property
    def size(self) -> int:
        self._check()
        return len(self._data)

    @property
    def suffix(self) -> str:
        return {
            "audio/mpeg": ".mp3",
            "audio/wav": ".wav",
            "audio/ogg": ".ogg",
        }.get(self.content_type, ".bin")

    @property
    def path(self) -> Path:
        """Backing file, created on first access."""
        self._check()
        if self._path is None:
            fd, name = tempfile.mkstemp(prefix="supersafe-alert-", suffix=self.suffix)
            with os.fdopen(fd, "wb") as f:
                f.write(self._data)
            self._path = Path(name)
        return self._path

    def release(self) -> None:
        """Free the backing storage. Idempotent."""
        if self._released:
            return
        self._released = True
        self._data = None
        if self._path is not None:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove {self._path}: {e}")
            self._path = None

    def __repr__(self) -> str:
        state = "released" if self._released else f"{len(self._data)} bytes"
        return f"<AudioAlertResource {self.content_type} {state}>"


class AudioPlayer(ABC):
    """Plays one resource; returns when playback has finished."""

    @abstractmethod
    async def play(self, resource: AudioAlertResource) -> None:
        """Raises PlaybackError when the clip could not be played."""


class NullAudioPlayer(AudioPlayer):
    """Completes immediately. Used headless or when no player is installed."""

    async def play(self, resource: AudioAlertResource) -> None:
        logger.debug(f"Skipping playback of {resource!r}")


# Command templates, {path} is replaced with the clip file
PLAYER_COMMANDS = {
    "afplay": ["afplay", "{path}"],
    "ffplay": ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", "{path}"],
    "mpg123": ["mpg123", "-q", "{path}"],
    "mpv": ["mpv", "--no-video", "--really-quiet", "{path}"],
}


def _player_priority() -> List[str]:
    """Players to try in priority order for this platform."""
    system = platform.system().lower()
    if system == "darwin":
        return ["afplay", "ffplay", "mpv"]
    return ["ffplay", "mpg123", "mpv"]


class SubprocessAudioPlayer(AudioPlayer):
    """Plays clips through a command-line player."""

    def __init__(self, player: str = "auto", timeout: float = 120.0):
        self.player = player
        self.timeout = timeout

    def resolve_command(self) -> Optional[List[str]]:
        names = _player_priority() if self.player == "auto" else [self.player]
        for name in names:
            template = PLAYER_COMMANDS.get(name)
            if template and shutil.which(template[0]):
                return template
        return None

    async def play(self, resource: AudioAlertResource) -> None:
        template = self.resolve_command()
        if template is None:
            raise PlaybackError(f"No audio player available (SS_AUDIO_PLAYER={self.player})")

        cmd = [str(resource.path) if part == "{path}" else part for part in template]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise PlaybackError(f"Could not start {cmd[0]}: {e}") from e

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise PlaybackError(f"{cmd[0]} did not finish within {self.timeout}s")
        except asyncio.CancelledError:
            proc.kill()
            raise

        if returncode != 0:
            raise PlaybackError(f"{cmd[0]} exited with code {returncode}")


def get_player(name: Optional[str] = None) -> AudioPlayer:
    """Player configured by SS_AUDIO_PLAYER (or the given name)."""
    name = (name or config.get("SS_AUDIO_PLAYER", "auto")).lower()
    if name == "none":
        return NullAudioPlayer()
    return SubprocessAudioPlayer(player=name)


class AudioAlertQueue:
    """FIFO of alert clips with a single playback driver."""

    def __init__(
        self,
        player: Optional[AudioPlayer] = None,
        on_playback_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.player = player or get_player()
        self.on_playback_error = on_playback_error
        self._pending: Deque[AudioAlertResource] = deque()
        self._playing = False
        self._driver: Optional[asyncio.Task] = None
        self.played = 0
        self.failed = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_playing(self) -> bool:
        return self._playing

    def enqueue(self, resource: AudioAlertResource) -> None:
        """Take ownership of the resource and schedule it for playback.

        Must be called from the event loop thread.
        """
        if resource.released:
            raise ResourceReleasedError("Cannot enqueue a released audio resource")

        self._pending.append(resource)
        logger.debug(f"Queued {resource!r} ({len(self._pending)} pending)")

        if not self._playing:
            self._playing = True
            self._driver = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._pending:
                resource = self._pending.popleft()
                try:
                    await self.player.play(resource)
                    self.played += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed += 1
                    logger.error(f"Unable to play alert audio: {e}")
                    self._notify_error(e)
                finally:
                    # Release before the next clip is taken
                    resource.release()
        finally:
            self._playing = False
            self._driver = None

    def _notify_error(self, error: Exception) -> None:
        if self.on_playback_error is None:
            return
        try:
            self.on_playback_error(error)
        except Exception:
            logger.exception("on_playback_error callback failed")

    async def join(self) -> None:
        """Wait until every queued clip has been played or skipped."""
        while self._driver is not None:
            driver = self._driver
            try:
                await asyncio.shield(driver)
            except asyncio.CancelledError:
                # aclose() stopped the driver; only re-raise our own cancellation
                if not driver.cancelled():
                    raise
                return

    async def aclose(self) -> None:
        """Stop playback and release everything still queued."""
        driver = self._driver
        if driver is not None:
            driver.cancel()
            try:
                await driver
            except asyncio.CancelledError:
                pass
        while self._pending:
            self._pending.popleft().release()
