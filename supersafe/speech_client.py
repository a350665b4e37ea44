"""
Speech Alert Client for Supersafe

Turns a qualifying analysis into a spoken alert through the remote speech
endpoint. Audio is best-effort: every failure is logged and swallowed so the
monitoring pipeline is never interrupted by it.

Usage:
    from supersafe.speech_client import SpeechClient

    speech = SpeechClient(audio_queue=queue)
    await speech.announce(analysis)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

import aiohttp

from .audio_queue import AudioAlertQueue, AudioAlertResource
from .config import config
from .models import ThreatAnalysis, ThreatLevel
from .prompts import render_prompt

logger = logging.getLogger(__name__)


@dataclass
class SpeechConfig:
    """Speech client configuration."""
    api_key: str = ""
    url: str = "https://api.venice.ai/api/v1/audio/speech"
    model: str = "tts-kokoro"
    voice: str = "af_sky"
    speed: float = 1
    enabled: bool = True
    timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "SpeechConfig":
        """Load from environment/.env"""
        speed = config.get_float("SS_TTS_SPEED", 1.0)
        return cls(
            api_key=config.get("SS_VENICE_API_KEY", ""),
            url=config.get("SS_SPEECH_URL"),
            model=config.get("SS_TTS_MODEL"),
            voice=config.get("SS_TTS_VOICE"),
            speed=int(speed) if speed.is_integer() else speed,
            enabled=config.get_bool("SS_SPEECH_ENABLED", True),
            timeout=config.get_float("SS_HTTP_TIMEOUT", 60.0),
        )

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key and self.api_key.strip())


def compose_alert_text(
    summary: str,
    suggested_action: str,
    threat_level: Union[ThreatLevel, str],
) -> str:
    """Spoken sentence for an alert."""
    return render_prompt(
        "speech_alert",
        threat_level=str(threat_level),
        summary=summary,
        suggested_action=suggested_action,
    )


class SpeechClient:
    """Speech endpoint client."""

    def __init__(
        self,
        speech_config: Optional[SpeechConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        audio_queue: Optional[AudioAlertQueue] = None,
    ):
        self.config = speech_config or SpeechConfig.from_env()
        self.audio_queue = audio_queue
        self._session = session
        self._owns_session = session is None
        self.requests = 0
        self.failures = 0

    async def __aenter__(self) -> "SpeechClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def synthesize(
        self,
        summary: str,
        suggested_action: str,
        threat_level: Union[ThreatLevel, str],
    ) -> Optional[AudioAlertResource]:
        """Request spoken audio for an alert.

        Returns a new resource owned by the caller, or None when speech is
        not configured or the request failed. Never raises.
        """
        if not self.config.active:
            return None

        body = {
            "input": compose_alert_text(summary, suggested_action, threat_level),
            "model": self.config.model,
            "response_format": "mp3",
            "speed": self.config.speed,
            "streaming": False,
            "voice": self.config.voice,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

        self.requests += 1
        try:
            session = self._get_session()
            async with session.post(self.config.url, json=body, headers=headers) as response:
                if response.status < 200 or response.status >= 300:
                    self.failures += 1
                    logger.error(f"Speech endpoint error: HTTP {response.status}")
                    return None
                audio = await response.read()
                content_type = response.content_type or "audio/mpeg"
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failures += 1
            logger.error(f"Speech request failed: {e!r}")
            return None

        if not audio:
            self.failures += 1
            logger.error("Speech endpoint returned no audio")
            return None

        if not content_type.startswith("audio/"):
            content_type = "audio/mpeg"
        return AudioAlertResource(audio, content_type=content_type)

    async def announce(self, analysis: ThreatAnalysis) -> bool:
        """Synthesize an alert for the analysis and queue it for playback.

        Returns True when audio was queued.
        """
        resource = await self.synthesize(
            analysis.summary,
            analysis.suggested_action,
            analysis.threat_level,
        )
        if resource is None:
            return False

        if self.audio_queue is None:
            logger.debug("No audio queue attached, dropping synthesized alert")
            resource.release()
            return False

        self.audio_queue.enqueue(resource)
        return True
