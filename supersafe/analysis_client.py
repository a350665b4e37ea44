"""
Threat Analysis Client for Supersafe

Sends one encoded frame to the remote vision chat endpoint and turns the
model answer into a ThreatAnalysis.

- Transport problems (non-2xx status, network fault, timeout) raise
  TransportError; that is the only failure callers have to handle.
- Malformed model output never raises: it degrades to a "none" analysis.
- No retries; the scheduler's next tick is the retry.

Usage:
    from supersafe.analysis_client import AnalysisClient

    async with AnalysisClient() as client:
        analysis = await client.analyze(image)
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from .config import config
from .exceptions import TransportError
from .models import EncodedImage, ThreatAnalysis
from .prompts import get_prompt

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


@dataclass
class AnalysisConfig:
    """Analysis client configuration."""
    api_key: str = ""
    url: str = "https://api.venice.ai/api/v1/chat/completions"
    model: str = "qwen3-vl-235b-a22b"
    timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        """Load config from environment/.env"""
        return cls(
            api_key=config.get("SS_VENICE_API_KEY", ""),
            url=config.get("SS_CHAT_URL"),
            model=config.get("SS_VISION_MODEL"),
            timeout=config.get_float("SS_HTTP_TIMEOUT", 60.0),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


@dataclass
class AnalysisMetrics:
    """Track analysis request metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    degraded_results: int = 0
    total_time_ms: float = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / max(1, self.total_calls)

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "successful": self.successful_calls,
            "failed": self.failed_calls,
            "degraded": self.degraded_results,
            "avg_time_ms": round(self.avg_time_ms, 1),
        }


def build_request_body(image: EncodedImage, model: str, instruction: str) -> Dict[str, Any]:
    """Chat-completions body carrying the instruction and the frame."""
    return {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": instruction},
                    {"type": "image_url", "image_url": {"url": image.to_data_uri()}},
                ],
            }
        ],
    }


def extract_message_text(payload: Any) -> str:
    """Pull choices[0].message.content out of a response body.

    Content may be a plain string or a list of typed parts, in which case
    only the "text" parts are kept, joined with newlines.
    """
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                texts.append(text if isinstance(text, str) else "")
        return "\n".join(texts)
    return ""


def _strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def _load_object(raw_text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(_strip_code_fence(raw_text))
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_analysis_text(raw_text: str) -> ThreatAnalysis:
    """Turn the model's raw text into a ThreatAnalysis, never raising."""
    parsed = _load_object(raw_text)
    if parsed is None:
        return ThreatAnalysis.degraded(raw_text)
    # Field validators coerce every value, so this cannot fail
    return ThreatAnalysis.model_validate(parsed)


class AnalysisClient:
    """Vision endpoint client. One request per analyze() call."""

    def __init__(
        self,
        analysis_config: Optional[AnalysisConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = analysis_config or AnalysisConfig.from_env()
        self.metrics = AnalysisMetrics()
        self._session = session
        self._owns_session = session is None

        if not self.config.configured:
            logger.warning("SS_VENICE_API_KEY not set - frame analysis is disabled")

    async def __aenter__(self) -> "AnalysisClient":
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

    async def analyze(self, image: EncodedImage) -> ThreatAnalysis:
        """Classify one frame.

        Raises:
            TransportError: endpoint unreachable or non-success status
        """
        if not self.config.configured:
            return ThreatAnalysis.not_configured()

        body = build_request_body(image, self.config.model, get_prompt("threat_detection"))
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        start_time = time.monotonic()
        self.metrics.total_calls += 1
        try:
            session = self._get_session()
            async with session.post(self.config.url, json=body, headers=headers) as response:
                text = await response.text()
                if response.status < 200 or response.status >= 300:
                    raise TransportError(
                        "Analysis endpoint returned an error",
                        status=response.status,
                        body=text,
                    )
        except TransportError:
            self.metrics.failed_calls += 1
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.metrics.failed_calls += 1
            raise TransportError(f"Analysis request failed: {e!r}") from e
        finally:
            self.metrics.total_time_ms += (time.monotonic() - start_time) * 1000

        self.metrics.successful_calls += 1

        try:
            raw_text = extract_message_text(json.loads(text))
        except ValueError:
            # Body is not a JSON envelope at all, treat it as the answer
            logger.debug("Analysis response is not JSON, using body as raw text")
            raw_text = text

        parsed = _load_object(raw_text)
        if parsed is None:
            self.metrics.degraded_results += 1
            logger.info(f"Model answer is not a JSON object, degrading to no threat: {raw_text[:200]!r}")
            return ThreatAnalysis.degraded(raw_text)
        return ThreatAnalysis.model_validate(parsed)
