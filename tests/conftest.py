"""
Pytest configuration for Supersafe tests.

- Tests never modify the .env file.
- Prompt cache is cleared between tests.
- ``venice`` serves fake chat and speech endpoints on a local port.
"""

from typing import Any, Dict, List
from unittest.mock import patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from supersafe.analysis_client import AnalysisConfig
from supersafe.config import config
from supersafe.prompts import reload_prompts
from supersafe.speech_client import SpeechConfig

TEST_API_KEY = "test-key-1234"
FAKE_MP3 = b"ID3\x04\x00\x00fake-mp3-frames"


@pytest.fixture(autouse=True)
def mock_config_save():
    """Prevent tests from modifying .env file."""
    with patch("supersafe.config.config.save"):
        yield


@pytest.fixture(autouse=True)
def fresh_prompts():
    reload_prompts()
    yield
    reload_prompts()


@pytest.fixture
def isolated_config():
    """Global config whose changes are rolled back after the test."""
    snapshot = config.to_dict()
    yield config
    config._config = snapshot


def chat_envelope(content: Any) -> Dict[str, Any]:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
    }


class FakeVenice:
    """Scriptable stand-in for the chat-completions and speech endpoints."""

    def __init__(self):
        self.chat_status = 200
        self.chat_body: Any = chat_envelope('{"threatLevel": "none", "summary": "All clear."}')
        self.speech_status = 200
        self.speech_audio = FAKE_MP3
        self.speech_content_type = "audio/mpeg"
        self.chat_requests: List[Dict[str, Any]] = []
        self.chat_headers: List[Dict[str, str]] = []
        self.speech_requests: List[Dict[str, Any]] = []
        self.speech_headers: List[Dict[str, str]] = []
        self.chat_url = ""
        self.speech_url = ""

    def reply_with(self, content: Any):
        """Answer chat requests with the given message content."""
        self.chat_body = chat_envelope(content)

    async def chat(self, request: web.Request) -> web.Response:
        self.chat_requests.append(await request.json())
        self.chat_headers.append(dict(request.headers))
        if isinstance(self.chat_body, (dict, list)):
            return web.json_response(self.chat_body, status=self.chat_status)
        return web.Response(text=self.chat_body, status=self.chat_status)

    async def speech(self, request: web.Request) -> web.Response:
        self.speech_requests.append(await request.json())
        self.speech_headers.append(dict(request.headers))
        if self.speech_status >= 300:
            return web.json_response({"error": "speech unavailable"}, status=self.speech_status)
        return web.Response(
            body=self.speech_audio,
            status=self.speech_status,
            content_type=self.speech_content_type,
        )

    def analysis_config(self, api_key: str = TEST_API_KEY) -> AnalysisConfig:
        return AnalysisConfig(api_key=api_key, url=self.chat_url, model="test-vision", timeout=5)

    def speech_config(self, api_key: str = TEST_API_KEY, **kwargs) -> SpeechConfig:
        return SpeechConfig(api_key=api_key, url=self.speech_url, timeout=5, **kwargs)


@pytest_asyncio.fixture
async def venice():
    fake = FakeVenice()
    app = web.Application()
    app.router.add_post("/api/v1/chat/completions", fake.chat)
    app.router.add_post("/api/v1/audio/speech", fake.speech)

    server = TestServer(app)
    await server.start_server()
    fake.chat_url = str(server.make_url("/api/v1/chat/completions"))
    fake.speech_url = str(server.make_url("/api/v1/audio/speech"))
    try:
        yield fake
    finally:
        await server.close()
