"""Shared test fixtures and configuration."""

import asyncio
import json
import os
import sys
from collections import defaultdict
from pathlib import Path

import httpx
import pytest

# Add backend dir to path so imports work
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load .env for test runs
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

from scenescore.models import SceneDescriptor
from scenescore.services.preset_library import PresetLibrary, PresetStore
from scenescore.services.suno_client import SunoClient

TEST_BASE_URL = "https://api.test/api/v1"
AUDIO_HOST = "cdn.test"
FAKE_AUDIO = b"ID3\x04fake-mp3-bytes"


def has_api_key(key_name: str) -> bool:
    val = os.environ.get(key_name, "")
    return val != "" and val != "your_suno_api_key_here"


# Marker for skipping tests when the API key isn't configured
requires_suno = pytest.mark.skipif(
    not has_api_key("SUNO_API_KEY"),
    reason="SUNO_API_KEY not set",
)


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class FakeSuno:
    """httpx.MockTransport handler imitating the generate/status API.

    Each job answers ``processing`` for ``processing_polls`` status calls,
    then ``complete`` (or ``failed`` when ``fail_reason`` is set).
    """

    def __init__(
        self,
        *,
        processing_polls: int = 0,
        audio: bytes = FAKE_AUDIO,
        fail_reason: str | None = None,
        omit_audio_url: bool = False,
    ):
        self.processing_polls = processing_polls
        self.audio = audio
        self.fail_reason = fail_reason
        self.omit_audio_url = omit_audio_url
        self.submit_errors = 0
        self.status_errors: list[int] = []
        self.submits: list[dict] = []
        self.status_calls: dict[str, int] = defaultdict(int)
        self._answered: dict[str, int] = defaultdict(int)
        self.downloads = 0
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == AUDIO_HOST:
            self.downloads += 1
            return httpx.Response(200, content=self.audio)

        if request.method == "POST" and path.endswith("/generate"):
            self.submits.append(json.loads(request.content))
            if self.submit_errors:
                self.submit_errors -= 1
                return httpx.Response(500, text="internal error")
            return httpx.Response(200, json={"id": f"job-{len(self.submits)}"})

        if "/status/" in path:
            job_id = path.rsplit("/", 1)[-1]
            self.status_calls[job_id] += 1
            if self.status_errors:
                return httpx.Response(self.status_errors.pop(0), text="unavailable")
            self._answered[job_id] += 1
            if self._answered[job_id] <= self.processing_polls:
                return httpx.Response(200, json={"status": "processing"})
            if self.fail_reason:
                return httpx.Response(200, json={"status": "failed", "error": self.fail_reason})
            body = {"status": "complete"}
            if not self.omit_audio_url:
                body["audio_url"] = f"https://{AUDIO_HOST}/{job_id}.mp3"
            return httpx.Response(200, json=body)

        if path.endswith("/models"):
            return httpx.Response(200, json={"models": ["V3_5", "V4"]})

        return httpx.Response(404)

    @property
    def total_status_calls(self) -> int:
        return sum(self.status_calls.values())


def make_client(handler, api_key: str = "test-key") -> SunoClient:
    return SunoClient(api_key, base_url=TEST_BASE_URL, transport=httpx.MockTransport(handler))


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_suno():
    return FakeSuno()


@pytest.fixture
def suno_client(fake_suno):
    return make_client(fake_suno)


@pytest.fixture
def store(tmp_path):
    return PresetStore(tmp_path / "presets")


@pytest.fixture
def library(store):
    return PresetLibrary(store)


@pytest.fixture
def make_scene():
    def _make(**fields) -> SceneDescriptor:
        return SceneDescriptor(**fields)

    return _make
