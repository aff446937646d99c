"""Shared fixtures for the genflow test suite."""

import asyncio
import json

import pytest
from unittest.mock import patch

from genflow.notify import Notifier
from genflow.store import InMemoryArtifactStore, SqliteArtifactStore


def sse(*events, comments: bool = False) -> str:
    """Render events as the producer's wire format."""
    out = []
    if comments:
        out.append(": keep-alive\n\n")
    for event in events:
        out.append(f"data: {json.dumps(event)}\n\n")
    out.append("data: [DONE]\n\n")
    return "".join(out)


class FakeProducer:
    """In-process stand-in for the remote producer.

    Replays ``chunks`` on every ``stream`` call. ``hang`` blocks after the last
    chunk until the consumer closes the stream; ``fail`` is raised on open.
    """

    def __init__(self, chunks=(), hang: bool = False, fail: Exception | None = None):
        self.chunks = list(chunks)
        self.hang = hang
        self.fail = fail
        self.requests = []
        self.closed = 0

    async def stream(self, request):
        self.requests.append(request)
        if self.fail is not None:
            raise self.fail
        try:
            for chunk in self.chunks:
                await asyncio.sleep(0)
                yield chunk
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed += 1


@pytest.fixture
def scenario_a_events():
    return [
        {"type": "connected", "message": "Connected to generator"},
        {"type": "component_start", "component": "Hero", "message": "Building Hero section...", "progress": 10},
        {"type": "code_chunk", "content": "<div>"},
        {"type": "component_start", "component": "Footer", "message": "Building Footer section...", "progress": 90},
        {"type": "complete", "code": "<div></div>", "message": "Website generation complete!"},
    ]


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def store(notifier):
    return InMemoryArtifactStore(notifier)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    """Each store backend in turn."""
    if request.param == "memory":
        yield InMemoryArtifactStore()
    else:
        s = SqliteArtifactStore(tmp_path / "artifacts.db")
        yield s
        s.close()


@pytest.fixture
def mock_config(tmp_path):
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "producer_url": "http://producer.test/generate",
        "producer_timeout_seconds": 5,
        "producer_max_retries": 1,
        "idle_timeout_seconds": None,
        "store_backend": "memory",
        "db_path": str(tmp_path / "genflow.db"),
        "report_dir": str(tmp_path / "reports"),
        "reviewer_enabled": True,
        "reviewer_model": "claude-sonnet-4-6",
        "reviewer_min_score": 7,
        "llm_max_retries": 3,
        "max_revisions": 2,
        "hitl_enabled": False,
        "default_components": ["Hero", "Footer"],
        "phase_names": [
            "Research & Discovery",
            "Branding & Identity",
            "Development",
            "Content Creation",
            "Marketing & Ads",
            "Sales & Growth",
        ],
    }
    with patch("genflow.config._config", test_config):
        yield test_config
