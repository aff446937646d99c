"""Tests for the CLI dispatch and the step-by-step generate loop."""

import asyncio
import sys
from unittest.mock import patch

import pytest

from genflow.engine import Engine, build_store
from genflow.errors import IllegalTransition
from genflow.main import _dispatch, main, run_generate
from genflow.store import InMemoryArtifactStore, SqliteArtifactStore

from conftest import FakeProducer, sse

KEY = "proj-1:/"


@pytest.fixture
def engine(mock_config):
    producer = FakeProducer([sse(
        {"type": "start", "message": "Starting generation"},
        {"type": "component_start", "component": "Hero", "message": "Building Hero section...", "progress": 50},
        {"type": "complete", "code": "<main/>"},
    )])
    return Engine(store=InMemoryArtifactStore(), producer=producer, reviewer=None, config=mock_config)


class TestBuildStore:
    def test_memory(self):
        assert isinstance(build_store({"store_backend": "memory"}), InMemoryArtifactStore)

    def test_sqlite(self, tmp_path):
        store = build_store({"store_backend": "sqlite", "db_path": str(tmp_path / "g.db")})
        try:
            assert isinstance(store, SqliteArtifactStore)
        finally:
            store.close()

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown store_backend"):
            build_store({"store_backend": "redis"})


class TestEngine:
    def test_store_gets_engine_notifier(self, mock_config):
        store = InMemoryArtifactStore()
        engine = Engine(store=store, producer=FakeProducer(), config=mock_config)
        assert store.notifier is engine.notifier
        assert engine.reviewer is not None

    def test_reviewer_disabled_by_config(self, mock_config):
        mock_config["reviewer_enabled"] = False
        engine = Engine(store=InMemoryArtifactStore(), producer=FakeProducer(), config=mock_config)
        assert engine.reviewer is None


class TestRunGenerate:
    def test_without_hitl(self, engine, capsys):
        state = asyncio.run(run_generate(engine, KEY, {"components": ["Hero"]}, hitl=False))

        assert state["status"] == "awaiting_approval"
        out = capsys.readouterr().out
        assert "[genflow] Starting generation" in out
        assert "[genflow]  50% Building Hero section..." in out
        assert f"[genflow] {KEY}: v1 pending_review" in out

    def test_hitl_approve(self, engine):
        with patch("builtins.input", return_value="a"):
            asyncio.run(run_generate(engine, KEY, {}, hitl=True))

        artifact = asyncio.run(engine.store.get(KEY))
        assert artifact["approved"] is True

    def test_hitl_revise_then_leave_pending(self, engine):
        # empty feedback is refused and the choice asked again
        answers = iter(["r", "", "r", "Warmer colors", "q"])
        with patch("builtins.input", side_effect=lambda prompt: next(answers)):
            asyncio.run(run_generate(engine, KEY, {}, hitl=True))

        artifact = asyncio.run(engine.store.get(KEY))
        assert artifact["version"] == 2
        assert engine.producer.requests[1]["feedback"] == "Warmer colors"


class TestDispatch:
    def test_generate_approve_status(self, engine, capsys):
        async def scenario():
            assert await _dispatch(engine, "generate", ["proj-1", "/", "--no-hitl", "--sections", "Hero"]) == 0
            assert await _dispatch(engine, "approve", ["proj-1", "/"]) == 0
            assert await _dispatch(engine, "status", ["proj-1"]) == 0

        asyncio.run(scenario())
        out = capsys.readouterr().out
        assert f"{KEY}: v1 approved [locked]" in out
        assert engine.producer.requests[0]["components"] == ["Hero"]

    def test_revise_with_empty_feedback_is_illegal(self, engine):
        async def scenario():
            await _dispatch(engine, "generate", ["proj-1", "/", "--no-hitl"])
            await _dispatch(engine, "revise", ["proj-1", "/"])

        with pytest.raises(IllegalTransition):
            asyncio.run(scenario())

    def test_report(self, engine, capsys):
        async def scenario():
            await _dispatch(engine, "generate", ["proj-1", "/", "--no-hitl"])
            await _dispatch(engine, "approve", ["proj-1", "/"])
            return await _dispatch(engine, "report", ["proj-1", "1", "/", "/about"])

        assert asyncio.run(scenario()) == 0
        out = capsys.readouterr().out
        assert "[genflow] 1 of 2 deliverables approved" in out
        assert "proj-1-phase-1.md" in out

    def test_status_empty(self, engine, capsys):
        asyncio.run(_dispatch(engine, "status", ["proj-9"]))
        assert "Nothing generated yet." in capsys.readouterr().out

    def test_unknown_command(self, engine, capsys):
        assert asyncio.run(_dispatch(engine, "publish", [])) == 2
        assert "Usage:" in capsys.readouterr().out


class TestMain:
    def test_no_args_prints_usage(self, capsys):
        with patch.object(sys, "argv", ["genflow"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 2
        assert "Usage:" in capsys.readouterr().out

    def test_help(self, capsys):
        with patch.object(sys, "argv", ["genflow", "--help"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 0
