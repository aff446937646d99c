"""Tests for the phase approval report."""

from genflow.store import new_artifact
from genflow.utils.report import _render_markdown, write_report

A = "proj-1:/"
B = "proj-1:/about"


def _phase(**overrides):
    return {
        "phase_id": "proj-1#3",
        "project_id": "proj-1",
        "number": 3,
        "name": "Development",
        "expected_keys": [A, B],
        "reviewer_approved": True,
        "requester_approved": False,
        "status": "active",
        "completed_at": None,
        **overrides,
    }


def _artifacts():
    home = {**new_artifact(A, "<home/>"), "status": "approved", "approved": True}
    home["feedback_history"] = [
        {"source": "Reviewer Agent", "feedback": "Add pricing\nand hours", "approved": False,
         "version": 1, "timestamp": "2026-01-01T00:00:00+00:00"},
        {"source": "User", "feedback": "", "approved": True,
         "version": 2, "timestamp": "2026-01-02T00:00:00+00:00"},
    ]
    home["version"] = 2
    return {A: home}


class TestRenderMarkdown:
    def test_gate_section(self):
        md = _render_markdown(_phase(), _artifacts())
        assert md.startswith("# Phase 3: Development")
        assert "- Deliverables approved: 1 of 2" in md
        assert "- Reviewer sign-off: yes" in md
        assert "- Requester sign-off: no" in md
        assert "- **Ready to advance:** no" in md

    def test_deliverables_table(self):
        md = _render_markdown(_phase(), _artifacts())
        assert f"| `{A}` | Approved (locked) | v2 |" in md
        assert f"| `{B}` | Not generated |" in md

    def test_feedback_trail(self):
        md = _render_markdown(_phase(), _artifacts())
        assert f"### Feedback: `{A}`" in md
        assert "- v1 **Reviewer Agent** (changes requested): Add pricing and hours" in md
        assert "- v2 **User** (approved)" in md
        assert f"### Feedback: `{B}`" not in md

    def test_ready_when_everything_holds(self):
        artifacts = _artifacts()
        artifacts[B] = {**new_artifact(B, "<about/>"), "status": "approved", "approved": True}
        md = _render_markdown(_phase(requester_approved=True), artifacts)
        assert "- **Ready to advance:** yes" in md


class TestWriteReport:
    def test_writes_to_report_dir(self, mock_config):
        path = write_report(_phase(), _artifacts())
        assert path.name == "proj-1-phase-3.md"
        assert path.read_text(encoding="utf-8").startswith("# Phase 3")

    def test_never_overwrites(self, mock_config):
        first = write_report(_phase(), _artifacts())
        second = write_report(_phase(), _artifacts())
        assert first != second
        assert second.name == "proj-1-phase-3 (2).md"
