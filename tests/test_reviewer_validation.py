"""Tests for the Reviewer agent: _validate_response, _build_user_prompt, review_artifact."""

import json
from unittest.mock import MagicMock, patch

import pytest

from genflow.agents.reviewer import (
    UNPARSEABLE_FEEDBACK,
    _build_user_prompt,
    _validate_response,
    review_artifact,
)
from genflow.store import new_artifact


class TestValidateResponse:
    def test_approving_review_passes(self):
        data = {"quality_score": 8, "approved": True, "feedback": "Solid", "strengths": ["copy"]}
        _validate_response(data)
        assert data["approved"] is True
        assert data["improvements"] == []

    def test_low_score_never_approves(self):
        data = {"quality_score": 6, "approved": True, "feedback": "Close"}
        _validate_response(data)
        assert data["approved"] is False

    def test_custom_threshold(self):
        data = {"quality_score": 8, "approved": True}
        _validate_response(data, min_score=9)
        assert data["approved"] is False

    def test_truthy_non_bool_is_not_approval(self):
        data = {"quality_score": 9, "approved": "yes"}
        _validate_response(data)
        assert data["approved"] is False

    def test_score_string_coerced(self):
        data = {"quality_score": "7", "approved": True}
        _validate_response(data)
        assert data["quality_score"] == 7
        assert data["approved"] is True

    def test_score_clamped(self):
        data = {"quality_score": 14, "approved": True}
        _validate_response(data)
        assert data["quality_score"] == 10

    def test_default_feedback(self):
        data = {"quality_score": 5, "approved": False, "feedback": "  "}
        _validate_response(data)
        assert data["feedback"] == "Review completed"

    def test_missing_fields_raise(self):
        with pytest.raises(ValueError, match="missing required fields"):
            _validate_response({"quality_score": 8})

    def test_invalid_score_raises(self):
        with pytest.raises(ValueError, match="Invalid quality_score"):
            _validate_response({"quality_score": "great", "approved": True})

    def test_non_object_raises(self):
        with pytest.raises(ValueError, match="JSON object"):
            _validate_response(["not", "a", "dict"])


class TestBuildUserPrompt:
    def test_includes_key_version_and_content(self):
        prompt = _build_user_prompt(new_artifact("proj-1:/about", "<section>About</section>"))
        assert "proj-1:/about (version 1)" in prompt
        assert "<section>About</section>" in prompt
        assert "Business Context" not in prompt

    def test_includes_context_and_feedback(self):
        artifact = {**new_artifact("proj-1:/", "<div/>"), "feedback": "Use warmer colors"}
        prompt = _build_user_prompt(artifact, {"businessName": "Crumbs"})
        assert '"businessName": "Crumbs"' in prompt
        assert "Use warmer colors" in prompt

    def test_long_content_truncated(self):
        prompt = _build_user_prompt(new_artifact("proj-1:/", "x" * 20_000))
        assert "[truncated]" in prompt
        assert "x" * 12_001 not in prompt


class TestReviewArtifact:
    def _llm(self, content):
        llm = MagicMock()
        response = MagicMock()
        response.content = content
        llm.invoke.return_value = response
        return llm

    def test_parses_fenced_review(self, mock_config):
        reply = "```json\n" + json.dumps({
            "quality_score": 8,
            "approved": True,
            "feedback": "Market-ready",
            "strengths": ["clear hero"],
            "improvements": [],
        }) + "\n```"
        artifact = new_artifact("proj-1:/", "<div/>")

        with patch("genflow.agents.reviewer.ChatAnthropic", return_value=self._llm(reply)) as chat:
            review = review_artifact(artifact, {"industry": "Bakery"})

        chat.assert_called_once_with(model="claude-sonnet-4-6", temperature=0)
        assert review["approved"] is True
        assert review["quality_score"] == 8
        assert review["version"] == 1

    def test_messages_carry_system_and_user_prompt(self, mock_config):
        llm = self._llm('{"quality_score": 5, "approved": false, "feedback": "Needs work"}')
        with patch("genflow.agents.reviewer.ChatAnthropic", return_value=llm):
            review = review_artifact(new_artifact("proj-1:/", "<div/>"))

        messages = llm.invoke.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert "CEO" in messages[0]["content"]
        assert "<div/>" in messages[1]["content"]
        assert review["approved"] is False
        assert review["feedback"] == "Needs work"

    def test_unparseable_reply_is_a_rejection(self, mock_config):
        with patch("genflow.agents.reviewer.ChatAnthropic", return_value=self._llm("I loved it!")):
            review = review_artifact(new_artifact("proj-1:/", "<div/>"))

        assert review["approved"] is False
        assert review["quality_score"] == 0
        assert review["feedback"] == UNPARSEABLE_FEEDBACK

    def test_invalid_schema_is_a_rejection(self, mock_config):
        with patch("genflow.agents.reviewer.ChatAnthropic", return_value=self._llm('{"approved": true}')):
            review = review_artifact(new_artifact("proj-1:/", "<div/>"))
        assert review["approved"] is False
        assert review["feedback"] == UNPARSEABLE_FEEDBACK
