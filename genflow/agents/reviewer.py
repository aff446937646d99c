"""Reviewer Agent — scores a generated artifact before it reaches human approval.

Required output schema:
{
  "quality_score": "integer 1-10",
  "approved": "boolean",
  "feedback": "string",
  "strengths": ["string"],
  "improvements": ["string"]
}

A review only counts as approving when ``approved`` is true AND the score
reaches ``reviewer_min_score``. The agent never approves on the user's
behalf; its verdict drives the automatic revise loop in the page workflow.
"""

import json
import logging

from langchain_anthropic import ChatAnthropic

from genflow.config import get_config
from genflow.state import Artifact
from genflow.utils.parsing import extract_json_object, invoke_with_retry

logger = logging.getLogger("genflow.reviewer")

REQUIRED_FIELDS = {"quality_score", "approved"}
CONTENT_CHAR_LIMIT = 12_000
UNPARSEABLE_FEEDBACK = "Unable to parse review. Please try again."

SYSTEM_PROMPT = """\
You are the CEO agent reviewing a deliverable generated for a business project. \
You are a discerning reviewer with high standards. Be constructive but thorough.

Evaluate the deliverable on:
1. Quality and professionalism (is it market-ready?)
2. Brand consistency and messaging
3. Strategic alignment with the business goals
4. Technical execution

You MUST respond with valid JSON matching this exact schema:
{
  "quality_score": integer from 1 to 10,
  "approved": true or false,
  "feedback": "constructive feedback the generator can act on",
  "strengths": ["strength 1", "strength 2"],
  "improvements": ["improvement 1", "improvement 2"]
}

Rules:
- Only approve if quality_score is 7 or higher.
- When not approving, feedback must name the concrete changes required.
- Respond ONLY with the JSON object. No markdown fences, no commentary.
"""


def _validate_response(data: dict, min_score: int = 7) -> None:
    """Validate and normalize a review in place."""
    if not isinstance(data, dict):
        raise ValueError("Review must be a JSON object.")
    missing = REQUIRED_FIELDS - set(data.keys())
    if missing:
        raise ValueError(f"Review missing required fields: {missing}")

    try:
        score = int(data["quality_score"])
    except (TypeError, ValueError):
        raise ValueError(f"Invalid quality_score '{data['quality_score']}'.") from None
    if not 1 <= score <= 10:
        logger.warning("quality_score %d outside 1-10; clamping.", score)
        score = max(1, min(score, 10))
    data["quality_score"] = score

    # Approval requires both the verdict and the score
    data["approved"] = data["approved"] is True and score >= min_score

    if not isinstance(data.get("feedback"), str) or not data["feedback"].strip():
        data["feedback"] = "Review completed"
    for key in ("strengths", "improvements"):
        if not isinstance(data.get(key), list):
            data[key] = []


def _build_user_prompt(artifact: Artifact, context: dict | None = None) -> str:
    content = artifact["content"]
    if len(content) > CONTENT_CHAR_LIMIT:
        content = content[:CONTENT_CHAR_LIMIT] + "\n... [truncated]"

    parts = [f"## Deliverable\n{artifact['owner_key']} (version {artifact['version']})"]
    if context:
        parts.append(f"\n## Business Context\n```json\n{json.dumps(context, indent=2)}\n```")
    if artifact.get("feedback"):
        parts.append(f"\n## Revision Feedback Being Addressed\n{artifact['feedback']}")
    parts.append(f"\n## Generated Content\n```\n{content}\n```")
    return "\n".join(parts)


def review_artifact(artifact: Artifact, context: dict | None = None) -> dict:
    """Ask the configured Reviewer model for a verdict on one artifact.

    An unparseable reply yields a non-approving review instead of an error;
    transport and auth errors from the model are raised.
    """
    config = get_config()
    min_score = config.get("reviewer_min_score", 7)
    llm = ChatAnthropic(model=config["reviewer_model"], temperature=0)

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": _build_user_prompt(artifact, context)},
    ]
    response = invoke_with_retry(llm, messages)

    try:
        data = json.loads(extract_json_object(response.content))
        _validate_response(data, min_score)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Unparseable review for %s: %s", artifact["owner_key"], exc)
        data = {
            "quality_score": 0,
            "approved": False,
            "feedback": UNPARSEABLE_FEEDBACK,
            "strengths": [],
            "improvements": [],
        }

    data["version"] = artifact["version"]
    return data
