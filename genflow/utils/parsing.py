"""Shared parsing and retry utilities for LLM and producer responses."""

import logging
import re

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

logger = logging.getLogger("genflow.retry")

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

TRANSIENT_STATUS_CODES = (429, 500, 502, 503)


def strip_fences(text: str) -> str:
    """Strip markdown code fences from LLM output if present."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def extract_json_object(text: str) -> str:
    """Return the outermost ``{...}`` span of the text, or the stripped text."""
    text = strip_fences(text)
    match = _OBJECT_RE.search(text)
    return match.group(0) if match else text


def is_transient(exc: BaseException) -> bool:
    """Return True if the exception is a transient HTTP/network error worth retrying."""
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.ConnectError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return False


def log_retry(label: str, retries: int):
    """Build a tenacity ``before_sleep`` hook that logs the upcoming retry."""

    def _before_sleep(state) -> None:
        logger.warning(
            "%s: transient error %r. Retrying in %.0fs (attempt %d/%d)...",
            label,
            state.outcome.exception(),
            state.next_action.sleep,
            state.attempt_number,
            retries,
        )

    return _before_sleep


def invoke_with_retry(llm, messages, max_retries: int = 3):
    """Call llm.invoke(messages) with exponential backoff on transient errors.

    Retries on HTTP 429/500/502/503, connection errors, and timeouts.
    Non-transient errors (auth failures, schema issues) are raised immediately.
    """
    from genflow.config import get_config

    config = get_config()
    retries = config.get("llm_max_retries", max_retries)

    @retry(
        stop=stop_after_attempt(retries + 1),  # +1 because first attempt counts
        wait=wait_exponential(multiplier=1, min=2, max=16),
        retry=retry_if_exception(is_transient),
        reraise=True,
        before_sleep=log_retry("LLM", retries),
    )
    def _invoke():
        return llm.invoke(messages)

    return _invoke()
