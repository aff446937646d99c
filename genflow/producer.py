"""HTTP client for the remote generation producer.

The producer accepts a JSON generation request and answers with a
``text/event-stream`` body. ``HttpProducer.stream`` is an async generator of
decoded text slices; closing it (``aclose``) closes the HTTP response, which
is how a cancelled session releases the connection.
"""

import logging
from typing import AsyncIterator

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from genflow.config import get_api_key, get_config
from genflow.errors import TransportFailure
from genflow.state import GenerationRequest
from genflow.utils.parsing import is_transient, log_retry
from genflow.utils.validator import split_owner_key

logger = logging.getLogger("genflow.producer")


def build_payload(request: GenerationRequest) -> dict:
    """Map a generation request onto the producer's JSON body."""
    project_id, route = split_owner_key(request["owner_key"])
    payload = {
        **(request.get("context") or {}),
        "projectId": project_id,
        "pageRoute": route,
        "sections": list(request.get("components") or []),
    }
    if request.get("prompt"):
        payload["prompt"] = request["prompt"]
    if request.get("current_content"):
        payload["currentCode"] = request["current_content"]
    if request.get("feedback"):
        payload["feedback"] = request["feedback"]
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"Generation failed (HTTP {response.status_code})"


class HttpProducer:
    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
    ) -> None:
        config = get_config()
        self.url = url or config["producer_url"]
        self.api_key = api_key if api_key is not None else get_api_key()
        self.max_retries = (
            max_retries if max_retries is not None else config.get("producer_max_retries", 3)
        )
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.get("producer_timeout_seconds", 30), read=None)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _open_once(self, payload: dict) -> httpx.Response:
        request = self._client.build_request(
            "POST", self.url, json=payload, headers=self._headers()
        )
        response = await self._client.send(request, stream=True)
        if response.is_success:
            return response

        await response.aread()
        await response.aclose()
        if response.status_code in (429, 500, 502, 503):
            response.raise_for_status()  # HTTPStatusError, retried
        raise TransportFailure(_error_message(response))

    async def open(self, request: GenerationRequest) -> httpx.Response:
        """Open the stream, retrying transient failures with exponential backoff."""
        payload = build_payload(request)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(multiplier=1, min=1, max=8),
                retry=retry_if_exception(is_transient),
                reraise=True,
                before_sleep=log_retry("Producer", self.max_retries),
            ):
                with attempt:
                    return await self._open_once(payload)
        except httpx.HTTPStatusError as exc:
            raise TransportFailure(_error_message(exc.response)) from exc
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Could not reach producer: {exc!r}") from exc

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        response = await self.open(request)
        logger.info("Stream opened for %s", request["owner_key"])
        try:
            async for text in response.aiter_text():
                yield text
        except httpx.HTTPError as exc:
            raise TransportFailure(f"Stream interrupted: {exc!r}") from exc
        finally:
            await response.aclose()
