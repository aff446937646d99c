"""Generation sessions: one streamed generation attempt for one owner key.

    session = GenerationSession("proj-1:/about", store, producer, components=["Hero", "Footer"])
    await session.start({"prompt": "..."})
    state = await session.wait()   # complete | failed | cancelled

Lifecycle: idle → streaming → complete | failed | cancelled. Failures never
escape ``wait()``; they are kept on ``session.error`` so one broken stream
cannot disturb sessions for other keys.
"""

import asyncio
import logging
from contextlib import aclosing

from genflow.config import get_config
from genflow.errors import (
    GenerationError,
    IllegalTransition,
    PersistenceFailure,
    ProducerError,
    TransportFailure,
)
from genflow.notify import Notifier
from genflow.progress import ComponentProgressTracker
from genflow.state import Artifact, GenerationEvent, GenerationRequest, SessionState
from genflow.utils.sse import EventFrameParser
from genflow.utils.validator import split_owner_key, validate_components

logger = logging.getLogger("genflow.session")


def _percent(value, current: int) -> int:
    try:
        pct = int(value)
    except (TypeError, ValueError):
        return current
    return max(current, min(pct, 100))


class GenerationSession:
    def __init__(
        self,
        owner_key: str,
        store,
        producer,
        components=(),
        notifier: Notifier | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        split_owner_key(owner_key)
        self.owner_key = owner_key
        self.store = store
        self.producer = producer
        self.notifier = notifier
        self.components = validate_components(components)
        if idle_timeout is None:
            idle_timeout = get_config().get("idle_timeout_seconds")
        self.idle_timeout = idle_timeout or None

        self.state: SessionState = "idle"
        self._task: asyncio.Task | None = None
        self._starting = False
        self._reset(self.components)

    def _reset(self, components) -> None:
        self.output = ""  # accumulated code_chunk text
        self.content: str | None = None  # final content handed to the store
        self.progress = 0
        self.message = ""
        self.error: Exception | None = None
        self.artifact: Artifact | None = None
        self.tracker = ComponentProgressTracker(components)
        self._cancel_requested = False
        self._persisting = False
        self._override_lock = False

    @property
    def busy(self) -> bool:
        return self.state == "streaming" or self._starting

    def component_statuses(self):
        return self.tracker.statuses()

    def snapshot(self) -> dict:
        return {
            "owner_key": self.owner_key,
            "state": self.state,
            "progress": self.progress,
            "message": self.message,
            "components": self.tracker.statuses(),
            "output_length": len(self.output),
            "version": self.artifact["version"] if self.artifact else None,
            "error": str(self.error) if self.error else None,
        }

    # --- lifecycle -----------------------------------------------------------

    async def start(self, request: GenerationRequest) -> asyncio.Task:
        """Open the stream and begin consuming it in a background task.

        Raises IllegalTransition if this session is already streaming, or if
        the key's artifact is approved (locked) and the request does not set
        ``override_lock``.
        """
        if self.busy:
            raise IllegalTransition(f"A generation for '{self.owner_key}' is already streaming.")
        if request.get("owner_key", self.owner_key) != self.owner_key:
            raise ValueError(
                f"Request targets '{request['owner_key']}', session owns '{self.owner_key}'."
            )

        self._starting = True
        try:
            existing = await self.store.get(self.owner_key)
        finally:
            self._starting = False
        if existing and existing["approved"] and not request.get("override_lock"):
            raise IllegalTransition(
                f"'{self.owner_key}' is approved and locked. Unlock it or pass "
                f"override_lock to regenerate."
            )

        components = validate_components(request.get("components") or self.components)
        self._reset(components)
        self._override_lock = bool(request.get("override_lock"))
        request = {**request, "owner_key": self.owner_key, "components": components}

        self._set_state("streaming")
        self._task = asyncio.create_task(self._run(request), name=f"generation:{self.owner_key}")
        self._task.add_done_callback(self._on_task_done)
        return self._task

    async def wait(self) -> SessionState:
        """Wait for the background task and return the terminal state."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                if not self._cancel_requested:
                    raise
        return self.state

    async def run(self, request: GenerationRequest) -> SessionState:
        await self.start(request)
        return await self.wait()

    def cancel(self) -> bool:
        """Abort the stream. No-op once the final write has begun."""
        if self.state != "streaming" or self._persisting or self._task is None:
            return False
        self._cancel_requested = True
        self._task.cancel()
        logger.info("Cancelling generation for %s", self.owner_key)
        return True

    async def retry_save(self) -> Artifact:
        """Retry just the write after a PersistenceFailure, without regenerating."""
        if (
            self.state != "failed"
            or not isinstance(self.error, PersistenceFailure)
            or self.content is None
        ):
            raise IllegalTransition(f"No unsaved content for '{self.owner_key}'.")
        self.artifact = await self.store.upsert(
            self.owner_key, self.content, allow_locked=self._override_lock
        )
        self.error = None
        self._set_state("complete")
        return self.artifact

    # --- internals -----------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        if self.notifier is not None:
            self.notifier.publish("session.state", {
                "owner_key": self.owner_key,
                "state": state,
                "progress": self.progress,
                "error": str(self.error) if self.error else None,
            })

    def _fail(self, exc: Exception) -> None:
        self.error = exc
        self.tracker.error()
        logger.warning("Generation for %s failed: %s", self.owner_key, exc)
        self._set_state("failed")

    def _on_task_done(self, task: asyncio.Task) -> None:
        # Covers a task cancelled before its first step ran
        if task.cancelled() and self.state == "streaming":
            self.tracker.error()
            self._set_state("cancelled")

    async def _run(self, request: GenerationRequest) -> None:
        try:
            content = await self._consume(request)
        except asyncio.CancelledError:
            self.tracker.error()
            self._set_state("cancelled")
            raise
        except GenerationError as exc:
            self._fail(exc)
            return
        except Exception as exc:
            self._fail(exc)
            raise

        if content is None:
            self.tracker.error()
            self._set_state("cancelled")
            return
        await self._persist(content)

    async def _consume(self, request: GenerationRequest) -> str | None:
        """Read until the first terminal event. Returns final content, or None if cancelled."""
        parser = EventFrameParser()
        try:
            async with aclosing(self.producer.stream(request)) as chunks:
                while True:
                    try:
                        chunk = await self._next_chunk(chunks)
                    except StopAsyncIteration:
                        break
                    for event in parser.feed(chunk):
                        if self._cancel_requested:
                            return None
                        content = self._apply(event)
                        if content is not None:
                            return content
        except GenerationError:
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            raise TransportFailure(f"Stream read failed: {exc!r}") from exc

        parser.flush()
        raise TransportFailure("Stream ended without a terminal event.")

    async def _next_chunk(self, chunks) -> str:
        if not self.idle_timeout:
            return await anext(chunks)
        try:
            return await asyncio.wait_for(anext(chunks), self.idle_timeout)
        except asyncio.TimeoutError:
            raise TransportFailure(
                f"No data received for {self.idle_timeout}s; stream abandoned."
            ) from None

    def _apply(self, event: GenerationEvent) -> str | None:
        """Fold one event into the session. Returns content on ``complete``."""
        kind = event["type"]
        content = None

        if kind in ("start", "connected"):
            self.message = event.get("message") or self.message
        elif kind == "component_start":
            self.tracker.component_start(event.get("component"))
            self.progress = _percent(event.get("progress"), self.progress)
            self.message = event.get("message") or self.message
        elif kind == "code_chunk":
            chunk = event.get("content")
            if chunk is not None:
                self.output += str(chunk)
        elif kind == "complete":
            self.tracker.complete()
            self.progress = 100
            self.message = event.get("message") or self.message
            code = event.get("code")
            content = code if isinstance(code, str) else self.output
        elif kind == "error":
            self.message = event.get("message") or "Generation failed"

        self._publish_event(event)

        if kind == "error":
            raise ProducerError(self.message)
        return content

    def _publish_event(self, event: GenerationEvent) -> None:
        if self.notifier is not None:
            self.notifier.publish("session.event", {
                "owner_key": self.owner_key,
                "event": event,
                "progress": self.progress,
                "components": self.tracker.statuses(),
            })

    async def _persist(self, content: str) -> None:
        self.content = content
        self._persisting = True
        try:
            self.artifact = await self.store.upsert(
                self.owner_key, content, allow_locked=self._override_lock
            )
        except PersistenceFailure as exc:
            self._fail(exc)
            return
        finally:
            self._persisting = False
        logger.info("Generation for %s complete (v%d)", self.owner_key, self.artifact["version"])
        self._set_state("complete")


class SessionRegistry:
    """One streaming session per owner key; keys never interfere."""

    def __init__(self, store, producer, notifier: Notifier | None = None, idle_timeout=None):
        self.store = store
        self.producer = producer
        self.notifier = notifier
        self.idle_timeout = idle_timeout
        self._sessions: dict[str, GenerationSession] = {}

    def get(self, owner_key: str) -> GenerationSession | None:
        return self._sessions.get(owner_key)

    def active(self) -> list[str]:
        return sorted(k for k, s in self._sessions.items() if s.busy)

    def acquire(self, owner_key: str, components=()) -> GenerationSession:
        """Return a fresh, idle session for the key.

        Raises IllegalTransition while a session for the same key is streaming.
        """
        current = self._sessions.get(owner_key)
        if current is not None and current.busy:
            raise IllegalTransition(f"A generation for '{owner_key}' is already streaming.")

        session = GenerationSession(
            owner_key,
            self.store,
            self.producer,
            components=components,
            notifier=self.notifier,
            idle_timeout=self.idle_timeout,
        )
        self._sessions[owner_key] = session
        return session

    async def start(
        self, owner_key: str, request: GenerationRequest, components=None
    ) -> GenerationSession:
        """Acquire a session for the key and start it."""
        if components is None:
            components = request.get("components", ())
        session = self.acquire(owner_key, components)
        await session.start(request)
        return session

    def cancel(self, owner_key: str) -> bool:
        session = self._sessions.get(owner_key)
        return session.cancel() if session else False
