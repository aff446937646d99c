"""Engine — wires store, notifier, sessions, approvals and the phase gate together."""

from genflow.agents.reviewer import review_artifact
from genflow.approval import PageApprovalStateMachine
from genflow.config import get_config
from genflow.notify import Notifier
from genflow.phase import PhaseGate
from genflow.producer import HttpProducer
from genflow.session import SessionRegistry
from genflow.store import InMemoryArtifactStore, SqliteArtifactStore


def build_store(config: dict, notifier: Notifier | None = None):
    """Create the configured artifact store backend."""
    backend = config.get("store_backend", "memory")
    if backend == "memory":
        return InMemoryArtifactStore(notifier)
    if backend == "sqlite":
        return SqliteArtifactStore(config["db_path"], notifier)
    raise ValueError(f"Unknown store_backend '{backend}'. Must be 'memory' or 'sqlite'.")


class Engine:
    """Everything one process needs to generate, review and gate deliverables.

    Components default from configuration; tests pass their own store and
    producer. ``reviewer`` is a callable ``(artifact, context) -> review``,
    or None to skip automatic review.
    """

    def __init__(self, store=None, producer=None, notifier=None, reviewer="default", config=None):
        self.config = config if config is not None else get_config()
        self.notifier = notifier or Notifier()

        if store is None:
            store = build_store(self.config, self.notifier)
        elif store.notifier is None:
            store.notifier = self.notifier
        self.store = store

        self.producer = producer if producer is not None else HttpProducer()
        self.sessions = SessionRegistry(
            self.store,
            self.producer,
            self.notifier,
            idle_timeout=self.config.get("idle_timeout_seconds"),
        )
        self.approvals = PageApprovalStateMachine(self.store, self.notifier)
        self.phases = PhaseGate(self.store, self.notifier, self.config.get("phase_names"))

        if reviewer == "default":
            reviewer = review_artifact if self.config.get("reviewer_enabled", True) else None
        self.reviewer = reviewer

    async def can_advance(self, phase_id: str) -> bool:
        return await self.phases.can_advance(phase_id)

    async def aclose(self) -> None:
        if hasattr(self.producer, "aclose"):
            await self.producer.aclose()
        if hasattr(self.store, "close"):
            self.store.close()
