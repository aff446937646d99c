"""Page-level approval lifecycle.

    not_generated → pending_review → approved (locked)
                                   ↘ revision_requested → pending_review (next generation)

Transitions are decided by the pure ``plan_transition`` and written through
``ArtifactStore.update_review`` against the version that was read, so an
approval always applies to the content the reviewer actually saw.
"""

import logging

from genflow.errors import IllegalTransition
from genflow.notify import Notifier
from genflow.state import Artifact, FeedbackEntry
from genflow.store import utcnow
from genflow.utils.validator import validate_feedback

logger = logging.getLogger("genflow.approval")

NOT_GENERATED = "not_generated"
ACTIONS = ("approve", "request_revision", "unlock")


def state_of(artifact: Artifact | None) -> str:
    if artifact is None:
        return NOT_GENERATED
    return artifact["status"]


def plan_transition(artifact: Artifact | None, action: str, feedback: str | None = None) -> dict | None:
    """Decide the review fields an action produces.

    Returns the new ``{status, approved, feedback}`` or None for a no-op.
    Raises IllegalTransition when the action is not allowed; nothing is mutated.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown approval action '{action}'. Must be one of: {ACTIONS}")

    current = state_of(artifact)
    if current == NOT_GENERATED:
        raise IllegalTransition(f"Cannot {action}: nothing has been generated yet.")

    if action == "approve":
        if artifact["approved"]:
            return None  # idempotent
        return {"status": "approved", "approved": True, "feedback": artifact["feedback"]}

    if action == "request_revision":
        if artifact["approved"]:
            raise IllegalTransition(
                "Cannot request a revision on an approved artifact; unlock it first."
            )
        return {
            "status": "revision_requested",
            "approved": False,
            "feedback": validate_feedback(feedback),
        }

    # unlock
    if not artifact["approved"]:
        raise IllegalTransition("Only an approved artifact can be unlocked.")
    return {
        "status": "revision_requested",
        "approved": False,
        "feedback": validate_feedback(feedback),
    }


class PageApprovalStateMachine:
    def __init__(self, store, notifier: Notifier | None = None) -> None:
        self.store = store
        self.notifier = notifier

    async def state(self, owner_key: str) -> str:
        return state_of(await self.store.get(owner_key))

    async def approve(self, owner_key: str, source: str = "User", note: str | None = None) -> Artifact:
        """Approve and lock. Approving an already-approved artifact returns it unchanged."""
        return await self._apply(owner_key, "approve", note, source)

    async def request_revision(self, owner_key: str, feedback: str, source: str = "User") -> Artifact:
        return await self._apply(owner_key, "request_revision", feedback, source)

    async def unlock(self, owner_key: str, reason: str, source: str = "User") -> Artifact:
        """Explicit unlock of an approved artifact, back to revision_requested."""
        return await self._apply(owner_key, "unlock", reason, source)

    async def record_review(self, owner_key: str, review: dict, source: str = "Reviewer Agent") -> Artifact:
        """Append a review to the feedback history without changing state."""
        artifact = await self.store.get(owner_key)
        if artifact is None:
            raise IllegalTransition("Cannot record a review: nothing has been generated yet.")
        entry = self._entry(
            artifact, source, review.get("feedback") or "", bool(review.get("approved"))
        )
        return await self.store.update_review(
            owner_key,
            artifact["version"],
            status=artifact["status"],
            approved=artifact["approved"],
            feedback=artifact["feedback"],
            entry=entry,
        )

    async def _apply(self, owner_key: str, action: str, text: str | None, source: str) -> Artifact:
        artifact = await self.store.get(owner_key)
        change = plan_transition(artifact, action, text)
        if change is None:
            return artifact

        entry = self._entry(
            artifact,
            source,
            (text or "").strip() if action == "approve" else change["feedback"],
            change["approved"],
        )
        updated = await self.store.update_review(
            owner_key, artifact["version"], entry=entry, **change
        )
        logger.info("%s: %s → %s (v%d)", owner_key, artifact["status"], updated["status"], updated["version"])
        if self.notifier is not None:
            self.notifier.publish("approval.changed", {
                "owner_key": owner_key,
                "action": action,
                "previous": artifact["status"],
                "status": updated["status"],
                "approved": updated["approved"],
                "version": updated["version"],
            })
        return updated

    @staticmethod
    def _entry(artifact: Artifact, source: str, feedback: str, approved: bool) -> FeedbackEntry:
        return {
            "source": source,
            "feedback": feedback,
            "approved": approved,
            "version": artifact["version"],
            "timestamp": utcnow(),
        }
