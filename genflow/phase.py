"""Phase gate: when may a pipeline phase hand over to the next one?

A phase advances only when three independent conditions hold:

1. every expected deliverable (artifact key) is approved,
2. the reviewer has signed off,
3. the requester has signed off.

Sign-offs are monotonic: once given they stay until ``reset_sign_offs``.
"""

import asyncio
import logging
from typing import Mapping

from genflow.config import get_config
from genflow.errors import IllegalTransition
from genflow.notify import Notifier
from genflow.state import Artifact, PhaseRecord
from genflow.store import utcnow

logger = logging.getLogger("genflow.phase")

ROLES = ("reviewer", "requester")


def is_open(expected_keys, artifacts: Mapping[str, Artifact]) -> bool:
    """True iff ``expected_keys`` is non-empty and every key maps to an approved artifact."""
    keys = list(expected_keys)
    if not keys:
        return False
    return all((artifacts.get(k) or {}).get("approved") is True for k in keys)


def phase_id_for(project_id: str, number: int) -> str:
    return f"{project_id}#{number}"


def _snapshot(record: PhaseRecord) -> PhaseRecord:
    return {**record, "expected_keys": list(record["expected_keys"])}


class PhaseGate:
    def __init__(self, store, notifier: Notifier | None = None, phase_names=None) -> None:
        self.store = store
        self.notifier = notifier
        self.phase_names = list(phase_names or get_config().get("phase_names", []))
        self._phases: dict[str, PhaseRecord] = {}
        self._last_gate: dict[str, bool] = {}
        self._tasks: set[asyncio.Task] = set()  # pending gate re-evaluations from watch()

    # --- registry ------------------------------------------------------------

    def register(self, project_id: str, number: int, expected_keys) -> PhaseRecord:
        """Declare a phase and the artifact keys it must deliver.

        Phase 1 of a project starts active, later phases start pending.
        Re-registering replaces the expected keys but keeps sign-offs.
        """
        if number < 1:
            raise ValueError("Phase numbers start at 1.")
        phase_id = phase_id_for(project_id, number)
        existing = self._phases.get(phase_id)
        name = self.phase_names[number - 1] if number <= len(self.phase_names) else f"Phase {number}"
        record: PhaseRecord = {
            "phase_id": phase_id,
            "project_id": project_id,
            "number": number,
            "name": name,
            "expected_keys": list(dict.fromkeys(expected_keys)),
            "reviewer_approved": existing["reviewer_approved"] if existing else False,
            "requester_approved": existing["requester_approved"] if existing else False,
            "status": existing["status"] if existing else ("active" if number == 1 else "pending"),
            "completed_at": existing["completed_at"] if existing else None,
        }
        self._phases[phase_id] = record
        return _snapshot(record)

    def _record(self, phase_id: str) -> PhaseRecord:
        if phase_id not in self._phases:
            raise KeyError(f"Unknown phase '{phase_id}'.")
        return self._phases[phase_id]

    def get(self, phase_id: str) -> PhaseRecord:
        return _snapshot(self._record(phase_id))

    def phases(self, project_id: str) -> list[PhaseRecord]:
        return sorted(
            (_snapshot(p) for p in self._phases.values() if p["project_id"] == project_id),
            key=lambda p: p["number"],
        )

    def phases_containing(self, owner_key: str) -> list[str]:
        return [pid for pid, p in self._phases.items() if owner_key in p["expected_keys"]]

    # --- sign-offs -----------------------------------------------------------

    def sign_off(self, phase_id: str, role: str) -> PhaseRecord:
        if role not in ROLES:
            raise ValueError(f"Unknown sign-off role '{role}'. Must be one of: {ROLES}")
        record = self._record(phase_id)
        record[f"{role}_approved"] = True
        logger.info("%s signed off by %s", phase_id, role)
        return _snapshot(record)

    def reset_sign_offs(self, phase_id: str) -> PhaseRecord:
        record = self._record(phase_id)
        record["reviewer_approved"] = False
        record["requester_approved"] = False
        return _snapshot(record)

    # --- gate ----------------------------------------------------------------

    async def _artifacts(self, keys) -> dict[str, Artifact]:
        found = {}
        for key in keys:
            artifact = await self.store.get(key)
            if artifact is not None:
                found[key] = artifact
        return found

    async def approval_progress(self, phase_id: str) -> tuple[int, int]:
        """Return ``(approved_count, expected_count)``."""
        record = self.get(phase_id)
        artifacts = await self._artifacts(record["expected_keys"])
        approved = sum(1 for a in artifacts.values() if a["approved"])
        return approved, len(record["expected_keys"])

    async def deliverables_open(self, phase_id: str) -> bool:
        record = self.get(phase_id)
        return is_open(record["expected_keys"], await self._artifacts(record["expected_keys"]))

    async def can_advance(self, phase_id: str) -> bool:
        """All deliverables approved, reviewer signed off, requester signed off."""
        record = self.get(phase_id)
        result = (
            await self.deliverables_open(phase_id)
            and record["reviewer_approved"]
            and record["requester_approved"]
        )
        self._observe(phase_id, result)
        return result

    def _observe(self, phase_id: str, value: bool) -> None:
        # Gates start closed, so the first open observation is a flip
        previous = self._last_gate.get(phase_id, False)
        self._last_gate[phase_id] = value
        if previous != value and self.notifier is not None:
            self.notifier.publish("phase.gate", {"phase_id": phase_id, "open": value})

    async def advance(self, phase_id: str) -> dict:
        """Complete the phase and activate the next registered one.

        Raises IllegalTransition when the gate is closed or the phase is not active.
        """
        record = self.get(phase_id)
        if record["status"] != "active":
            raise IllegalTransition(
                f"{phase_id} is {record['status']}; only the active phase can advance."
            )
        if not await self.can_advance(phase_id):
            raise IllegalTransition(
                f"{phase_id} cannot advance: all deliverables and both sign-offs are required."
            )

        stored = self._record(phase_id)
        stored["status"] = "completed"
        stored["completed_at"] = utcnow()

        next_number = record["number"] + 1
        next_id = phase_id_for(record["project_id"], next_number)
        next_phase = None
        if next_id in self._phases:
            self._phases[next_id]["status"] = "active"
            next_phase = next_number
        elif next_number <= len(self.phase_names):
            next_phase = next_number

        logger.info("%s completed; next phase: %s", phase_id, next_phase or "none (final)")
        return {"phase_completed": True, "next_phase": next_phase}

    # --- notifications -------------------------------------------------------

    def _on_gate_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Gate re-evaluation %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    def watch(self, notifier: Notifier | None = None):
        """Re-evaluate affected gates whenever an artifact or approval changes.

        Returns the unsubscribe functions. Must be called with a running event
        loop available when notifications arrive. A re-evaluation that fails
        is logged and the gate keeps its last observed state.
        """
        notifier = notifier or self.notifier

        def _on_change(topic: str, payload: dict) -> None:
            loop = asyncio.get_running_loop()
            for phase_id in self.phases_containing(payload["owner_key"]):
                task = loop.create_task(self.can_advance(phase_id), name=f"gate:{phase_id}")
                self._tasks.add(task)
                task.add_done_callback(self._on_gate_task_done)

        return [
            notifier.subscribe("approval.changed", _on_change),
            notifier.subscribe("artifact.updated", _on_change),
        ]
