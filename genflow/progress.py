"""Per-component progress for one in-flight generation."""

from genflow.state import ComponentState, ComponentStatus
from genflow.utils.validator import validate_components

_RANK = {"pending": 0, "building": 1, "complete": 2}


class ComponentProgressTracker:
    """Tracks ``pending → building → complete`` for a fixed, ordered plan.

    Statuses never move backwards. ``component_start`` names outside the plan,
    or that are not strings at all, are ignored, since the producer's section
    names may drift from the plan.
    """

    def __init__(self, names) -> None:
        self._names = validate_components(names)
        self._status: dict[str, ComponentState] = {n: "pending" for n in self._names}
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _advance(self, name: str, status: ComponentState) -> None:
        if _RANK[status] > _RANK[self._status[name]]:
            self._status[name] = status

    def component_start(self, name: str) -> None:
        if self._finished or not isinstance(name, str) or name not in self._status:
            return

        position = self._names.index(name)
        for earlier in self._names[:position]:
            if self._status[earlier] == "building":
                self._advance(earlier, "complete")
        self._advance(name, "building")

    def complete(self) -> None:
        """Terminal success: everything is complete regardless of what was seen."""
        if self._finished:
            return
        for name in self._names:
            self._status[name] = "complete"
        self._finished = True

    def error(self) -> None:
        """Terminal failure: freeze statuses as last observed."""
        self._finished = True

    def statuses(self) -> list[ComponentStatus]:
        return [{"name": n, "status": self._status[n]} for n in self._names]

    def building(self) -> str | None:
        return next((n for n in self._names if self._status[n] == "building"), None)
