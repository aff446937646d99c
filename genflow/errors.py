"""Error taxonomy for generation sessions, persistence and approval actions.

Malformed stream records are not represented here: they are skipped by the
parser and never leave it.
"""


class GenerationError(Exception):
    """Base class for failures that end a generation session."""


class TransportFailure(GenerationError):
    """The stream could not be opened, died mid-flight, or went idle."""


class ProducerError(GenerationError):
    """The producer sent an explicit ``error`` event."""


class PersistenceFailure(Exception):
    """A write to the artifact store failed. Approval state is untouched."""


class VersionConflict(PersistenceFailure):
    """The stored version changed between read and write."""

    def __init__(self, owner_key: str, expected: int | None, actual: int | None):
        super().__init__(
            f"Version conflict on '{owner_key}': expected {expected}, found {actual}."
        )
        self.owner_key = owner_key
        self.expected = expected
        self.actual = actual


class ArtifactLocked(PersistenceFailure):
    """The stored artifact was approved before new content could be written."""

    def __init__(self, owner_key: str):
        super().__init__(
            f"'{owner_key}' was approved while generating; the new content was not saved. "
            f"Unlock it or regenerate with override_lock."
        )
        self.owner_key = owner_key


class IllegalTransition(ValueError):
    """An action is not allowed from the current state. Nothing was mutated."""
