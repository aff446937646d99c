"""Shared record shapes: stream events, component progress, artifacts, phases, workflow state."""

from typing import Any, Literal, TypedDict

SessionState = Literal["idle", "streaming", "complete", "failed", "cancelled"]
ComponentState = Literal["pending", "building", "complete"]
ReviewStatus = Literal["pending_review", "approved", "revision_requested"]
PhaseStatus = Literal["pending", "active", "completed"]


class GenerationEvent(TypedDict, total=False):
    type: str  # start | connected | component_start | code_chunk | complete | error
    message: str
    component: str  # component_start
    progress: int  # component_start, 0-100, non-decreasing
    content: str  # code_chunk
    code: str  # complete; authoritative over accumulated chunks


class ComponentStatus(TypedDict):
    name: str
    status: ComponentState


class FeedbackEntry(TypedDict):
    source: str  # "User", "Reviewer Agent", ...
    feedback: str
    approved: bool
    version: int
    timestamp: str


class Artifact(TypedDict):
    id: str
    owner_key: str  # "<scope>:<route>"
    content: str
    version: int  # >= 1, +1 per regeneration
    status: ReviewStatus
    approved: bool  # True means locked
    feedback: str | None
    feedback_history: list[FeedbackEntry]
    created_at: str
    updated_at: str
    approved_at: str | None


class GenerationRequest(TypedDict, total=False):
    owner_key: str
    prompt: str
    current_content: str  # prior content for edits
    components: list[str]  # planned sections
    feedback: str  # revision feedback to address
    context: dict[str, Any]  # business name, branding, ...
    override_lock: bool  # deliberate regeneration of an approved artifact


class PhaseRecord(TypedDict):
    phase_id: str  # "<project_id>#<number>"
    project_id: str
    number: int
    name: str
    expected_keys: list[str]
    reviewer_approved: bool
    requester_approved: bool
    status: PhaseStatus
    completed_at: str | None


class PageWorkflowState(TypedDict, total=False):
    owner_key: str
    request: GenerationRequest
    components: list[str]
    artifact: Artifact | None
    review_history: list[dict]  # reviewer agent responses, in order
    revision: int  # automatic revision rounds so far, starts at 0
    status: Literal["in_progress", "awaiting_approval", "max_revisions_reached", "failed"]
    error: str | None
