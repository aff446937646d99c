"""LangGraph StateGraph definition for the page workflow: generate → review → revise loop.

The Engine travels in ``config["configurable"]["engine"]`` so the compiled
graph stays a module-level singleton.
"""

import asyncio
import inspect

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from genflow.config import get_config
from genflow.errors import IllegalTransition
from genflow.state import GenerationRequest, PageWorkflowState


def _engine(config: RunnableConfig):
    return config["configurable"]["engine"]


async def generate_node(state: PageWorkflowState, config: RunnableConfig) -> dict:
    """Stream one generation for the page and persist it as a new version.

    Prior content and any outstanding revision feedback are sent along so the
    producer edits instead of starting over.
    """
    engine = _engine(config)
    owner_key = state["owner_key"]
    request: GenerationRequest = dict(state["request"])

    existing = await engine.store.get(owner_key)
    if existing is not None:
        request["current_content"] = existing["content"]
        if existing["status"] == "revision_requested" and existing["feedback"]:
            request["feedback"] = existing["feedback"]

    try:
        session = await engine.sessions.start(owner_key, request, state.get("components"))
    except IllegalTransition as exc:
        return {"status": "failed", "error": str(exc)}

    outcome = await session.wait()
    if outcome != "complete":
        return {"status": "failed", "error": str(session.error) if session.error else outcome}
    return {"artifact": session.artifact, "error": None}


async def review_node(state: PageWorkflowState, config: RunnableConfig) -> dict:
    """Run the reviewer agent. Rejections become revision requests carrying its feedback."""
    engine = _engine(config)
    owner_key = state["owner_key"]
    artifact = state["artifact"]

    if engine.reviewer is None:
        return {"status": "awaiting_approval"}

    context = state["request"].get("context")
    review = await asyncio.to_thread(engine.reviewer, artifact, context)
    history = state.get("review_history", []) + [review]

    if review["approved"]:
        updated = await engine.approvals.record_review(owner_key, review)
        return {"status": "awaiting_approval", "review_history": history, "artifact": updated}

    updated = await engine.approvals.request_revision(
        owner_key, review["feedback"], source="Reviewer Agent"
    )
    return {"status": "in_progress", "review_history": history, "artifact": updated}


def _route_after_generate(state: PageWorkflowState) -> str:
    return "end" if state["status"] == "failed" else "review"


def _route_after_review(state: PageWorkflowState) -> str:
    """Conditional edge: decide next step after the Reviewer node.

    Priority order:
    1. reviewer approved → end (the page now waits for human approval)
    2. revision >= max_revisions → timeout
    3. otherwise → regenerate with the reviewer's feedback
    """
    config = get_config()

    if state["status"] == "awaiting_approval":
        return "end"

    if state["revision"] >= config["max_revisions"]:
        return "timeout"

    return "generate"


def _increment_revision(state: PageWorkflowState) -> dict:
    """Passthrough node that bumps the revision counter before regenerating."""
    return {"revision": state["revision"] + 1}


def _set_timeout(state: PageWorkflowState) -> dict:
    """Set status to max_revisions_reached when the revise ceiling is hit."""
    return {"status": "max_revisions_reached"}


# --- Build the graph ---

workflow = StateGraph(PageWorkflowState)

workflow.add_node("generate", generate_node)
workflow.add_node("review", review_node)
workflow.add_node("increment", _increment_revision)
workflow.add_node("timeout", _set_timeout)

workflow.set_entry_point("generate")

workflow.add_conditional_edges(
    "generate",
    _route_after_generate,
    {
        "end": END,
        "review": "review",
    },
)

workflow.add_conditional_edges(
    "review",
    _route_after_review,
    {
        "end": END,
        "timeout": "timeout",
        "generate": "increment",
    },
)

workflow.add_edge("timeout", END)
workflow.add_edge("increment", "generate")

graph = workflow.compile()


def initial_state(owner_key: str, request: GenerationRequest, components=None) -> PageWorkflowState:
    return {
        "owner_key": owner_key,
        "request": {**request, "owner_key": owner_key},
        "components": list(components if components is not None else request.get("components", [])),
        "artifact": None,
        "review_history": [],
        "revision": 0,
        "status": "in_progress",
        "error": None,
    }


async def run_page_workflow(engine, owner_key: str, request: GenerationRequest, components=None) -> PageWorkflowState:
    """Run the full workflow for one page until it awaits approval, times out, or fails."""
    state = initial_state(owner_key, request, components)
    return await graph.ainvoke(state, config={"configurable": {"engine": engine}})


# --- Step-execution helpers for HITL manual loop ---

_NODE_FNS = {
    "generate": generate_node,
    "review": review_node,
    "increment": _increment_revision,
    "timeout": _set_timeout,
}

_ENGINE_NODES = {"generate", "review"}


async def run_single_step(state: PageWorkflowState, node_name: str, engine=None) -> PageWorkflowState:
    """Run a single node and return the updated state.

    Used by the CLI for manual step-by-step execution with HITL.
    """
    node_fn = _NODE_FNS[node_name]
    if node_name in _ENGINE_NODES:
        updates = node_fn(state, {"configurable": {"engine": engine}})
    else:
        updates = node_fn(state)
    if inspect.isawaitable(updates):
        updates = await updates
    return {**state, **updates}


def route_after_review(state: PageWorkflowState) -> str:
    """Public wrapper around _route_after_review for manual loop usage."""
    return _route_after_review(state)


def route_after_generate(state: PageWorkflowState) -> str:
    return _route_after_generate(state)


def awaiting_human(state: PageWorkflowState) -> str | None:
    """Return the human action the page is waiting on, if any.

    ``"approve"`` once the reviewer is satisfied, ``"revise"`` when the
    automatic revise rounds ran out, None while the loop is still running.
    """
    if state.get("status") == "awaiting_approval":
        return "approve"
    if state.get("status") == "max_revisions_reached":
        return "revise"
    return None
