"""Entry point: generate pages, act on approvals, report on phases."""

import asyncio
import sys

from genflow.config import get_config
from genflow.engine import Engine
from genflow.graph import (
    awaiting_human,
    initial_state,
    route_after_generate,
    route_after_review,
    run_single_step,
)
from genflow.utils.report import write_report
from genflow.utils.validator import make_owner_key

USAGE = """\
Usage:
  genflow generate <project> <route> [--sections A,B,C] [--no-review] [--no-hitl] [--override-lock] [prompt...]
  genflow approve <project> <route>
  genflow revise <project> <route> <feedback...>
  genflow unlock <project> <route> <reason...>
  genflow status <project> [route]
  genflow report <project> <phase-number> <route> [<route>...]
"""


def _print_progress(topic: str, payload: dict) -> None:
    event = payload["event"]
    if event["type"] == "component_start":
        print(f"[genflow] {payload['progress']:>3}% {event.get('message') or event.get('component')}")
    elif event["type"] in ("start", "connected") and event.get("message"):
        print(f"[genflow] {event['message']}")


def _collect_hitl_decision(state) -> tuple[str, str]:
    """Ask the user to approve the page or describe the changes they want."""
    artifact = state["artifact"]
    print(f"\n--- {state['owner_key']} v{artifact['version']} is ready for review ---\n")
    if state.get("review_history"):
        latest = state["review_history"][-1]
        print(f"Reviewer score: {latest.get('quality_score')}/10 — {latest.get('feedback')}")

    while True:
        choice = input("Approve (a), request changes (r), or leave pending (q): ").strip().lower()
        if choice in ("a", "q"):
            return choice, ""
        if choice == "r":
            feedback = input("Describe the changes you want: ").strip()
            if feedback:
                return choice, feedback
            print("Feedback cannot be empty.")
        else:
            print("Please enter a, r or q.")


async def run_generate(engine: Engine, owner_key: str, request: dict, hitl: bool | None = None) -> dict:
    """Run the page workflow step by step, pausing for a human decision when enabled.

    Args:
        engine: The wired Engine.
        owner_key: Page to generate.
        request: Generation request (prompt, components, context, ...).
        hitl: Override for HITL. None uses config default.
    """
    config = get_config()
    hitl_enabled = hitl if hitl is not None else config.get("hitl_enabled", True)
    engine.notifier.subscribe("session.event", _print_progress)

    state = initial_state(owner_key, request)
    while True:
        state = await run_single_step(state, "generate", engine)
        if route_after_generate(state) == "end":
            print(f"[genflow] Generation failed: {state['error']}")
            return state

        state = await run_single_step(state, "review", engine)
        route = route_after_review(state)
        if route == "timeout":
            state = await run_single_step(state, "timeout", engine)
        elif route == "generate":
            latest = state["review_history"][-1]
            print(f"[genflow] Reviewer requested changes ({latest.get('quality_score')}/10): {latest.get('feedback')}")
            state = await run_single_step(state, "increment", engine)
            continue

        if not hitl_enabled or awaiting_human(state) is None:
            break

        choice, feedback = _collect_hitl_decision(state)
        if choice == "a":
            state["artifact"] = await engine.approvals.approve(owner_key)
            break
        if choice == "q":
            break
        # Human feedback starts a fresh round of automatic revisions
        await engine.approvals.request_revision(owner_key, feedback)
        state = {**state, "revision": 0, "status": "in_progress"}

    artifact = await engine.store.get(owner_key)
    print(f"[genflow] Status: {state['status']}")
    if artifact:
        print(f"[genflow] {owner_key}: v{artifact['version']} {artifact['status']}")
    return state


def _print_artifact(artifact) -> None:
    lock = " [locked]" if artifact["approved"] else ""
    print(f"{artifact['owner_key']}: v{artifact['version']} {artifact['status']}{lock}")
    if artifact["feedback"]:
        print(f"  feedback: {artifact['feedback']}")


async def _dispatch(engine: Engine, command: str, args: list[str]) -> int:
    if command == "generate":
        hitl = None
        request = {}
        if "--no-hitl" in args:
            hitl = False
            args.remove("--no-hitl")
        if "--no-review" in args:
            engine.reviewer = None
            args.remove("--no-review")
        if "--override-lock" in args:
            request["override_lock"] = True
            args.remove("--override-lock")
        components = get_config().get("default_components", [])
        if "--sections" in args:
            idx = args.index("--sections")
            components = [s for s in args[idx + 1].split(",") if s.strip()]
            del args[idx:idx + 2]
        project, route, *prompt = args
        request["components"] = components
        if prompt:
            request["prompt"] = " ".join(prompt)
        state = await run_generate(engine, make_owner_key(project, route), request, hitl=hitl)
        return 0 if state["status"] != "failed" else 1

    if command == "approve":
        project, route = args
        _print_artifact(await engine.approvals.approve(make_owner_key(project, route)))
        return 0

    if command == "revise":
        project, route, *feedback = args
        artifact = await engine.approvals.request_revision(
            make_owner_key(project, route), " ".join(feedback)
        )
        _print_artifact(artifact)
        return 0

    if command == "unlock":
        project, route, *reason = args
        _print_artifact(await engine.approvals.unlock(make_owner_key(project, route), " ".join(reason)))
        return 0

    if command == "status":
        project, *rest = args
        if rest:
            artifact = await engine.store.get(make_owner_key(project, rest[0]))
            artifacts = [artifact] if artifact else []
        else:
            artifacts = await engine.store.list(project)
        if not artifacts:
            print("[genflow] Nothing generated yet.")
        for artifact in artifacts:
            _print_artifact(artifact)
        return 0

    if command == "report":
        project, number, *routes = args
        keys = [make_owner_key(project, r) for r in routes]
        phase = engine.phases.register(project, int(number), keys)
        artifacts = {k: a for k in keys if (a := await engine.store.get(k)) is not None}
        approved, expected = await engine.phases.approval_progress(phase["phase_id"])
        output_path = write_report(phase, artifacts)
        print(f"[genflow] {approved} of {expected} deliverables approved")
        print(f"[genflow] Report written to: {output_path}")
        return 0

    print(USAGE)
    return 2


def main() -> None:
    """CLI entry point."""
    args = sys.argv[1:]
    if not args or args[0] in ("-h", "--help"):
        print(USAGE)
        sys.exit(0 if args else 2)

    command, rest = args[0], args[1:]

    async def _main() -> int:
        engine = Engine()
        try:
            return await _dispatch(engine, command, rest)
        finally:
            await engine.aclose()

    try:
        code = asyncio.run(_main())
    except ValueError as exc:
        # IllegalTransition and malformed arguments
        print(f"[genflow] {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
