"""Phase report — renders a phase's deliverables and approval trail as Markdown."""

from pathlib import Path

from genflow.config import get_config
from genflow.phase import is_open
from genflow.state import Artifact, PhaseRecord

_STATUS_LABELS = {
    "not_generated": "Not generated",
    "pending_review": "Pending review",
    "approved": "Approved (locked)",
    "revision_requested": "Revision requested",
}


def _render_markdown(phase: PhaseRecord, artifacts: dict[str, Artifact]) -> str:
    """Convert a phase and its artifacts into a Markdown report."""
    lines = []

    lines.append(f"# Phase {phase['number']}: {phase['name']} — Approval Report")
    lines.append("")
    lines.append(f"- **Project:** {phase['project_id']}")
    lines.append(f"- **Phase status:** {phase['status']}")
    if phase.get("completed_at"):
        lines.append(f"- **Completed at:** {phase['completed_at']}")
    lines.append("")

    expected = phase["expected_keys"]
    approved = sum(1 for k in expected if (artifacts.get(k) or {}).get("approved"))
    lines.append("## Gate")
    lines.append("")
    lines.append(f"- Deliverables approved: {approved} of {len(expected)}")
    lines.append(f"- Reviewer sign-off: {'yes' if phase['reviewer_approved'] else 'no'}")
    lines.append(f"- Requester sign-off: {'yes' if phase['requester_approved'] else 'no'}")
    ready = is_open(expected, artifacts) and phase["reviewer_approved"] and phase["requester_approved"]
    lines.append(f"- **Ready to advance:** {'yes' if ready else 'no'}")
    lines.append("")

    if expected:
        lines.append("## Deliverables")
        lines.append("")
        lines.append("| Deliverable | Status | Version | Last updated |")
        lines.append("|-------------|--------|---------|--------------|")
        for key in expected:
            artifact = artifacts.get(key)
            if artifact is None:
                lines.append(f"| `{key}` | {_STATUS_LABELS['not_generated']} | — | — |")
                continue
            label = _STATUS_LABELS.get(artifact["status"], artifact["status"])
            lines.append(
                f"| `{key}` | {label} | v{artifact['version']} | {artifact['updated_at']} |"
            )
        lines.append("")

    # Feedback trail per deliverable
    for key in expected:
        artifact = artifacts.get(key)
        if not artifact or not artifact["feedback_history"]:
            continue
        lines.append(f"### Feedback: `{key}`")
        lines.append("")
        for entry in artifact["feedback_history"]:
            verdict = "approved" if entry.get("approved") else "changes requested"
            text = (entry.get("feedback") or "").replace("\n", " ")
            suffix = f": {text}" if text else ""
            lines.append(
                f"- v{entry.get('version', '?')} **{entry.get('source', 'unknown')}** "
                f"({verdict}){suffix}"
            )
        lines.append("")

    return "\n".join(lines)


def write_report(phase: PhaseRecord, artifacts: dict[str, Artifact]) -> Path:
    """Write the phase report to the configured report directory.

    Returns the Path to the written file.
    """
    config = get_config()
    output_dir = Path(__file__).resolve().parent.parent.parent / config["report_dir"]
    output_dir.mkdir(parents=True, exist_ok=True)

    stem = f"{phase['project_id']}-phase-{phase['number']}"

    # Find a non-conflicting filename
    output_path = output_dir / f"{stem}.md"
    counter = 1
    while output_path.exists():
        counter += 1
        output_path = output_dir / f"{stem} ({counter}).md"

    output_path.write_text(_render_markdown(phase, artifacts), encoding="utf-8")
    return output_path
