from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.workflow.models import WorkflowState

DESIGN_SUFFIX = re.compile(r"-design\.md$")
PLAN_SUFFIX = re.compile(r"-plan\.md$")


@dataclass(slots=True)
class ProgressSummary:
    completed: int
    skipped: int
    remaining: int
    total: int
    cost_usd: float
    estimated_remaining_usd: float


def compute_progress_summary(state: WorkflowState) -> ProgressSummary:
    completed = state.count_status("complete")
    skipped = state.count_status("skipped")
    escalated = state.count_status("escalated")
    total = len(state.tasks)
    remaining = total - completed - skipped - escalated
    average = state.total_cost_usd / completed if completed else 0.0
    return ProgressSummary(
        completed=completed,
        skipped=skipped,
        remaining=remaining,
        total=total,
        cost_usd=state.total_cost_usd,
        estimated_remaining_usd=average * remaining,
    )


def format_progress_summary(summary: ProgressSummary) -> str:
    parts = [f"Progress: {summary.completed}/{summary.total} complete"]
    if summary.skipped:
        parts[0] += f", {summary.skipped} skipped"
    parts.append(f"${summary.cost_usd:.2f} spent")
    if summary.remaining:
        parts.append(f"~${summary.estimated_remaining_usd:.2f} remaining")
    return " | ".join(parts)


def get_progress_path(state: WorkflowState) -> str | None:
    if state.design_path and DESIGN_SUFFIX.search(state.design_path):
        return DESIGN_SUFFIX.sub("-progress.md", state.design_path)
    if state.plan_path and PLAN_SUFFIX.search(state.plan_path):
        return PLAN_SUFFIX.sub("-progress.md", state.plan_path)
    return None


def render_progress_markdown(state: WorkflowState) -> str:
    lines = [
        f"# Workflow: {state.user_description}",
        "",
        f"**Phase:** {state.phase.capitalize()} | **Cost:** ${state.total_cost_usd:.2f}",
        "",
    ]

    if state.tasks:
        lines.extend(["## Tasks", ""])
        for task in state.tasks:
            marker = "x" if task.status == "complete" else " "
            suffix = "" if task.status in {"pending", "complete"} else f" *({task.status})*"
            lines.append(f"- [{marker}] {task.id}. {task.title}{suffix}")
        lines.append("")

    settings = state.config.to_dict()
    if settings:
        lines.extend(["## Configuration", ""])
        for key, value in settings.items():
            lines.append(f"- **{key}:** {value}")
        lines.append("")

    if state.error:
        lines.extend(["## Error", "", state.error, ""])

    return "\n".join(lines)


def write_progress_file(state: WorkflowState, repo_root: Path) -> Path | None:
    relative = get_progress_path(state)
    if relative is None:
        return None
    target = repo_root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_progress_markdown(state), encoding="utf-8")
    return target
