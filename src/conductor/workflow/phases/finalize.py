from __future__ import annotations

import logging

from conductor.parsers.review import ReviewInconclusive, parse_review_output
from conductor.prompts import build_final_review_prompt
from conductor.workflow.context import PhaseContext
from conductor.workflow.models import WorkflowState

logger = logging.getLogger(__name__)

STATUS_MARKERS = {
    "complete": "[done]",
    "skipped": "[skipped]",
    "escalated": "[escalated]",
}


def render_report(state: WorkflowState, review_summary: str | None, changed_files: list[str]) -> str:
    lines = ["# Workflow Complete", "", "## Tasks"]
    for task in state.tasks:
        lines.append(f"{STATUS_MARKERS.get(task.status, '[pending]')} {task.title}")
    lines.extend(
        [
            "",
            "## Stats",
            f"- {state.count_status('complete')} completed",
            f"- {state.count_status('skipped')} skipped",
            f"- {state.count_status('escalated')} escalated",
            f"- Total cost: ${state.total_cost_usd:.2f}",
            "",
            "## Final Review",
            review_summary or "Skipped: no completed tasks",
            "",
            "## Changed Files",
        ]
    )
    if changed_files:
        lines.extend(f"- {path}" for path in changed_files)
    else:
        lines.append("None")
    return "\n".join(lines)


def _start_follow_up(state: WorkflowState, ctx: PhaseContext) -> bool:
    if ctx.queue is None:
        return False
    follow_up = ctx.queue.dequeue()
    if follow_up is None:
        return False
    logger.info("starting queued workflow: %s", follow_up.title)
    state.user_description = follow_up.description or follow_up.title
    state.design_path = follow_up.parent_design_path
    state.design_content = follow_up.description or follow_up.title
    state.plan_path = None
    state.plan_content = None
    state.tasks = []
    state.current_task_index = 0
    state.plan_review_cycles = 0
    state.test_baseline = None
    state.phase = "plan-write"
    return True


async def run_finalize_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    completed = [task for task in state.tasks if task.status == "complete"]
    changed_files: list[str] = []
    review_summary: str | None = None

    if completed:
        earliest = next((task.git_sha_before_impl for task in completed if task.git_sha_before_impl), None)
        changed_files = ctx.git.changed_files(earliest)
        reviewer = ctx.agents.get("quality-reviewer")
        if reviewer is None:
            review_summary = "Skipped: no quality-reviewer agent available"
        else:
            prompt = build_final_review_prompt(completed, changed_files)
            result = await ctx.dispatcher.dispatch(reviewer, prompt, ctx.repo_root, ctx.cancel)
            ctx.charge(state, result)
            parsed = parse_review_output(result.output)
            if isinstance(parsed, ReviewInconclusive):
                review_summary = "Inconclusive: could not parse reviewer output"
            else:
                review_summary = parsed.findings.summary or "No summary provided"

    report = render_report(state, review_summary, changed_files)
    if _start_follow_up(state, ctx):
        ctx.notify(report)
        return state

    state.report = report
    state.phase = "done"
    return state
