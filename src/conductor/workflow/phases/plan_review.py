from __future__ import annotations

import logging

from conductor.agents import AgentProfile
from conductor.parsers.plan import parse_plan
from conductor.parsers.review import (
    ReviewFail,
    ReviewInconclusive,
    ReviewPass,
    ReviewResult,
    format_findings,
    parse_review_output,
)
from conductor.prompts import build_plan_review_prompt, build_plan_revision_prompt
from conductor.workflow.context import PhaseContext
from conductor.workflow.interaction import confirm_plan_approval
from conductor.workflow.models import Task, WorkflowState

logger = logging.getLogger(__name__)

PLAN_REVIEWERS = (("architect", "architect"), ("spec-reviewer", "spec"))


def collect_findings(results: list[ReviewResult]) -> str:
    parts: list[str] = []
    for result in results:
        match result:
            case ReviewFail(findings=findings):
                parts.append(format_findings(findings, "plan-review"))
            case ReviewInconclusive(parse_error=error):
                parts.append(f"Inconclusive review: {error}")
            case ReviewPass():
                pass
    return "\n\n".join(parts)


def _ask_approval(state: WorkflowState, findings: str | None = None) -> WorkflowState:
    state.pending_interaction = confirm_plan_approval(
        [task.title for task in state.tasks], findings
    )
    return state


def _handle_approval(state: WorkflowState, answer: str) -> WorkflowState:
    state.pending_interaction = None
    if answer == "approve":
        state.phase = "configure"
    else:
        state.phase = "plan-write"
        state.plan_review_cycles = 0
    return state


async def _review_plan(
    state: WorkflowState, ctx: PhaseContext, reviewers: list[tuple[AgentProfile, str]]
) -> list[ReviewResult]:
    prompts = [
        build_plan_review_prompt(state.plan_content or "", review_type, state.design_content)
        for _, review_type in reviewers
    ]
    results = await ctx.dispatcher.dispatch_many(
        [agent for agent, _ in reviewers], prompts, ctx.repo_root, ctx.cancel
    )
    ctx.charge(state, *results)
    return [parse_review_output(result.output) for result in results]


async def run_plan_review_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    if state.pending_interaction is not None and state.pending_interaction.id == "plan-approval":
        if user_input is None:
            return state
        return _handle_approval(state, user_input)

    reviewers = [
        (ctx.agents[name], review_type)
        for name, review_type in PLAN_REVIEWERS
        if name in ctx.agents
    ]
    if not reviewers:
        return _ask_approval(state)

    implementer = ctx.agents.get("implementer")
    iterative = state.config.review_mode == "iterative"
    max_cycles = state.config.max_plan_review_cycles

    findings = ""
    for _ in range(max_cycles + 1):
        results = await _review_plan(state, ctx, reviewers)
        if all(isinstance(result, ReviewPass) for result in results):
            return _ask_approval(state)

        findings = collect_findings(results)
        if not (iterative and implementer is not None and state.plan_review_cycles < max_cycles):
            break

        revision = build_plan_revision_prompt(state.plan_path or "", state.plan_content or "", findings)
        result = await ctx.dispatcher.dispatch(implementer, revision, ctx.repo_root, ctx.cancel)
        ctx.charge(state, result)
        state.plan_review_cycles += 1

        plan_file = ctx.repo_root / (state.plan_path or "")
        if plan_file.is_file():
            state.plan_content = plan_file.read_text(encoding="utf-8")
            parsed = parse_plan(state.plan_content)
            if parsed:
                state.tasks = [
                    Task(id=index, title=item.title, description=item.description, files=item.files)
                    for index, item in enumerate(parsed, start=1)
                ]
        logger.info("plan revised (cycle %d of %d)", state.plan_review_cycles, max_cycles)

    return _ask_approval(state, findings or None)
