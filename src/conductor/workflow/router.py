from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from conductor.workflow.context import PhaseContext
from conductor.workflow.interaction import InteractionError, format_interaction, parse_user_response
from conductor.workflow.models import WorkflowState
from conductor.workflow.phases import PHASE_HANDLERS

logger = logging.getLogger(__name__)

RouterStatus = Literal["running", "waiting", "done", "error"]
NO_WORKFLOW_MESSAGE = "No active workflow. Run `conductor start <description>` to begin one."


@dataclass(slots=True)
class RouterResult:
    status: RouterStatus
    message: str
    state: WorkflowState | None = None


def new_workflow_state(description: str, ctx: PhaseContext) -> WorkflowState:
    state = WorkflowState.create(description)
    preset = ctx.config.workflow
    state.config.max_plan_review_cycles = preset.max_plan_review_cycles
    state.config.max_task_review_cycles = preset.max_task_review_cycles
    return state


def format_status_line(state: WorkflowState) -> str:
    completed = state.count_status("complete")
    return (
        f"Phase: {state.phase} | Progress: {completed}/{len(state.tasks)} tasks complete"
        f" | Cost: ${state.total_cost_usd:.2f}"
    )


async def run_workflow(ctx: PhaseContext, user_input: str | None = None) -> RouterResult:
    """Advance the persisted workflow as far as it can go without the operator.

    Each phase handler runs in turn while the phase keeps changing. The loop
    stops at a pending question, an error, the end of the workflow, or a phase
    that returned without moving on.
    """
    state = ctx.store.load()
    if state is None:
        if user_input is None:
            return RouterResult(status="error", message=NO_WORKFLOW_MESSAGE)
        state = new_workflow_state(user_input, ctx)
        user_input = None
        ctx.store.save(state)

    if state.error and state.phase != "done":
        logger.info("clearing previous error before resuming: %s", state.error)
        state.error = None

    answer: str | None = None
    if state.pending_interaction is not None:
        if user_input is None:
            return RouterResult(
                status="waiting", message=format_interaction(state.pending_interaction), state=state
            )
        try:
            answer = parse_user_response(state.pending_interaction, user_input)
        except InteractionError as exc:
            return RouterResult(status="error", message=str(exc), state=state)

    while True:
        if state.phase == "done":
            ctx.store.clear()
            return RouterResult(
                status="done", message=state.report or "Workflow complete.", state=state
            )

        phase = state.phase
        handler = PHASE_HANDLERS[phase]
        logger.debug("running phase %s", phase)
        state = await handler(state, ctx, answer)
        answer = None
        ctx.store.save(state)

        if state.error:
            if state.phase == "done":
                ctx.store.clear()
            return RouterResult(status="error", message=state.error, state=state)
        if state.pending_interaction is not None:
            return RouterResult(
                status="waiting", message=format_interaction(state.pending_interaction), state=state
            )
        if state.phase == phase:
            return RouterResult(status="running", message=format_status_line(state), state=state)
