from __future__ import annotations

from conductor.workflow.context import PhaseContext
from conductor.workflow.interaction import ask_batch_size, ask_execution_mode, ask_review_mode
from conductor.workflow.models import WorkflowState

DEFAULT_BATCH_SIZE = 3


def _apply_answer(state: WorkflowState, interaction_id: str, answer: str) -> None:
    if interaction_id == "review-mode":
        state.config.review_mode = answer
    elif interaction_id == "execution-mode":
        state.config.execution_mode = answer
    elif interaction_id == "batch-size":
        try:
            size = int(answer)
        except ValueError:
            size = DEFAULT_BATCH_SIZE
        state.config.batch_size = max(1, size)


def _apply_presets(state: WorkflowState, ctx: PhaseContext) -> None:
    preset = ctx.config.workflow
    settings = state.config
    if settings.review_mode is None and preset.review_mode is not None:
        settings.review_mode = preset.review_mode
    if settings.execution_mode is None and preset.execution_mode is not None:
        settings.execution_mode = preset.execution_mode
    if settings.batch_size is None and preset.batch_size is not None:
        settings.batch_size = preset.batch_size


async def run_configure_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    if state.pending_interaction is not None and user_input is not None:
        _apply_answer(state, state.pending_interaction.id, user_input)
        state.pending_interaction = None

    _apply_presets(state, ctx)
    settings = state.config
    if settings.review_mode is None:
        state.pending_interaction = ask_review_mode()
        return state
    if settings.execution_mode is None:
        state.pending_interaction = ask_execution_mode()
        return state
    if settings.execution_mode == "batch" and settings.batch_size is None:
        state.pending_interaction = ask_batch_size()
        return state

    if settings.batch_size is None:
        settings.batch_size = DEFAULT_BATCH_SIZE
    settings.max_plan_review_cycles = settings.max_plan_review_cycles or 3
    settings.max_task_review_cycles = settings.max_task_review_cycles or 3
    state.phase = "execute"
    return state
