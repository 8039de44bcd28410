from __future__ import annotations

from collections.abc import Awaitable, Callable

from conductor.workflow.context import PhaseContext
from conductor.workflow.models import WorkflowState
from conductor.workflow.phases.brainstorm import run_brainstorm_phase
from conductor.workflow.phases.configure import run_configure_phase
from conductor.workflow.phases.execute import TaskExecutor, run_execute_phase
from conductor.workflow.phases.finalize import run_finalize_phase
from conductor.workflow.phases.plan_review import run_plan_review_phase
from conductor.workflow.phases.plan_write import run_plan_write_phase

PhaseHandler = Callable[[WorkflowState, PhaseContext, str | None], Awaitable[WorkflowState]]

PHASE_HANDLERS: dict[str, PhaseHandler] = {
    "brainstorm": run_brainstorm_phase,
    "plan-write": run_plan_write_phase,
    "plan-review": run_plan_review_phase,
    "configure": run_configure_phase,
    "execute": run_execute_phase,
    "finalize": run_finalize_phase,
}

__all__ = [
    "PHASE_HANDLERS",
    "PhaseHandler",
    "TaskExecutor",
    "run_brainstorm_phase",
    "run_configure_phase",
    "run_execute_phase",
    "run_finalize_phase",
    "run_plan_review_phase",
    "run_plan_write_phase",
]
