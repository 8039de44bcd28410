from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from conductor.workflow.interaction import OperatorUI
from conductor.workflow.models import Task, WorkflowState

logger = logging.getLogger(__name__)

CheckpointTriggerType = Literal["scheduled", "budget-warning", "budget-critical"]
CheckpointChoice = Literal["continue", "adjust", "abort"]
CHECKPOINT_CHOICES = ("Continue", "Adjust plan", "Abort")
CRITICAL_BUDGET_RATIO = 0.9
BUDGET_TRIGGERS = frozenset({"budget-warning", "budget-critical"})

REVISION_ENTRY = re.compile(r"^(?:(\d+)\s*[:.)]|\+)\s*(.+)$")
REVISION_HELP = (
    "# Edit the remaining tasks. Delete a line to drop a task, move lines to\n"
    "# reorder them, and add '+ Title' lines to insert new tasks.\n"
    "# Lines starting with '#' are ignored.\n"
)


@dataclass(slots=True)
class CheckpointTrigger:
    type: CheckpointTriggerType
    message: str


@dataclass(slots=True)
class CostThresholds:
    warn_at_usd: float
    hard_limit_usd: float


@dataclass(slots=True)
class CheckpointStats:
    tasks_completed: int
    tasks_total: int
    cost_usd: float
    estimated_remaining_usd: float


@dataclass(slots=True)
class PlanAdjustment:
    """Operator edits to the outstanding part of a plan.

    ``order`` lists the surviving non-terminal task ids in their new order;
    any non-terminal id missing from it is removed.
    """

    order: list[int] = field(default_factory=list)
    insert: list[tuple[int, str]] = field(default_factory=list)


def evaluate_checkpoint_triggers(
    state: WorkflowState, costs: CostThresholds
) -> list[CheckpointTrigger]:
    outstanding = any(
        task.status not in {"complete", "skipped"}
        for task in state.tasks[state.current_task_index :]
    )
    if not outstanding:
        return []

    triggers: list[CheckpointTrigger] = []
    spent = state.total_cost_usd
    if spent >= costs.hard_limit_usd * CRITICAL_BUDGET_RATIO:
        triggers.append(
            CheckpointTrigger(
                type="budget-critical",
                message=f"Budget critical: ${spent:.2f} spent (hard limit: ${costs.hard_limit_usd:.2f})",
            )
        )
    elif spent >= costs.warn_at_usd:
        triggers.append(
            CheckpointTrigger(
                type="budget-warning",
                message=f"Budget warning: ${spent:.2f} spent (warn threshold: ${costs.warn_at_usd:.2f})",
            )
        )
    if state.config.execution_mode == "checkpoint":
        triggers.append(
            CheckpointTrigger(type="scheduled", message="Scheduled checkpoint after task completion")
        )
    return triggers


def compute_checkpoint_stats(state: WorkflowState) -> CheckpointStats:
    completed = state.count_status("complete")
    remaining = len(state.tasks) - completed - state.count_status("skipped")
    average = state.total_cost_usd / completed if completed else 0.0
    return CheckpointStats(
        tasks_completed=completed,
        tasks_total=len(state.tasks),
        cost_usd=state.total_cost_usd,
        estimated_remaining_usd=average * remaining,
    )


def format_checkpoint_message(triggers: list[CheckpointTrigger], stats: CheckpointStats) -> str:
    header = (
        f"Checkpoint: {stats.tasks_completed}/{stats.tasks_total} tasks done"
        f" | ${stats.cost_usd:.2f} spent"
        f" | ~${stats.estimated_remaining_usd:.2f} remaining"
    )
    bullets = "\n".join(f"  • {trigger.message}" for trigger in triggers)
    return f"{header}\nTrigger:\n{bullets}"


def present_checkpoint(
    triggers: list[CheckpointTrigger], stats: CheckpointStats, ui: OperatorUI
) -> CheckpointChoice:
    choice = ui.select(format_checkpoint_message(triggers, stats), list(CHECKPOINT_CHOICES))
    if choice == "Adjust plan":
        return "adjust"
    if choice == "Abort":
        return "abort"
    return "continue"


def render_plan_revision(tasks: list[Task]) -> str:
    lines = [f"{task.id}: {task.title}" for task in tasks if not task.terminal]
    return REVISION_HELP + "\n".join(lines) + "\n"


def parse_plan_revision(text: str) -> PlanAdjustment:
    adjustment = PlanAdjustment()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = REVISION_ENTRY.match(line)
        if match is None:
            continue
        task_id, title = match.groups()
        if task_id is not None:
            adjustment.order.append(int(task_id))
        else:
            # New tasks land after whatever task precedes them in the edited text.
            adjustment.insert.append((len(adjustment.order), title.strip()))
    return adjustment


def present_plan_revision(tasks: list[Task], ui: OperatorUI) -> PlanAdjustment | None:
    edited = ui.editor("Adjust the remaining tasks", render_plan_revision(tasks))
    if edited is None:
        return None
    return parse_plan_revision(edited)


def apply_plan_adjustment(tasks: list[Task], adjustment: PlanAdjustment) -> list[Task]:
    """Return a new task list with the adjustment applied to outstanding tasks.

    Terminal tasks are never touched and stay at the front in their original
    order. Unknown ids in ``order`` are ignored.
    """
    terminal = [task for task in tasks if task.terminal]
    outstanding = {task.id: task for task in tasks if not task.terminal}

    reordered: list[Task] = []
    seen: set[int] = set()
    for task_id in adjustment.order:
        if task_id in outstanding and task_id not in seen:
            seen.add(task_id)
            reordered.append(outstanding[task_id])

    next_id = max((task.id for task in tasks), default=0) + 1
    for offset, (position, title) in enumerate(adjustment.insert):
        new_task = Task(id=next_id, title=title, description=title)
        next_id += 1
        reordered.insert(min(position + offset, len(reordered)), new_task)

    removed = set(outstanding) - seen
    if removed:
        logger.info("removed tasks %s from plan", sorted(removed))
    return terminal + reordered


@dataclass(slots=True)
class CostCheck:
    allowed: bool
    warning: str | None = None


def check_cost_budget(total_cost_usd: float, costs: CostThresholds) -> CostCheck:
    if total_cost_usd >= costs.hard_limit_usd:
        return CostCheck(
            allowed=False,
            warning=f"${total_cost_usd:.2f} spent (hard limit: ${costs.hard_limit_usd:.2f})",
        )
    if total_cost_usd >= costs.warn_at_usd:
        return CostCheck(
            allowed=True,
            warning=f"${total_cost_usd:.2f} spent (warn threshold: ${costs.warn_at_usd:.2f})",
        )
    return CostCheck(allowed=True)
