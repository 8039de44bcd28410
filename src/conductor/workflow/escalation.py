from __future__ import annotations

import logging
from typing import Literal

from conductor.state.gitops import GitWorkspace
from conductor.workflow.interaction import OperatorUI
from conductor.workflow.models import Task, WorkflowState

logger = logging.getLogger(__name__)

EscalationDecision = Literal["retry", "skip", "abort", "cancel"]
ESCALATION_CHOICES = ("Retry", "Rollback", "Skip", "Abort")


def escalate(
    state: WorkflowState,
    task: Task,
    reason: str,
    *,
    ui: OperatorUI | None,
    git: GitWorkspace,
) -> EscalationDecision:
    """Ask the operator how to handle a task that cannot proceed on its own.

    The task and workflow state are updated to match the decision; the caller
    only decides where control goes next.
    """
    logger.warning("task %s escalated: %s", task.id, reason)
    if ui is None:
        task.status = "skipped"
        return "skip"

    choice = ui.select(f'Task "{task.title}" needs attention: {reason}', list(ESCALATION_CHOICES))
    if choice is None:
        task.status = "pending"
        return "cancel"
    if choice == "Abort":
        task.status = "escalated"
        state.error = "Aborted by user"
        state.phase = "done"
        return "abort"
    if choice == "Skip":
        task.status = "skipped"
        return "skip"
    if choice == "Rollback":
        rollback_task(task, ui=ui, git=git)
    task.status = "pending"
    return "retry"


def rollback_task(task: Task, *, ui: OperatorUI | None, git: GitWorkspace) -> bool:
    if not task.git_sha_before_impl:
        return False
    files = git.changed_files(task.git_sha_before_impl)
    if ui is not None:
        ui.notify(
            f'Rolling back task "{task.title}": reverting {len(files)} files '
            f"to {task.git_sha_before_impl[:7]}",
            "info",
        )
    reset = git.reset_to_sha(task.git_sha_before_impl)
    task.reset_review_state()
    return reset
