from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from typing import Any, Literal

from conductor.agents import ADVISORY_REVIEWERS, AgentProfile
from conductor.backends import DispatchResult, has_write_tool_calls
from conductor.parsers.review import (
    ReviewFail,
    ReviewInconclusive,
    ReviewPass,
    ReviewResult,
    format_findings,
    has_critical_findings,
    parse_review_output,
)
from conductor.prompts import (
    build_fix_prompt,
    build_impl_prompt,
    build_quality_review_prompt,
    build_spec_review_prompt,
    build_validation_fix_prompt,
    extract_plan_context,
)
from conductor.workflow.baseline import capture_baseline
from conductor.workflow.checkpoint import (
    BUDGET_TRIGGERS,
    apply_plan_adjustment,
    check_cost_budget,
    compute_checkpoint_stats,
    evaluate_checkpoint_triggers,
    present_checkpoint,
    present_plan_revision,
)
from conductor.workflow.commands import run_shell_command
from conductor.workflow.context import PhaseContext
from conductor.workflow.escalation import escalate
from conductor.workflow.models import Task, TaskSummary, WorkflowState
from conductor.workflow.progress import compute_progress_summary, format_progress_summary
from conductor.workflow.taxonomy import allows_automatic_retry, is_blocking, resolve_failure_action
from conductor.workflow.validation import run_cross_task_validation, should_run_validation

logger = logging.getLogger(__name__)

# "continue" moves to the next step of the current task, "retry" restarts the
# task from implementation, "skip" moves on to the next task and "halt" ends
# the phase call without advancing.
Flow = Literal["continue", "retry", "skip", "halt"]

TASK_REVIEWERS = (("spec-reviewer", "spec"), ("quality-reviewer", "quality"))
VALIDATION_TIMEOUT_SECONDS = 60.0
ACTIVITY_LINES = 10


def describe_tool_use(event: dict[str, Any]) -> str | None:
    """Short ``Tool target`` label for the first tool call in a stream event."""
    if event.get("type") != "assistant":
        return None
    message = event.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return None
    for part in content:
        if not isinstance(part, dict) or part.get("type") != "tool_use":
            continue
        tool_input = part.get("input") if isinstance(part.get("input"), dict) else {}
        target = next(
            (
                str(tool_input[key])
                for key in ("file_path", "path", "command", "pattern")
                if key in tool_input
            ),
            "",
        )
        return f"{part.get('name', 'tool')} {target}".strip()[:120]
    return None


class TaskExecutor:
    """Drives outstanding tasks through implement, validate, review and complete."""

    def __init__(self, state: WorkflowState, ctx: PhaseContext) -> None:
        self.state = state
        self.ctx = ctx
        self.implementer = ctx.agents.get("implementer")
        self.reviewers: list[tuple[AgentProfile, str]] = [
            (ctx.agents[name], label) for name, label in TASK_REVIEWERS if name in ctx.agents
        ]
        self.advisory = [ctx.agents[name] for name in ADVISORY_REVIEWERS if name in ctx.agents]
        self.plan_context = extract_plan_context(state.plan_content or "")
        self.activity: deque[str] = deque(maxlen=ACTIVITY_LINES)

    def _action(self, kind: str) -> str:
        return resolve_failure_action(kind, self.ctx.config.failure_actions)

    def _save(self) -> None:
        self.ctx.store.save(self.state)

    def _on_stream_event(self, event: dict[str, Any]) -> None:
        action = describe_tool_use(event)
        if action is None or self.ctx.ui is None:
            return
        self.activity.append(action)
        self.ctx.ui.set_status("workflow", action)
        self.ctx.ui.set_widget("workflow-activity", list(self.activity))

    async def _dispatch(self, agent: AgentProfile, prompt: str) -> DispatchResult:
        result = await self.ctx.dispatcher.dispatch(
            agent,
            prompt,
            self.ctx.repo_root,
            self.ctx.cancel,
            on_stream_event=self._on_stream_event,
        )
        self.ctx.charge(self.state, result)
        return result

    async def _dispatch_many(
        self, agents: Sequence[AgentProfile], prompts: Sequence[str]
    ) -> list[DispatchResult]:
        results = await self.ctx.dispatcher.dispatch_many(
            agents, prompts, self.ctx.repo_root, self.ctx.cancel
        )
        self.ctx.charge(self.state, *results)
        return results

    def _require_implementer(self) -> AgentProfile:
        if self.implementer is None:
            raise RuntimeError("Required agent not found: implementer")
        return self.implementer

    def _cancelled(self, task: Task) -> bool:
        """Put ``task`` back to pending when the operator cancelled mid-step."""
        if not self.ctx.cancel.is_set():
            return False
        logger.info("task %s interrupted, leaving it pending", task.id)
        task.status = "pending"
        return True

    def _escalate(self, task: Task, reason: str) -> Flow:
        decision = escalate(self.state, task, reason, ui=self.ctx.ui, git=self.ctx.git)
        if decision == "retry":
            return "retry"
        if decision == "skip":
            return "skip"
        return "halt"

    async def run(self) -> WorkflowState:
        state = self.state
        await self._ensure_baseline()

        completed_this_call = 0
        while True:
            index = state.sync_task_index()
            if index >= len(state.tasks):
                break
            task = state.tasks[index]
            flow = await self._run_task(task)
            if flow == "halt":
                self._save()
                return state
            if flow in {"retry", "skip"}:
                self._save()
                continue

            completed_this_call += 1
            if state.sync_task_index() >= len(state.tasks):
                break
            mode = state.config.execution_mode or "auto"
            if mode == "checkpoint":
                self._save()
                return state
            if mode == "batch" and completed_this_call >= (state.config.batch_size or 3):
                self._save()
                return state

        state.phase = "finalize"
        self._save()
        return state

    async def _ensure_baseline(self) -> None:
        command = self.ctx.config.project.test_command
        if not command or self.state.test_baseline is not None:
            return
        self.ctx.notify("Capturing test baseline...")
        self.state.test_baseline = await capture_baseline(command, self.ctx.repo_root)
        self._save()

    async def _run_task(self, task: Task) -> Flow:
        state = self.state
        if self.ctx.cancel.is_set():
            return "halt"

        budget = check_cost_budget(state.total_cost_usd, self.ctx.costs)
        if not budget.allowed:
            state.error = f"Cost budget exceeded: {budget.warning or 'limit reached'}"
            state.phase = "done"
            return "halt"
        if self.implementer is None:
            state.error = "Required agent not found: implementer"
            return "halt"

        task.git_sha_before_impl = self.ctx.git.current_sha() or None
        task.status = "implementing"
        self._save()
        logger.info("task %s: %s", task.id, task.title)

        for step in (
            self._implement,
            self._validation_gate,
            self._review_loop,
            self._advisory_reviews,
        ):
            flow = await step(task)
            if flow != "continue":
                return flow

        self._complete(task)
        flow = self._checkpoint()
        if flow != "continue":
            return flow
        return await self._cross_task_validation(task)

    async def _implement(self, task: Task) -> Flow:
        implementer = self._require_implementer()
        prior = [
            other.summary
            for other in self.state.tasks
            if other.status == "complete" and other.summary is not None
        ]
        prompt = build_impl_prompt(task, self.plan_context, prior)
        action = self._action("impl-crash")
        attempts = 2 if allows_automatic_retry(action) else 1

        reason = ""
        for attempt in range(attempts):
            if attempt > 0:
                self.ctx.notify(f"Implementer failed ({reason}), retrying once", "warning")
            result = await self._dispatch(implementer, prompt)
            if not result.failed:
                return "continue"
            reason = result.error_message or "Implementation failed (non-zero exit)"
            if self._cancelled(task):
                return "halt"

        if action == "ignore":
            return "continue"
        if action == "warn-continue":
            self.ctx.notify(f"Task {task.id} implementer failed: {reason}", "warning")
            return "continue"
        return self._escalate(task, reason)

    async def _validation_gate(self, task: Task) -> Flow:
        command = self.ctx.config.project.validation_command
        if not command:
            return "continue"
        outcome = await run_shell_command(
            command, self.ctx.repo_root, timeout_seconds=VALIDATION_TIMEOUT_SECONDS
        )
        if outcome.success:
            return "continue"

        self.ctx.notify("Validation failed, attempting auto-fix...", "warning")
        await self._dispatch(
            self._require_implementer(),
            build_validation_fix_prompt(task, outcome.error_text(), command),
        )
        if self._cancelled(task):
            return "halt"
        outcome = await run_shell_command(
            command, self.ctx.repo_root, timeout_seconds=VALIDATION_TIMEOUT_SECONDS
        )
        if outcome.success:
            return "continue"

        reason = f"Validation still failing after auto-fix: {outcome.error_text()}"
        action = self._action("validation-failure")
        if action == "ignore":
            return "continue"
        if action == "warn-continue":
            self.ctx.notify(reason, "warning")
            return "continue"
        return self._escalate(task, reason)

    async def _run_reviewers(
        self, reviewers: Sequence[tuple[AgentProfile, str]], task: Task, changed: list[str]
    ) -> list[ReviewResult]:
        prompts = [
            build_spec_review_prompt(task, changed)
            if label == "spec"
            else build_quality_review_prompt(task, changed)
            for _, label in reviewers
        ]
        results = await self._dispatch_many([agent for agent, _ in reviewers], prompts)
        for (_, label), result in zip(reviewers, results):
            if has_write_tool_calls(result.messages):
                self.ctx.notify(
                    f"Reviewer {label} attempted write operations; results may be tainted",
                    "warning",
                )
        return [parse_review_output(result.output) for result in results]

    @staticmethod
    def _mark(task: Task, label: str, passed: bool) -> None:
        target, other = (
            (task.reviews_passed, task.reviews_failed)
            if passed
            else (task.reviews_failed, task.reviews_passed)
        )
        if label not in target:
            target.append(label)
        if label in other:
            other.remove(label)

    @staticmethod
    def _unmark(task: Task, label: str) -> None:
        for verdicts in (task.reviews_passed, task.reviews_failed):
            if label in verdicts:
                verdicts.remove(label)

    async def _review_loop(self, task: Task) -> Flow:
        if not self.reviewers:
            for label in ("spec", "quality"):
                self._mark(task, label, passed=True)
            return "continue"

        implementer = self._require_implementer()
        task.status = "reviewing"
        self._save()
        changed = self.ctx.git.changed_files(task.git_sha_before_impl)
        max_attempts = max(1, self.state.config.max_task_review_cycles)
        single_pass = self.state.config.review_mode == "single-pass"

        for attempt in range(max_attempts):
            results = await self._run_reviewers(self.reviewers, task, changed)
            if self._cancelled(task):
                return "halt"
            flow = await self._resolve_inconclusive(task, results, changed)
            if flow != "continue":
                return flow

            failures: list[tuple[str, ReviewFail]] = []
            for (_, label), result in zip(self.reviewers, results):
                match result:
                    case ReviewFail():
                        failures.append((label, result))
                        self._mark(task, label, passed=False)
                    case ReviewPass():
                        self._mark(task, label, passed=True)
                    case ReviewInconclusive():
                        self._unmark(task, label)
            if not failures:
                return "continue"

            if single_pass:
                for label, failure in failures:
                    self.ctx.notify(format_findings(failure.findings, label), "warning")
                return "continue"

            if attempt < max_attempts - 1:
                task.status = "fixing"
                task.fix_attempts += 1
                self._save()
                prompt = build_fix_prompt(
                    task,
                    [format_findings(failure.findings, label) for label, failure in failures],
                    changed,
                )
                await self._dispatch(implementer, prompt)
                if self._cancelled(task):
                    return "halt"
                changed = self.ctx.git.changed_files(task.git_sha_before_impl)
                task.status = "reviewing"
                self._save()

        reason = f"Reviews failed after {max_attempts} attempts"
        action = self._action("review-max-retries")
        if not is_blocking(action):
            if action == "warn-continue":
                self.ctx.notify(f"Task {task.id}: {reason}", "warning")
            return "continue"
        return self._escalate(task, reason)

    async def _resolve_inconclusive(
        self, task: Task, results: list[ReviewResult], changed: list[str]
    ) -> Flow:
        """Re-dispatch reviewers whose verdict could not be parsed, updating ``results``."""
        pending = [index for index, result in enumerate(results) if isinstance(result, ReviewInconclusive)]
        if not pending:
            return "continue"

        action = self._action("parse-error")
        if allows_automatic_retry(action):
            retried = await self._run_reviewers([self.reviewers[index] for index in pending], task, changed)
            if self._cancelled(task):
                return "halt"
            for index, result in zip(pending, retried):
                results[index] = result
            pending = [index for index in pending if isinstance(results[index], ReviewInconclusive)]
            if not pending:
                return "continue"

        first = results[pending[0]]
        parse_error = first.parse_error if isinstance(first, ReviewInconclusive) else ""
        label = self.reviewers[pending[0]][1]
        reason = f"{label} review inconclusive: {parse_error}"
        if not is_blocking(action):
            if action == "warn-continue":
                self.ctx.notify(reason, "warning")
            return "continue"
        return self._escalate(task, reason)

    async def _advisory_reviews(self, task: Task) -> Flow:
        if not self.advisory:
            return "continue"
        changed = self.ctx.git.changed_files(task.git_sha_before_impl)
        results = await self._dispatch_many(
            self.advisory, [build_quality_review_prompt(task, changed) for _ in self.advisory]
        )
        if self._cancelled(task):
            return "halt"
        for agent, result in zip(self.advisory, results):
            if has_write_tool_calls(result.messages):
                self.ctx.notify(
                    f"Reviewer {agent.name} attempted write operations; results may be tainted",
                    "warning",
                )
            match parse_review_output(result.output):
                case ReviewPass():
                    self._mark(task, agent.name, passed=True)
                case ReviewFail(findings=findings):
                    self._mark(task, agent.name, passed=False)
                    if has_critical_findings(findings):
                        return self._escalate(task, f"Critical findings from {agent.name}")
                case ReviewInconclusive(parse_error=error):
                    logger.warning("advisory review %s inconclusive: %s", agent.name, error)
        return "continue"

    def _complete(self, task: Task) -> None:
        task.status = "complete"
        base = task.git_sha_before_impl
        if base:
            squash = self.ctx.git.squash_task_commits(base, task.id, task.title)
            if squash.success:
                task.commit_sha = squash.sha
            else:
                self.ctx.notify(
                    f"Warning: commit squash failed for task {task.id}: {squash.error}", "warning"
                )
        task.summary = TaskSummary(
            title=task.title,
            status=task.status,
            changed_files=self.ctx.git.changed_files(base) if base else [],
        )
        self.state.sync_task_index()
        self._save()

        self.ctx.notify(format_progress_summary(compute_progress_summary(self.state)))
        if self.ctx.ui is not None:
            self.ctx.ui.set_widget(
                "workflow-progress",
                [f"[{'x' if other.terminal else ' '}] {other.title}" for other in self.state.tasks],
            )

    def _checkpoint(self) -> Flow:
        state = self.state
        budget_action = self._action("budget-threshold")
        triggers = []
        for trigger in evaluate_checkpoint_triggers(state, self.ctx.costs):
            if trigger.type in BUDGET_TRIGGERS:
                if budget_action == "ignore":
                    continue
                if budget_action == "warn-continue":
                    self.ctx.notify(trigger.message, "warning")
                    continue
            triggers.append(trigger)
        if not triggers or self.ctx.ui is None:
            return "continue"

        choice = present_checkpoint(triggers, compute_checkpoint_stats(state), self.ctx.ui)
        if choice == "abort":
            state.error = "Aborted at checkpoint"
            return "halt"
        if choice == "adjust":
            adjustment = present_plan_revision(state.tasks, self.ctx.ui)
            if adjustment is not None:
                state.tasks = apply_plan_adjustment(state.tasks, adjustment)
                state.sync_task_index()
                self._save()
        return "continue"

    async def _cross_task_validation(self, task: Task) -> Flow:
        state = self.state
        command = self.ctx.config.project.test_command
        if not command or state.test_baseline is None:
            return "continue"
        cadence = self.ctx.config.workflow
        if not should_run_validation(
            cadence.validation_cadence, cadence.validation_interval, state.count_status("complete")
        ):
            return "continue"

        result = await run_cross_task_validation(command, state.test_baseline, self.ctx.repo_root)
        blocking = list(result.blocking_failures)

        if result.flaky_tests:
            flake_action = self._action("test-flake")
            names = ", ".join(test.name for test in result.flaky_tests)
            if flake_action == "warn-continue":
                self.ctx.notify(f"Detected flaky tests: {names}", "warning")
            elif is_blocking(flake_action):
                blocking.extend(result.flaky_tests)
        if result.classified.pre_existing and self._action("test-preexisting") == "warn-continue":
            names = ", ".join(test.name for test in result.classified.pre_existing)
            self.ctx.notify(f"Pre-existing test failures: {names}", "warning")

        if not blocking:
            return "continue"
        names = ", ".join(test.name for test in blocking)
        reason = f"Task introduced test regression: {names}"
        action = self._action("test-regression")
        if not is_blocking(action):
            if action == "warn-continue":
                self.ctx.notify(reason, "warning")
            return "continue"
        if action == "stop-show-diff":
            files = self.ctx.git.changed_files(task.git_sha_before_impl)
            listing = "\n".join(f"  - {path}" for path in files) or "  (none)"
            self.ctx.notify(f"Files changed by task {task.id}:\n{listing}", "warning")
        return self._escalate(task, reason)


async def run_execute_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    return await TaskExecutor(state, ctx).run()
