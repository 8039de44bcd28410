import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from conductor.agents import AgentProfile, discover_agents
from conductor.backends.base import AgentDispatcher, DispatchResult, DispatchUsage
from conductor.config import ConductorConfig
from conductor.state import GitWorkspace, WorkflowStore
from conductor.workflow.context import PhaseContext
from conductor.workflow.interaction import OperatorUI
from conductor.workflow.models import Task, WorkflowState
from conductor.workflow.phases.execute import describe_tool_use, run_execute_phase

PASS_REVIEW = '```conductor-json\n{"passed": true, "findings": [], "summary": "fine"}\n```'
FAIL_REVIEW = (
    '```conductor-json\n{"passed": false, "findings": [{"severity": "high", "file": "a.py",'
    ' "issue": "missing test"}], "mustFix": ["add a test"], "summary": "needs work"}\n```'
)
CRITICAL_REVIEW = (
    '```conductor-json\n{"passed": false, "findings": [{"severity": "critical", "file": "db.py",'
    ' "issue": "sql injection"}], "summary": "unsafe"}\n```'
)


class FakeDispatcher(AgentDispatcher):
    """Answers each agent from a script keyed by agent name."""

    def __init__(self, scripts: dict[str, list[str]] | None = None, cost: float = 0.1) -> None:
        self.scripts = {name: list(outputs) for name, outputs in (scripts or {}).items()}
        self.cost = cost
        self.calls: list[tuple[str, str]] = []

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: Callable[[DispatchResult], None] | None = None,
        on_stream_event: Callable[[dict[str, Any]], None] | None = None,
    ) -> DispatchResult:
        _ = cwd, cancel, on_partial_update, on_stream_event
        self.calls.append((agent.name, task))
        outputs = self.scripts.get(agent.name, [])
        text = outputs.pop(0) if len(outputs) > 1 else (outputs[0] if outputs else "done")
        return DispatchResult(
            agent=agent.name,
            task=task,
            messages=[{"role": "assistant", "content": [{"type": "text", "text": text}]}],
            usage=DispatchUsage(cost=self.cost),
        )

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class CancellingDispatcher(FakeDispatcher):
    """Cancels the run when ``cancel_on`` is dispatched after ``skip`` normal runs."""

    def __init__(
        self, cancel_on: str, scripts: dict[str, list[str]] | None = None, *, skip: int = 0
    ) -> None:
        super().__init__(scripts)
        self.cancel_on = cancel_on
        self.skip = skip

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: Callable[[DispatchResult], None] | None = None,
        on_stream_event: Callable[[dict[str, Any]], None] | None = None,
    ) -> DispatchResult:
        if agent.name != self.cancel_on or cancel is None:
            return await super().dispatch(agent, task, cwd, cancel)
        if self.skip > 0:
            self.skip -= 1
            return await super().dispatch(agent, task, cwd, cancel)
        self.calls.append((agent.name, task))
        cancel.set()
        return DispatchResult(agent=agent.name, task=task, exit_code=130, error_message="Aborted")


class FakeUI(OperatorUI):
    def __init__(
        self, selections: list[str | None] | None = None, edited: str | None = None
    ) -> None:
        self.selections = list(selections or [])
        self.edited = edited
        self.questions: list[str] = []
        self.notices: list[tuple[str, str]] = []

    def select(self, title: str, options: Sequence[str]) -> str | None:
        self.questions.append(title)
        return self.selections.pop(0) if self.selections else None

    def input(self, prompt: str, default: str | None = None) -> str | None:
        return default

    def confirm(self, title: str, message: str) -> bool | None:
        return True

    def editor(self, title: str, text: str) -> str | None:
        return text if self.edited is None else self.edited

    def notify(self, message: str, level: str = "info") -> None:
        self.notices.append((message, level))


def _context(
    tmp_path: Path,
    dispatcher: FakeDispatcher,
    agents: Sequence[str],
    *,
    ui: OperatorUI | None = None,
    test_command: str = "",
    validation_command: str = "",
    failure_actions: dict[str, str] | None = None,
) -> PhaseContext:
    config = ConductorConfig.default()
    config.agents.enabled = list(agents)
    config.project.test_command = test_command
    config.project.validation_command = validation_command
    config.failure_actions = dict(failure_actions or {})
    return PhaseContext(
        repo_root=tmp_path,
        config=config,
        store=WorkflowStore(tmp_path, write_progress=False),
        git=GitWorkspace(tmp_path),
        dispatcher=dispatcher,
        agents=discover_agents(config),
        ui=ui,
    )


def _state(*titles: str, mode: str = "auto", review_mode: str = "iterative") -> WorkflowState:
    state = WorkflowState.create("demo")
    state.phase = "execute"
    state.config.execution_mode = mode
    state.config.review_mode = review_mode
    state.tasks = [Task(id=index, title=title) for index, title in enumerate(titles, start=1)]
    return state


def test_without_reviewers_tasks_pass_review_without_dispatch(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    ctx = _context(tmp_path, dispatcher, ["implementer"])

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    task = state.tasks[0]
    assert task.status == "complete"
    assert task.reviews_passed == ["spec", "quality"]
    assert dispatcher.names() == ["implementer"]
    assert state.phase == "finalize"
    assert round(state.total_cost_usd, 2) == 0.1


def test_failed_review_triggers_one_fix_cycle(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher(
        {"spec-reviewer": [PASS_REVIEW], "quality-reviewer": [FAIL_REVIEW, PASS_REVIEW]}
    )
    ctx = _context(tmp_path, dispatcher, ["implementer", "spec-reviewer", "quality-reviewer"])

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    task = state.tasks[0]
    assert task.status == "complete"
    assert task.fix_attempts == 1
    assert sorted(task.reviews_passed) == ["quality", "spec"]
    assert task.reviews_failed == []
    assert dispatcher.names().count("implementer") == 2
    fix_prompt = [prompt for name, prompt in dispatcher.calls if name == "implementer"][1]
    assert "missing test" in fix_prompt


def test_single_pass_review_reports_findings_without_fixing(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher({"spec-reviewer": [PASS_REVIEW], "quality-reviewer": [FAIL_REVIEW]})
    ui = FakeUI()
    ctx = _context(
        tmp_path, dispatcher, ["implementer", "spec-reviewer", "quality-reviewer"], ui=ui
    )

    state = asyncio.run(run_execute_phase(_state("one", review_mode="single-pass"), ctx))

    task = state.tasks[0]
    assert task.status == "complete"
    assert task.fix_attempts == 0
    assert task.reviews_failed == ["quality"]
    assert dispatcher.names().count("implementer") == 1
    assert any("needs work" in message for message, level in ui.notices if level == "warning")


def test_cost_guard_halts_before_dispatch(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    ctx = _context(tmp_path, dispatcher, ["implementer"])
    state = _state("one")
    state.total_cost_usd = 25.0

    state = asyncio.run(run_execute_phase(state, ctx))

    assert state.error == "Cost budget exceeded: $25.00 spent (hard limit: $20.00)"
    assert state.phase == "done"
    assert dispatcher.calls == []
    assert state.tasks[0].status == "pending"


def test_missing_implementer_is_an_error(tmp_path: Path) -> None:
    ctx = _context(tmp_path, FakeDispatcher(), ["quality-reviewer"])

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.error == "Required agent not found: implementer"
    assert state.phase == "execute"


def test_batch_mode_pauses_after_batch(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    ctx = _context(tmp_path, dispatcher, ["implementer"])
    state = _state("one", "two", "three", mode="batch")
    state.config.batch_size = 2

    state = asyncio.run(run_execute_phase(state, ctx))

    assert [task.status for task in state.tasks] == ["complete", "complete", "pending"]
    assert state.phase == "execute"
    assert state.current_task_index == 2

    state = asyncio.run(run_execute_phase(state, ctx))

    assert state.tasks[2].status == "complete"
    assert state.phase == "finalize"


def test_checkpoint_abort_keeps_phase(tmp_path: Path) -> None:
    ui = FakeUI(["Abort"])
    ctx = _context(tmp_path, FakeDispatcher(), ["implementer"], ui=ui)

    state = asyncio.run(run_execute_phase(_state("one", "two", mode="checkpoint"), ctx))

    assert state.error == "Aborted at checkpoint"
    assert state.phase == "execute"
    assert state.tasks[0].status == "complete"
    assert state.tasks[1].status == "pending"
    assert ui.questions[0].startswith("Checkpoint: 1/2 tasks done")


def test_inconclusive_review_without_ui_skips_task(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher({"quality-reviewer": ["I think it is fine."]})
    ctx = _context(tmp_path, dispatcher, ["implementer", "quality-reviewer"])

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "skipped"
    assert dispatcher.names().count("quality-reviewer") == 2
    assert state.phase == "finalize"


def test_repeated_test_failure_escalates_as_regression(tmp_path: Path) -> None:
    script = tmp_path / "suite.sh"
    script.write_text(
        "#!/usr/bin/env bash\n"
        "echo run >> runs.log\n"
        'if [ "$(wc -l < runs.log)" -eq 1 ]; then echo " ✓ adds"; else echo " ✗ adds"; fi\n',
        encoding="utf-8",
    )
    ui = FakeUI(["Skip"])
    ctx = _context(tmp_path, FakeDispatcher(), ["implementer"], ui=ui, test_command=f"bash {script}")

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.test_baseline is not None
    assert state.test_baseline.known_failures == []
    assert "test regression" in ui.questions[0]
    assert "adds" in ui.questions[0]
    assert state.tasks[0].status == "skipped"
    assert len((tmp_path / "runs.log").read_text(encoding="utf-8").splitlines()) == 3


def test_describe_tool_use_labels_first_tool_call() -> None:
    event = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Editing"},
                {"type": "tool_use", "name": "Edit", "input": {"file_path": "src/a.py"}},
            ]
        },
    }

    assert describe_tool_use(event) == "Edit src/a.py"
    assert describe_tool_use({"type": "result"}) is None


@pytest.mark.parametrize("cancel_on", ["quality-reviewer", "security-reviewer"])
def test_cancel_during_review_leaves_task_pending(tmp_path: Path, cancel_on: str) -> None:
    dispatcher = CancellingDispatcher(
        cancel_on,
        {
            "spec-reviewer": [PASS_REVIEW],
            "quality-reviewer": [PASS_REVIEW],
            "security-reviewer": [PASS_REVIEW],
        },
    )
    agents = ["implementer", "spec-reviewer", "quality-reviewer", "security-reviewer"]
    ctx = _context(tmp_path, dispatcher, agents)

    state = asyncio.run(run_execute_phase(_state("one", "two"), ctx))

    assert [task.status for task in state.tasks] == ["pending", "pending"]
    assert state.phase == "execute"
    assert state.error is None
    assert dispatcher.names().count(cancel_on) == 1
    assert ctx.store.load().tasks[0].status == "pending"


def test_cancel_during_fix_leaves_task_pending(tmp_path: Path) -> None:
    dispatcher = CancellingDispatcher("implementer", {"quality-reviewer": [FAIL_REVIEW]}, skip=1)
    ctx = _context(tmp_path, dispatcher, ["implementer", "quality-reviewer"])

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "pending"
    assert state.tasks[0].fix_attempts == 1
    assert dispatcher.names() == ["implementer", "quality-reviewer", "implementer"]


def test_validation_failure_is_fixed_once_then_passes(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    command = (
        "echo run >> validate.log; "
        "[ \"$(wc -l < validate.log)\" -ge 2 ] || { echo 'unused import in a.py' >&2; exit 1; }"
    )
    ctx = _context(tmp_path, dispatcher, ["implementer"], validation_command=command)

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "complete"
    assert dispatcher.names() == ["implementer", "implementer"]
    fix_prompt = dispatcher.calls[1][1]
    assert fix_prompt.startswith('Fix these validation errors for task "one":')
    assert "unused import in a.py" in fix_prompt
    assert len((tmp_path / "validate.log").read_text(encoding="utf-8").splitlines()) == 2


def test_validation_still_failing_escalates(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    ui = FakeUI(["Skip"])
    ctx = _context(
        tmp_path,
        dispatcher,
        ["implementer"],
        ui=ui,
        validation_command="echo 'type error in a.py' >&2; exit 1",
    )

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "skipped"
    assert dispatcher.names() == ["implementer", "implementer"]
    assert "Validation still failing after auto-fix: type error in a.py" in ui.questions[0]


def test_validation_failure_can_warn_and_continue(tmp_path: Path) -> None:
    ui = FakeUI()
    ctx = _context(
        tmp_path,
        FakeDispatcher(),
        ["implementer"],
        ui=ui,
        validation_command="echo 'type error in a.py' >&2; exit 1",
        failure_actions={"validation-failure": "warn-continue"},
    )

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "complete"
    assert ui.questions == []
    assert any(
        message.startswith("Validation still failing") and level == "warning"
        for message, level in ui.notices
    )


def test_critical_advisory_finding_escalates_task(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher({"security-reviewer": [CRITICAL_REVIEW]})
    ui = FakeUI(["Skip"])
    ctx = _context(tmp_path, dispatcher, ["implementer", "security-reviewer"], ui=ui)

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    task = state.tasks[0]
    assert task.status == "skipped"
    assert "security-reviewer" in task.reviews_failed
    assert "Critical findings from security-reviewer" in ui.questions[0]
    assert state.phase == "finalize"


def test_non_critical_advisory_finding_is_recorded(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher({"security-reviewer": [FAIL_REVIEW]})
    ui = FakeUI()
    ctx = _context(tmp_path, dispatcher, ["implementer", "security-reviewer"], ui=ui)

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    assert state.tasks[0].status == "complete"
    assert state.tasks[0].reviews_failed == ["security-reviewer"]
    assert ui.questions == []


def test_checkpoint_adjust_plan_rewrites_remaining_tasks(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher()
    ui = FakeUI(["Adjust plan"], edited="3: three\n+ four\n")
    ctx = _context(tmp_path, dispatcher, ["implementer"], ui=ui)

    state = asyncio.run(run_execute_phase(_state("one", "two", "three", mode="checkpoint"), ctx))

    assert ui.questions[0].startswith("Checkpoint: 1/3 tasks done")
    assert [(task.id, task.title) for task in state.tasks] == [(1, "one"), (3, "three"), (4, "four")]
    assert [task.status for task in state.tasks] == ["complete", "pending", "pending"]
    assert state.current_task_index == 1
    assert state.phase == "execute"

    state = asyncio.run(run_execute_phase(state, ctx))

    assert state.tasks[1].status == "complete"
    assert dispatcher.calls[-1][1].startswith("## Task: three")


def test_inconclusive_review_allowed_through_is_not_recorded_as_pass(tmp_path: Path) -> None:
    dispatcher = FakeDispatcher(
        {"spec-reviewer": [PASS_REVIEW], "quality-reviewer": ["Seems alright."]}
    )
    ctx = _context(
        tmp_path,
        dispatcher,
        ["implementer", "spec-reviewer", "quality-reviewer"],
        failure_actions={"parse-error": "warn-continue"},
    )

    state = asyncio.run(run_execute_phase(_state("one"), ctx))

    task = state.tasks[0]
    assert task.status == "complete"
    assert task.reviews_passed == ["spec"]
    assert task.reviews_failed == []
    assert dispatcher.names().count("quality-reviewer") == 1
