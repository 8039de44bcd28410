import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from conductor.agents import AgentProfile, discover_agents
from conductor.backends.base import AgentDispatcher, DispatchResult, DispatchUsage
from conductor.config import ConductorConfig
from conductor.state import GitWorkspace, WorkflowStore
from conductor.workflow.context import PhaseContext
from conductor.workflow.queue import QueuedWorkflow, WorkflowQueue
from conductor.workflow.router import NO_WORKFLOW_MESSAGE, run_workflow

PLAN = """# Greeting plan

Say hello politely.

```conductor-tasks
- title: Add greeting
  description: Print hello.
  files: [src/greet.py]
- title: Test greeting
  description: Cover the greeting.
  files: [tests/test_greet.py]
```
"""


class PlanningDispatcher(AgentDispatcher):
    """Planner writes the plan file it is asked for; everyone else just reports done."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root
        self.calls: list[str] = []

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
        self.calls.append(agent.name)
        if agent.name == "planner":
            plan_path = task.splitlines()[0].removeprefix("Write a plan file to ").rstrip(".")
            target = self.repo_root / plan_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(PLAN, encoding="utf-8")
        return DispatchResult(
            agent=agent.name,
            task=task,
            messages=[{"role": "assistant", "content": [{"type": "text", "text": "done"}]}],
            usage=DispatchUsage(cost=0.1),
        )


def _context(tmp_path: Path, *, hard_limit: float = 20.0) -> tuple[PhaseContext, PlanningDispatcher]:
    config = ConductorConfig.default()
    config.agents.enabled = ["planner", "implementer"]
    config.workflow.review_mode = "single-pass"
    config.workflow.execution_mode = "auto"
    config.costs.hard_limit_usd = hard_limit
    dispatcher = PlanningDispatcher(tmp_path)
    ctx = PhaseContext(
        repo_root=tmp_path,
        config=config,
        store=WorkflowStore(tmp_path),
        git=GitWorkspace(tmp_path),
        dispatcher=dispatcher,
        agents=discover_agents(config),
        queue=WorkflowQueue(tmp_path),
    )
    return ctx, dispatcher


def test_resume_without_workflow_is_an_error(tmp_path: Path) -> None:
    ctx, _ = _context(tmp_path)

    result = asyncio.run(run_workflow(ctx))

    assert result.status == "error"
    assert result.message == NO_WORKFLOW_MESSAGE


def test_workflow_runs_to_plan_approval_and_completes(tmp_path: Path) -> None:
    ctx, dispatcher = _context(tmp_path)

    waiting = asyncio.run(run_workflow(ctx, "add a greeting"))

    assert waiting.status == "waiting"
    assert "The plan contains 2 tasks:" in waiting.message
    assert "Do you approve this plan?" in waiting.message
    assert waiting.state is not None
    assert waiting.state.phase == "plan-review"
    assert waiting.state.design_content == "add a greeting"
    assert ctx.store.exists()

    pending = asyncio.run(run_workflow(ctx))
    assert pending.status == "waiting"

    invalid = asyncio.run(run_workflow(ctx, "maybe"))
    assert invalid.status == "error"
    assert "Invalid choice" in invalid.message

    done = asyncio.run(run_workflow(ctx, "approve"))

    assert done.status == "done"
    assert done.message.startswith("# Workflow Complete")
    assert "[done] Add greeting" in done.message
    assert "[done] Test greeting" in done.message
    assert "Skipped: no quality-reviewer agent available" in done.message
    assert dispatcher.calls == ["planner", "implementer", "implementer"]
    assert not ctx.store.exists()


def test_revise_returns_to_plan_write(tmp_path: Path) -> None:
    ctx, dispatcher = _context(tmp_path)
    asyncio.run(run_workflow(ctx, "add a greeting"))

    result = asyncio.run(run_workflow(ctx, "2"))

    assert result.status == "waiting"
    assert result.state is not None
    assert result.state.plan_review_cycles == 0
    assert dispatcher.calls == ["planner", "planner"]


def test_budget_error_ends_workflow_and_clears_state(tmp_path: Path) -> None:
    ctx, _ = _context(tmp_path, hard_limit=0.05)
    asyncio.run(run_workflow(ctx, "add a greeting"))

    result = asyncio.run(run_workflow(ctx, "approve"))

    assert result.status == "error"
    assert result.message.startswith("Cost budget exceeded")
    assert not ctx.store.exists()


def test_queued_workflow_starts_after_finalize(tmp_path: Path) -> None:
    ctx, _ = _context(tmp_path)
    assert ctx.queue is not None
    ctx.queue.enqueue(QueuedWorkflow(title="farewell", description="add a farewell"))
    asyncio.run(run_workflow(ctx, "add a greeting"))

    result = asyncio.run(run_workflow(ctx, "approve"))

    assert result.status == "waiting"
    assert result.state is not None
    assert result.state.user_description == "add a farewell"
    assert result.state.phase == "plan-review"
    assert ctx.queue.peek() == []
