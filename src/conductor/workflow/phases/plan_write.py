from __future__ import annotations

import logging
import re
from datetime import date

from conductor.parsers.plan import TASK_FENCE, parse_plan
from conductor.prompts import build_plan_write_prompt
from conductor.workflow.context import PhaseContext
from conductor.workflow.models import Task, WorkflowState

logger = logging.getLogger(__name__)

MAX_PLAN_ATTEMPTS = 2
DESIGN_SUFFIX = re.compile(r"-design\.md$")


def derive_plan_path(state: WorkflowState, plans_dir: str) -> str:
    if state.design_path and DESIGN_SUFFIX.search(state.design_path):
        return DESIGN_SUFFIX.sub("-plan.md", state.design_path)
    return f"{plans_dir.rstrip('/')}/{date.today().isoformat()}-plan.md"


async def run_plan_write_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    planner = ctx.agents.get("planner")
    if planner is None:
        state.error = "Required agent not found: planner"
        return state

    plan_path = derive_plan_path(state, ctx.config.agents.plans_dir)
    target = ctx.repo_root / plan_path
    target.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(MAX_PLAN_ATTEMPTS):
        prompt = build_plan_write_prompt(state.user_description, plan_path, state.design_content)
        if attempt > 0:
            prompt += (
                f"\n\nIMPORTANT: The plan file MUST contain a ```{TASK_FENCE} block "
                "with at least one task."
            )
        result = await ctx.dispatcher.dispatch(planner, prompt, ctx.repo_root, ctx.cancel)
        ctx.charge(state, result)

        if not target.is_file():
            ctx.notify(f"Plan file not written at {plan_path}", "warning")
            continue
        content = target.read_text(encoding="utf-8")
        parsed = parse_plan(content)
        if not parsed:
            ctx.notify(f"No tasks found in plan (attempt {attempt + 1})", "warning")
            continue

        state.tasks = [
            Task(id=index, title=item.title, description=item.description, files=item.files)
            for index, item in enumerate(parsed, start=1)
        ]
        state.current_task_index = 0
        state.plan_path = plan_path
        state.plan_content = content
        state.phase = "plan-review"
        ctx.notify(f"Plan written with {len(state.tasks)} tasks")
        return state

    state.error = f"Plan-write failed: no parseable tasks after {MAX_PLAN_ATTEMPTS} attempts"
    return state
