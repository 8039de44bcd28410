from __future__ import annotations

import logging

from conductor.workflow.context import PhaseContext
from conductor.workflow.models import WorkflowState

logger = logging.getLogger(__name__)

DESIGN_GLOB = "*-design.md"


def find_latest_design(ctx: PhaseContext) -> str | None:
    plans_dir = ctx.repo_root / ctx.config.agents.plans_dir
    if not plans_dir.is_dir():
        return None
    designs = sorted(plans_dir.glob(DESIGN_GLOB), reverse=True)
    if not designs:
        return None
    return designs[0].relative_to(ctx.repo_root).as_posix()


async def run_brainstorm_phase(
    state: WorkflowState, ctx: PhaseContext, user_input: str | None = None
) -> WorkflowState:
    if state.design_content is None:
        design_path = state.design_path or find_latest_design(ctx)
        if design_path is not None:
            state.design_path = design_path
            state.design_content = (ctx.repo_root / design_path).read_text(encoding="utf-8")
            logger.info("using design document %s", design_path)
        else:
            state.design_content = state.user_description
    state.phase = "plan-write"
    return state
