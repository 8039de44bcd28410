from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from conductor.agents import AgentProfile, discover_agents
from conductor.backends import AgentDispatcher, ClaudeDispatcher, DispatchResult, ResilientDispatcher, RetryPolicy
from conductor.config import ConductorConfig
from conductor.state.gitops import GitWorkspace
from conductor.state.store import WorkflowStore
from conductor.workflow.checkpoint import CostThresholds
from conductor.workflow.interaction import OperatorUI
from conductor.workflow.models import WorkflowState
from conductor.workflow.queue import WorkflowQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PhaseContext:
    """Everything a phase handler needs besides the workflow state itself."""

    repo_root: Path
    config: ConductorConfig
    store: WorkflowStore
    git: GitWorkspace
    dispatcher: AgentDispatcher
    agents: dict[str, AgentProfile]
    ui: OperatorUI | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    queue: WorkflowQueue | None = None

    @classmethod
    def create(
        cls,
        repo_root: Path,
        config: ConductorConfig,
        *,
        ui: OperatorUI | None = None,
        dispatcher: AgentDispatcher | None = None,
        agents: dict[str, AgentProfile] | None = None,
    ) -> PhaseContext:
        root = repo_root.resolve()
        if dispatcher is None:
            backend = config.backend
            dispatcher = ResilientDispatcher(
                ClaudeDispatcher(
                    backend.binary,
                    model=config.agents.model or None,
                    timeout_seconds=backend.timeout_seconds,
                ),
                RetryPolicy(
                    max_retries=backend.max_retries,
                    backoff_seconds=backend.retry_backoff_seconds,
                ),
                failure_actions=config.failure_actions,
                event_hook=lambda event: logger.info("dispatch event: %s", event),
            )
        return cls(
            repo_root=root,
            config=config,
            store=WorkflowStore(root),
            git=GitWorkspace(root),
            dispatcher=dispatcher,
            agents=agents if agents is not None else discover_agents(config, root),
            ui=ui,
            queue=WorkflowQueue(root),
        )

    @property
    def costs(self) -> CostThresholds:
        return CostThresholds(
            warn_at_usd=self.config.costs.warn_at_usd,
            hard_limit_usd=self.config.costs.hard_limit_usd,
        )

    def charge(self, state: WorkflowState, *results: DispatchResult) -> None:
        """Add dispatch cost to the state and persist it right away."""
        for result in results:
            state.add_cost(result.usage.cost)
        self.store.save(state)

    def notify(self, message: str, level: str = "info") -> None:
        if self.ui is not None:
            self.ui.notify(message, level)
        else:
            logger.log(logging.WARNING if level in {"warning", "error"} else logging.INFO, message)
