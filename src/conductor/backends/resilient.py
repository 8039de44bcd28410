from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.backends.base import (
    AgentDispatcher,
    DispatchError,
    DispatchResult,
    DispatchTimeoutError,
    PartialUpdateHook,
    StreamEventHook,
)
from conductor.workflow.taxonomy import allows_automatic_retry, resolve_failure_action

if TYPE_CHECKING:
    from conductor.agents import AgentProfile

logger = logging.getLogger(__name__)

DispatchEventHook = Callable[[dict[str, Any]], None]
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5


class ResilientDispatcher(AgentDispatcher):
    """Retries timed-out dispatches and turns dispatch errors into failed results."""

    def __init__(
        self,
        inner: AgentDispatcher,
        retry_policy: RetryPolicy,
        *,
        failure_actions: Mapping[str, str] | None = None,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.inner = inner
        self.retry_policy = retry_policy
        self.failure_actions = dict(failure_actions or {})
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_budget(self) -> int:
        action = resolve_failure_action("tool-timeout", self.failure_actions)
        if allows_automatic_retry(action):
            return self.retry_policy.max_retries + 1
        return 1

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: PartialUpdateHook | None = None,
        on_stream_event: StreamEventHook | None = None,
    ) -> DispatchResult:
        errors: list[str] = []
        last_exit_code = 1
        for attempt in range(self._attempt_budget()):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "dispatch_retry",
                        "agent": agent.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await self.inner.dispatch(
                    agent, task, cwd, cancel, on_partial_update, on_stream_event
                )
            except DispatchTimeoutError as exc:
                last_exit_code = TIMEOUT_EXIT_CODE
                errors.append(f"{agent.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "dispatch_attempt_failed",
                        "agent": agent.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": True,
                    }
                )
                if cancel is not None and cancel.is_set():
                    break
            except DispatchError as exc:
                last_exit_code = exc.exit_code or 1
                errors.append(f"{agent.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "dispatch_attempt_failed",
                        "agent": agent.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                break

        summary = "; ".join(errors[-4:])
        logger.warning("dispatch of %s failed: %s", agent.name, summary)
        return DispatchResult(
            agent=agent.name,
            task=task,
            exit_code=last_exit_code,
            error_message=f"All dispatch attempts failed. {summary}",
        )
