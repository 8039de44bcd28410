from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conductor.agents import AgentProfile

Message = dict[str, Any]
PartialUpdateHook = Callable[["DispatchResult"], None]
StreamEventHook = Callable[[dict[str, Any]], None]

WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


class DispatchError(RuntimeError):
    """Raised when a worker dispatch fails outside the worker itself."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class DispatchTimeoutError(DispatchError):
    """Raised when a worker exceeds the configured timeout."""


class DispatchProcessError(DispatchError):
    """Raised when the worker process cannot be started or read."""


@dataclass(slots=True)
class DispatchUsage:
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    turns: int = 0


@dataclass(slots=True)
class DispatchResult:
    agent: str
    task: str
    exit_code: int = 0
    messages: list[Message] = field(default_factory=list)
    usage: DispatchUsage = field(default_factory=DispatchUsage)
    stderr: str = ""
    error_message: str | None = None

    @property
    def failed(self) -> bool:
        return self.exit_code != 0 or bool(self.error_message)

    @property
    def output(self) -> str:
        return final_output(self.messages)


class AgentDispatcher(ABC):
    @abstractmethod
    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: PartialUpdateHook | None = None,
        on_stream_event: StreamEventHook | None = None,
    ) -> DispatchResult:
        """Run one worker to completion and return its transcript."""

    async def dispatch_many(
        self,
        agents: Sequence[AgentProfile],
        tasks: Sequence[str],
        cwd: Path,
        cancel: asyncio.Event | None = None,
    ) -> list[DispatchResult]:
        if len(agents) != len(tasks):
            raise ValueError("dispatch_many needs one task per agent")
        return list(
            await asyncio.gather(
                *(self.dispatch(agent, task, cwd, cancel) for agent, task in zip(agents, tasks))
            )
        )


def _content_parts(message: Message) -> list[dict[str, Any]]:
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [part for part in content if isinstance(part, dict)]
    return []


def final_output(messages: Sequence[Message]) -> str:
    """Text of the last assistant message that has any."""
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        for part in _content_parts(message):
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                return part["text"]
    return ""


def has_write_tool_calls(messages: Sequence[Message]) -> bool:
    for message in messages:
        if message.get("role") != "assistant":
            continue
        for part in _content_parts(message):
            if part.get("type") == "tool_use" and part.get("name") in WRITE_TOOLS:
                return True
    return False
