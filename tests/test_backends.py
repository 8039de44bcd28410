import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from conductor.agents import AgentProfile
from conductor.backends import RetryPolicy
from conductor.backends.base import (
    AgentDispatcher,
    DispatchError,
    DispatchProcessError,
    DispatchResult,
    DispatchTimeoutError,
    DispatchUsage,
    final_output,
    has_write_tool_calls,
)
from conductor.backends.claude import ClaudeDispatcher
from conductor.backends.resilient import ResilientDispatcher

WORKER = AgentProfile(
    name="implementer",
    role="implementation",
    system_prompt="Implement the task.",
    tools=["Edit", "Read"],
)


class FlakyDispatcher(AgentDispatcher):
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = list(failures)
        self.calls = 0

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: Any = None,
        on_stream_event: Any = None,
    ) -> DispatchResult:
        _ = cwd, cancel, on_partial_update, on_stream_event
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return DispatchResult(agent=agent.name, task=task, usage=DispatchUsage(cost=0.1))


def _stream_lines(*events: dict[str, Any]) -> list[bytes]:
    return [(json.dumps(event) + "\n").encode("utf-8") for event in events]


def _patch_subprocess(monkeypatch: pytest.MonkeyPatch, lines: list[bytes], exit_code: int = 0) -> list[tuple]:
    calls: list[tuple] = []

    class FakeStdout:
        def __init__(self) -> None:
            self._lines = list(lines)

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if not self._lines:
                raise StopAsyncIteration
            return self._lines.pop(0)

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout()
            self.stderr = FakeStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = exit_code
            return exit_code

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        calls.append(args)
        _ = kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return calls


def test_claude_build_command_shape() -> None:
    dispatcher = ClaudeDispatcher(binary="claude", model="sonnet")
    command = dispatcher.build_command(WORKER, "implement feature")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert "--verbose" in command
    assert command[command.index("--model") + 1] == "sonnet"
    assert command[command.index("--append-system-prompt") + 1] == "Implement the task."
    assert command[command.index("--allowedTools") + 1] == "Edit,Read"


def test_claude_dispatch_collects_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = _stream_lines(
        {"type": "system", "subtype": "init"},
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "tool_use", "name": "Edit", "input": {"file_path": "a.py"}}],
                "usage": {"input_tokens": 10, "output_tokens": 4},
            },
        },
        {"type": "user", "message": {"content": [{"type": "tool_result", "content": "ok"}]}},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "All done."}]}},
        {"type": "result", "total_cost_usd": 0.42, "num_turns": 3},
    )
    lines.insert(1, b"not json\n")
    calls = _patch_subprocess(monkeypatch, lines)
    events: list[dict[str, Any]] = []
    partials: list[int] = []

    result = asyncio.run(
        ClaudeDispatcher().dispatch(
            WORKER,
            "implement feature",
            Path("."),
            on_partial_update=lambda current: partials.append(len(current.messages)),
            on_stream_event=events.append,
        )
    )

    assert calls[0][0] == "claude"
    assert result.failed is False
    assert result.output == "All done."
    assert result.usage.cost == 0.42
    assert result.usage.turns == 3
    assert result.usage.input_tokens == 10
    assert [message["role"] for message in result.messages] == ["assistant", "user", "assistant"]
    assert has_write_tool_calls(result.messages) is True
    assert partials == [1, 2, 3]
    assert len(events) == 5


def test_claude_dispatch_reports_worker_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_subprocess(
        monkeypatch,
        _stream_lines({"type": "result", "is_error": True, "result": "rate limited"}),
        exit_code=1,
    )

    result = asyncio.run(ClaudeDispatcher().dispatch(WORKER, "task", Path(".")))

    assert result.failed is True
    assert result.exit_code == 1
    assert result.error_message == "rate limited"


def test_claude_dispatch_missing_binary(tmp_path: Path) -> None:
    dispatcher = ClaudeDispatcher(binary=str(tmp_path / "no-such-claude"))

    result = asyncio.run(dispatcher.dispatch(WORKER, "task", tmp_path))

    assert result.exit_code == 127
    assert "Claude binary not found" in (result.error_message or "")


def test_claude_dispatch_honours_prior_cancellation(tmp_path: Path) -> None:
    cancel = asyncio.Event()
    cancel.set()

    result = asyncio.run(ClaudeDispatcher().dispatch(WORKER, "task", tmp_path, cancel))

    assert result.exit_code == 1
    assert result.error_message == "Subagent was aborted"


def test_resilient_dispatcher_retries_timeouts() -> None:
    events: list[dict[str, Any]] = []
    inner = FlakyDispatcher([DispatchTimeoutError("slow", agent="implementer")])
    dispatcher = ResilientDispatcher(
        inner, RetryPolicy(max_retries=1, backoff_seconds=0.0), event_hook=events.append
    )

    result = asyncio.run(dispatcher.dispatch(WORKER, "task", Path(".")))

    assert result.failed is False
    assert inner.calls == 2
    assert [event["event"] for event in events] == ["dispatch_attempt_failed", "dispatch_retry"]


def test_resilient_dispatcher_returns_failed_result_after_exhaustion() -> None:
    inner = FlakyDispatcher(
        [DispatchTimeoutError("slow"), DispatchTimeoutError("still slow")]
    )
    dispatcher = ResilientDispatcher(inner, RetryPolicy(max_retries=1, backoff_seconds=0.0))

    result = asyncio.run(dispatcher.dispatch(WORKER, "task", Path(".")))

    assert result.exit_code == 124
    assert result.error_message is not None
    assert result.error_message.startswith("All dispatch attempts failed.")


def test_resilient_dispatcher_does_not_retry_when_timeouts_escalate() -> None:
    inner = FlakyDispatcher([DispatchTimeoutError("slow")])
    dispatcher = ResilientDispatcher(
        inner,
        RetryPolicy(max_retries=3, backoff_seconds=0.0),
        failure_actions={"tool-timeout": "escalate"},
    )

    result = asyncio.run(dispatcher.dispatch(WORKER, "task", Path(".")))

    assert inner.calls == 1
    assert result.failed is True


def test_resilient_dispatcher_stops_on_non_timeout_errors() -> None:
    inner = FlakyDispatcher([DispatchError("cannot start", exit_code=2, retriable=False)])
    dispatcher = ResilientDispatcher(inner, RetryPolicy(max_retries=3, backoff_seconds=0.0))

    result = asyncio.run(dispatcher.dispatch(WORKER, "task", Path(".")))

    assert inner.calls == 1
    assert result.exit_code == 2


def test_dispatch_many_requires_matching_lengths() -> None:
    dispatcher = FlakyDispatcher([])

    with pytest.raises(ValueError):
        asyncio.run(dispatcher.dispatch_many([WORKER], ["a", "b"], Path(".")))

    results = asyncio.run(dispatcher.dispatch_many([WORKER, WORKER], ["a", "b"], Path(".")))
    assert [result.task for result in results] == ["a", "b"]


def test_final_output_uses_last_assistant_text() -> None:
    messages = [
        {"role": "assistant", "content": [{"type": "text", "text": "first"}]},
        {"role": "user", "content": "reply"},
        {"role": "assistant", "content": [{"type": "tool_use", "name": "Read", "input": {}}]},
    ]

    assert final_output(messages) == "first"
    assert has_write_tool_calls(messages) is False
    assert final_output([]) == ""


def test_claude_dispatch_without_pipes_is_a_process_error(monkeypatch: pytest.MonkeyPatch) -> None:
    class PipelessProcess:
        stdout = None
        stderr = None
        returncode = None

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> PipelessProcess:
        _ = args, kwargs
        return PipelessProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(DispatchProcessError) as excinfo:
        asyncio.run(ClaudeDispatcher().dispatch(WORKER, "implement feature", Path(".")))

    assert excinfo.value.retriable is False
    assert excinfo.value.agent == "implementer"
