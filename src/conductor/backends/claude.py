from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.backends.base import (
    AgentDispatcher,
    DispatchProcessError,
    DispatchResult,
    DispatchTimeoutError,
    PartialUpdateHook,
    StreamEventHook,
)

if TYPE_CHECKING:
    from conductor.agents import AgentProfile

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
ABORTED_MESSAGE = "Subagent was aborted"


class ClaudeDispatcher(AgentDispatcher):
    """Runs each worker as a ``claude -p`` subprocess speaking stream-json."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str | None = None,
        timeout_seconds: float | None = 900.0,
    ) -> None:
        self.binary = binary
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_command(self, agent: AgentProfile, task: str) -> list[str]:
        command = [self.binary, "-p", task, "--output-format", "stream-json", "--verbose"]
        model = agent.model or self.model
        if model:
            command.extend(["--model", model])
        if agent.system_prompt.strip():
            command.extend(["--append-system-prompt", agent.system_prompt])
        if agent.tools:
            command.extend(["--allowedTools", ",".join(agent.tools)])
        return command

    @staticmethod
    def _apply_event(result: DispatchResult, event: dict[str, Any]) -> bool:
        """Fold one stream event into ``result``; True when a message was added."""
        event_type = event.get("type")
        message = event.get("message")
        if event_type in {"assistant", "user"} and isinstance(message, dict):
            message.setdefault("role", event_type)
            result.messages.append(message)
            if event_type == "assistant":
                result.usage.turns += 1
                usage = message.get("usage")
                if isinstance(usage, dict):
                    result.usage.input_tokens += int(usage.get("input_tokens") or 0)
                    result.usage.output_tokens += int(usage.get("output_tokens") or 0)
            return True
        if event_type == "result":
            cost = event.get("total_cost_usd")
            if isinstance(cost, (int, float)):
                result.usage.cost = float(cost)
            turns = event.get("num_turns")
            if isinstance(turns, int) and turns > result.usage.turns:
                result.usage.turns = turns
            if event.get("is_error"):
                detail = event.get("result") or event.get("subtype") or "worker reported an error"
                result.error_message = str(detail)
        return False

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            return

    async def dispatch(
        self,
        agent: AgentProfile,
        task: str,
        cwd: Path,
        cancel: asyncio.Event | None = None,
        on_partial_update: PartialUpdateHook | None = None,
        on_stream_event: StreamEventHook | None = None,
    ) -> DispatchResult:
        result = DispatchResult(agent=agent.name, task=task)
        if cancel is not None and cancel.is_set():
            result.exit_code = 1
            result.error_message = ABORTED_MESSAGE
            return result

        command = self.build_command(agent, task)
        logger.debug("dispatching %s in %s", agent.name, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError:
            result.exit_code = 127
            result.error_message = f"Claude binary not found: {self.binary}"
            return result
        except OSError as exc:
            raise DispatchProcessError(
                f"Cannot start {self.binary}: {exc}", agent=agent.name, retriable=False
            ) from exc

        stdout, stderr = process.stdout, process.stderr
        if stdout is None or stderr is None:
            raise DispatchProcessError(
                f"{self.binary} started without output pipes", agent=agent.name, retriable=False
            )

        async def _read_stdout() -> None:
            async for raw_line in stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("skipping non-json output from %s: %s", agent.name, line[:120])
                    continue
                if not isinstance(event, dict):
                    continue
                if on_stream_event is not None:
                    on_stream_event(event)
                if self._apply_event(result, event) and on_partial_update is not None:
                    on_partial_update(result)

        async def _read_stderr() -> None:
            result.stderr = (await stderr.read()).decode("utf-8", errors="replace")

        async def _watch_cancel(event: asyncio.Event) -> None:
            await event.wait()
            await self._terminate(process)

        watcher = asyncio.create_task(_watch_cancel(cancel)) if cancel is not None else None
        try:
            await asyncio.wait_for(
                asyncio.gather(_read_stdout(), _read_stderr(), process.wait()),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            await self._terminate(process)
            raise DispatchTimeoutError(
                f"{agent.name} timed out after {self.timeout_seconds:.0f}s",
                agent=agent.name,
                retriable=True,
            ) from exc
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        result.exit_code = process.returncode if process.returncode is not None else 1
        if cancel is not None and cancel.is_set():
            result.exit_code = 1
            result.error_message = ABORTED_MESSAGE
        logger.debug(
            "%s finished: exit=%d cost=$%.4f turns=%d",
            agent.name,
            result.exit_code,
            result.usage.cost,
            result.usage.turns,
        )
        return result
