from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ERROR_TAIL_CHARS = 500


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def error_text(self, limit: int = ERROR_TAIL_CHARS) -> str:
        if self.timed_out:
            return f"Command timed out: {self.command}"
        text = self.stderr.strip() or self.stdout.strip() or f"exit code {self.exit_code}"
        return text[-limit:]


async def run_shell_command(command: str, cwd: Path, *, timeout_seconds: float = 120.0) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, stderr="Command is empty.")

    try:
        process = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command_text,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(command=command, exit_code=127, stderr="bash not found")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("command timed out after %.0fs: %s", timeout_seconds, command_text)
        return CommandResult(command=command, exit_code=-1, timed_out=True)

    result = CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug("command %r exited %d", command_text, result.exit_code)
    return result
