from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.workflow.models import WorkflowState
from conductor.workflow.progress import write_progress_file

logger = logging.getLogger(__name__)

STATE_FILENAME = ".conductor-workflow.json"


class WorkflowStateError(RuntimeError):
    """Raised when the workflow state file cannot be read or written."""


class WorkflowStore:
    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path, *, write_progress: bool = True) -> None:
        self.repo_root = repo_root.resolve()
        self.state_file = self.repo_root / STATE_FILENAME
        self.lock_file = self.repo_root / f"{STATE_FILENAME}.lock"
        self.write_progress = write_progress
        self._revision = 0

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise WorkflowStateError("Timed out waiting for workflow state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def exists(self) -> bool:
        return self.state_file.exists()

    def _read_envelope(self) -> dict[str, Any] | None:
        try:
            content = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as exc:
            raise WorkflowStateError(f"Corrupt workflow state file {self.state_file}: {exc}") from exc
        if not isinstance(raw, dict):
            raise WorkflowStateError(f"Workflow state file {self.state_file} is not an object.")
        if "schema_version" in raw and "data" in raw:
            return raw
        # Bare state documents are accepted as revision 1.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": raw,
        }

    def load(self) -> WorkflowState | None:
        envelope = self._read_envelope()
        if envelope is None:
            return None
        self._revision = int(envelope.get("revision") or 1)
        data = envelope.get("data")
        if not isinstance(data, dict):
            raise WorkflowStateError("Workflow state payload is not an object.")
        try:
            return WorkflowState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise WorkflowStateError(f"Invalid workflow state: {exc}") from exc

    def save(self, state: WorkflowState) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": self._revision + 1,
            "updated_at": self._utcnow_iso(),
            "data": state.to_dict(),
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        tmp_path = self.state_file.with_name(self.state_file.name + ".tmp")
        with self._state_lock():
            tmp_path.write_text(serialized, encoding="utf-8")
            os.replace(tmp_path, self.state_file)
        self._revision += 1
        logger.debug(
            "saved workflow state revision %d (phase=%s)", self._revision, state.phase
        )

        if self.write_progress:
            try:
                write_progress_file(state, self.repo_root)
            except OSError as exc:
                logger.warning("could not write progress file: %s", exc)

    def clear(self) -> None:
        try:
            self.state_file.unlink()
        except FileNotFoundError:
            return
        self._revision = 0
        logger.debug("cleared workflow state at %s", self.state_file)
