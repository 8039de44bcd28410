"""File-backed queue of follow-up workflows.

Finalize pops the next entry and starts it at plan-write, so a large request
can be split into several workflows that run back to back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

QUEUE_FILENAME = ".conductor-queue.json"


@dataclass(slots=True)
class QueuedWorkflow:
    title: str
    description: str
    parent_design_path: str | None = None


class WorkflowQueue:
    def __init__(self, repo_root: Path) -> None:
        self.path = repo_root.resolve() / QUEUE_FILENAME

    def _read(self) -> list[QueuedWorkflow]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable workflow queue at %s", self.path)
            return []
        if not isinstance(payload, list):
            return []
        items: list[QueuedWorkflow] = []
        for entry in payload:
            if isinstance(entry, dict) and "title" in entry:
                items.append(
                    QueuedWorkflow(
                        title=str(entry["title"]),
                        description=str(entry.get("description", "")),
                        parent_design_path=entry.get("parent_design_path"),
                    )
                )
        return items

    def _write(self, items: list[QueuedWorkflow]) -> None:
        payload = [asdict(item) for item in items]
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def enqueue(self, item: QueuedWorkflow) -> None:
        items = self._read()
        items.append(item)
        self._write(items)

    def dequeue(self) -> QueuedWorkflow | None:
        items = self._read()
        if not items:
            return None
        first = items.pop(0)
        self._write(items)
        return first

    def peek(self) -> list[QueuedWorkflow]:
        return self._read()

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
