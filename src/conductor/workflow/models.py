from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

Phase = Literal[
    "brainstorm",
    "plan-write",
    "plan-review",
    "configure",
    "execute",
    "finalize",
    "done",
]
TaskStatus = Literal[
    "pending",
    "implementing",
    "reviewing",
    "fixing",
    "complete",
    "skipped",
    "escalated",
]
InteractionType = Literal["choice", "confirm", "input"]

PHASES: tuple[str, ...] = (
    "brainstorm",
    "plan-write",
    "plan-review",
    "configure",
    "execute",
    "finalize",
    "done",
)
TERMINAL_STATUSES = frozenset({"complete", "skipped", "escalated"})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(slots=True)
class TaskSummary:
    title: str
    status: str
    changed_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "status": self.status,
            "changedFiles": list(self.changed_files),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskSummary:
        return cls(
            title=str(payload.get("title", "")),
            status=str(payload.get("status", "")),
            changed_files=[str(item) for item in payload.get("changedFiles", [])],
        )


@dataclass(slots=True)
class Task:
    id: int
    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)
    status: TaskStatus = "pending"
    reviews_passed: list[str] = field(default_factory=list)
    reviews_failed: list[str] = field(default_factory=list)
    fix_attempts: int = 0
    git_sha_before_impl: str | None = None
    commit_sha: str | None = None
    summary: TaskSummary | None = None

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def reset_review_state(self) -> None:
        self.reviews_passed = []
        self.reviews_failed = []
        self.fix_attempts = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "files": list(self.files),
            "status": self.status,
            "reviewsPassed": list(self.reviews_passed),
            "reviewsFailed": list(self.reviews_failed),
            "fixAttempts": self.fix_attempts,
        }
        if self.git_sha_before_impl:
            payload["gitShaBeforeImpl"] = self.git_sha_before_impl
        if self.commit_sha:
            payload["commitSha"] = self.commit_sha
        if self.summary is not None:
            payload["summary"] = self.summary.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        summary = payload.get("summary")
        return cls(
            id=int(payload["id"]),
            title=str(payload["title"]),
            description=str(payload.get("description", "")),
            files=[str(item) for item in payload.get("files", [])],
            status=payload.get("status", "pending"),
            reviews_passed=list(payload.get("reviewsPassed", [])),
            reviews_failed=list(payload.get("reviewsFailed", [])),
            fix_attempts=int(payload.get("fixAttempts", 0)),
            git_sha_before_impl=payload.get("gitShaBeforeImpl"),
            commit_sha=payload.get("commitSha"),
            summary=TaskSummary.from_dict(summary) if isinstance(summary, dict) else None,
        )


@dataclass(slots=True)
class TestResult:
    __test__ = False

    name: str
    passed: bool
    duration: int | None = None
    output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "passed": self.passed}
        if self.duration is not None:
            payload["duration"] = self.duration
        if self.output is not None:
            payload["output"] = self.output
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TestResult:
        return cls(
            name=str(payload["name"]),
            passed=bool(payload["passed"]),
            duration=payload.get("duration"),
            output=payload.get("output"),
        )


@dataclass(slots=True)
class TestBaseline:
    __test__ = False

    captured_at: float
    sha: str
    command: str
    results: list[TestResult] = field(default_factory=list)
    known_failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "capturedAt": self.captured_at,
            "sha": self.sha,
            "command": self.command,
            "results": [result.to_dict() for result in self.results],
            "knownFailures": list(self.known_failures),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TestBaseline:
        return cls(
            captured_at=float(payload.get("capturedAt", 0)),
            sha=str(payload.get("sha", "")),
            command=str(payload.get("command", "")),
            results=[TestResult.from_dict(item) for item in payload.get("results", [])],
            known_failures=[str(item) for item in payload.get("knownFailures", [])],
        )


@dataclass(slots=True)
class InteractionOption:
    key: str
    label: str
    description: str | None = None


@dataclass(slots=True)
class PendingInteraction:
    id: str
    type: InteractionType
    question: str
    options: list[InteractionOption] = field(default_factory=list)
    default: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "type": self.type, "question": self.question}
        if self.options:
            payload["options"] = [
                {
                    key: value
                    for key, value in (
                        ("key", option.key),
                        ("label", option.label),
                        ("description", option.description),
                    )
                    if value is not None
                }
                for option in self.options
            ]
        if self.default is not None:
            payload["default"] = self.default
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingInteraction:
        return cls(
            id=str(payload["id"]),
            type=payload["type"],
            question=str(payload.get("question", "")),
            options=[
                InteractionOption(
                    key=str(item["key"]),
                    label=str(item.get("label", item["key"])),
                    description=item.get("description"),
                )
                for item in payload.get("options", [])
            ],
            default=payload.get("default"),
        )


@dataclass(slots=True)
class WorkflowSettings:
    review_mode: str | None = None
    execution_mode: str | None = None
    batch_size: int | None = None
    max_plan_review_cycles: int = 3
    max_task_review_cycles: int = 3

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "maxPlanReviewCycles": self.max_plan_review_cycles,
            "maxTaskReviewCycles": self.max_task_review_cycles,
        }
        if self.review_mode is not None:
            payload["reviewMode"] = self.review_mode
        if self.execution_mode is not None:
            payload["executionMode"] = self.execution_mode
        if self.batch_size is not None:
            payload["batchSize"] = self.batch_size
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowSettings:
        return cls(
            review_mode=payload.get("reviewMode"),
            execution_mode=payload.get("executionMode"),
            batch_size=payload.get("batchSize"),
            max_plan_review_cycles=int(payload.get("maxPlanReviewCycles", 3)),
            max_task_review_cycles=int(payload.get("maxTaskReviewCycles", 3)),
        )


@dataclass(slots=True)
class WorkflowState:
    phase: Phase = "brainstorm"
    config: WorkflowSettings = field(default_factory=WorkflowSettings)
    user_description: str = ""
    design_path: str | None = None
    design_content: str | None = None
    plan_path: str | None = None
    plan_content: str | None = None
    tasks: list[Task] = field(default_factory=list)
    current_task_index: int = 0
    plan_review_cycles: int = 0
    total_cost_usd: float = 0.0
    started_at: float = field(default_factory=time.time)
    pending_interaction: PendingInteraction | None = None
    test_baseline: TestBaseline | None = None
    error: str | None = None
    report: str | None = None

    @classmethod
    def create(cls, description: str) -> WorkflowState:
        return cls(user_description=description)

    def add_cost(self, amount: float) -> None:
        if amount > 0:
            self.total_cost_usd += amount

    def count_status(self, status: str) -> int:
        return sum(1 for task in self.tasks if task.status == status)

    def sync_task_index(self) -> int:
        for index, task in enumerate(self.tasks):
            if not task.terminal:
                self.current_task_index = index
                return index
        self.current_task_index = len(self.tasks)
        return self.current_task_index

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase,
            "config": self.config.to_dict(),
            "userDescription": self.user_description,
            "tasks": [task.to_dict() for task in self.tasks],
            "currentTaskIndex": self.current_task_index,
            "planReviewCycles": self.plan_review_cycles,
            "totalCostUsd": self.total_cost_usd,
            "startedAt": self.started_at,
        }
        optional = {
            "designPath": self.design_path,
            "designContent": self.design_content,
            "planPath": self.plan_path,
            "planContent": self.plan_content,
            "error": self.error,
            "report": self.report,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.pending_interaction is not None:
            payload["pendingInteraction"] = self.pending_interaction.to_dict()
        if self.test_baseline is not None:
            payload["testBaseline"] = self.test_baseline.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowState:
        phase = payload.get("phase", "brainstorm")
        if phase not in PHASES:
            raise ValueError(f"Unknown workflow phase: {phase}")
        pending = payload.get("pendingInteraction")
        baseline = payload.get("testBaseline")
        return cls(
            phase=phase,
            config=WorkflowSettings.from_dict(payload.get("config", {})),
            user_description=str(payload.get("userDescription", "")),
            design_path=payload.get("designPath"),
            design_content=payload.get("designContent"),
            plan_path=payload.get("planPath"),
            plan_content=payload.get("planContent"),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
            current_task_index=int(payload.get("currentTaskIndex", 0)),
            plan_review_cycles=int(payload.get("planReviewCycles", 0)),
            total_cost_usd=float(payload.get("totalCostUsd", 0.0)),
            started_at=float(payload.get("startedAt", time.time())),
            pending_interaction=(
                PendingInteraction.from_dict(pending) if isinstance(pending, dict) else None
            ),
            test_baseline=TestBaseline.from_dict(baseline) if isinstance(baseline, dict) else None,
            error=payload.get("error"),
            report=payload.get("report"),
        )
