from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from conductor.workflow.models import InteractionOption, PendingInteraction


class InteractionError(ValueError):
    """Raised when an operator answer does not fit the pending question."""


class OperatorUI(ABC):
    """Interactive surface used by the workflow. ``None`` means the operator cancelled."""

    @abstractmethod
    def select(self, title: str, options: Sequence[str]) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def input(self, prompt: str, default: str | None = None) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def confirm(self, title: str, message: str) -> bool | None:
        raise NotImplementedError

    @abstractmethod
    def editor(self, title: str, text: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def notify(self, message: str, level: str = "info") -> None:
        raise NotImplementedError

    def set_status(self, key: str, text: str | None) -> None:
        return None

    def set_widget(self, key: str, lines: Sequence[str] | None) -> None:
        return None


def ask_review_mode() -> PendingInteraction:
    return PendingInteraction(
        id="review-mode",
        type="choice",
        question="How should code reviews be handled?",
        options=[
            InteractionOption(
                key="single-pass",
                label="One round of reviews",
                description="findings are shown as warnings",
            ),
            InteractionOption(
                key="iterative",
                label="Review-fix loop",
                description="fix and re-review until reviewers pass",
            ),
        ],
    )


def ask_execution_mode() -> PendingInteraction:
    return PendingInteraction(
        id="execution-mode",
        type="choice",
        question="How should tasks be executed?",
        options=[
            InteractionOption(key="auto", label="Auto", description="run all tasks without pausing"),
            InteractionOption(
                key="checkpoint", label="Checkpoint", description="pause after each task"
            ),
            InteractionOption(key="batch", label="Batch", description="run N tasks then pause"),
        ],
    )


def ask_batch_size() -> PendingInteraction:
    return PendingInteraction(
        id="batch-size",
        type="input",
        question="How many tasks per batch?",
        default="3",
    )


def confirm_plan_approval(
    task_titles: Sequence[str], findings: str | None = None
) -> PendingInteraction:
    listing = "\n".join(f"  {index}. {title}" for index, title in enumerate(task_titles, start=1))
    question = f"The plan contains {len(task_titles)} tasks:\n{listing}"
    if findings:
        question += f"\n\nOutstanding review findings:\n{findings}"
    return PendingInteraction(
        id="plan-approval",
        type="choice",
        question=f"{question}\n\nDo you approve this plan?",
        options=[
            InteractionOption(
                key="approve", label="Approve", description="proceed to configuration"
            ),
            InteractionOption(key="revise", label="Revise", description="rewrite the plan"),
        ],
    )


def format_interaction(interaction: PendingInteraction) -> str:
    lines = [interaction.question, ""]
    if interaction.type == "choice":
        for index, option in enumerate(interaction.options, start=1):
            line = f"  {index}) {option.label}"
            if option.description:
                line += f": {option.description}"
            lines.append(line)
    elif interaction.type == "confirm":
        lines.append("  Enter yes or no")
    elif interaction.default is not None:
        lines.append(f"  (default: {interaction.default})")
    return "\n".join(lines)


def parse_user_response(interaction: PendingInteraction, raw_input: str) -> str:
    answer = raw_input.strip()
    lowered = answer.lower()

    if interaction.type == "choice":
        options = interaction.options
        for option in options:
            if option.key.lower() == lowered:
                return option.key
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return options[int(answer) - 1].key
        for option in options:
            if option.label.lower() == lowered:
                return option.key
        if not answer and interaction.default is not None:
            return interaction.default
        valid = ", ".join(option.key for option in options)
        raise InteractionError(
            f'Invalid choice: "{answer}". Valid options: {valid} (or enter 1-{len(options)})'
        )

    if interaction.type == "input":
        if not answer:
            return interaction.default or ""
        return answer

    if interaction.type == "confirm":
        if lowered in {"y", "yes"}:
            return "yes"
        if lowered in {"n", "no"}:
            return "no"
        if not answer and interaction.default is not None:
            return interaction.default
        raise InteractionError(f'Invalid response: "{answer}". Enter yes/y or no/n.')

    raise InteractionError(f"Unknown interaction type: {interaction.type}")
