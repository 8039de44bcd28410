"""Prompt text for every worker the workflow dispatches.

Prompts reference files by path and leave reading them to the worker.
"""

from __future__ import annotations

from collections.abc import Sequence

from conductor.parsers.plan import TASK_FENCE
from conductor.workflow.models import Task, TaskSummary

PLAN_CONTEXT_LIMIT = 4000
PRIOR_TASK_LIMIT = 5


def _bullets(items: Sequence[str]) -> str:
    if not items:
        return "- (none)"
    return "\n".join(f"- {item}" for item in items)


def extract_plan_context(plan_content: str, limit: int = PLAN_CONTEXT_LIMIT) -> str:
    marker = f"```{TASK_FENCE}"
    index = plan_content.find(marker)
    context = plan_content if index == -1 else plan_content[:index]
    return context.strip()[:limit]


def build_plan_write_prompt(description: str, plan_path: str, design_content: str | None) -> str:
    parts = [
        f"Write a plan file to {plan_path}.",
        "",
        "## User request",
        description,
        "",
    ]
    if design_content and design_content.strip() != description.strip():
        parts.extend(["## Approved design", design_content, ""])
    parts.extend(
        [
            "## Instructions",
            f"The plan must contain a ```{TASK_FENCE} block with a YAML task list.",
            "Each task needs: title, description, files.",
            "Keep tasks small: 1-3 files each.",
            "Each task should start by writing a failing test.",
            "Put a Goal, Architecture and Tech Stack header before the tasks.",
        ]
    )
    return "\n".join(parts)


def build_plan_review_prompt(
    plan_content: str, review_type: str, design_content: str | None = None
) -> str:
    if review_type == "architect":
        focus = "Check design, modularity and task ordering. Are dependencies between tasks right?"
    else:
        focus = "Check completeness, task independence and file coverage."
    parts = [f"Review this implementation plan ({review_type} review).", "", "<plan>", plan_content, "</plan>", ""]
    if design_content:
        parts.extend(["<design>", design_content, "</design>", "", "Validate the plan against the design.", ""])
    parts.append(focus)
    return "\n".join(parts)


def build_plan_revision_prompt(plan_path: str, plan_content: str, findings: str) -> str:
    return "\n".join(
        [
            f"Revise this plan based on review findings and write it back to {plan_path}.",
            f"Keep the ```{TASK_FENCE} block.",
            "",
            "## Current plan",
            plan_content,
            "",
            "## Review findings",
            findings,
        ]
    )


def build_impl_prompt(
    task: Task, plan_context: str, prior_tasks: Sequence[TaskSummary] = ()
) -> str:
    parts = [
        f"## Task: {task.title}",
        "",
        task.description,
        "",
        "## Files",
        _bullets(task.files),
        "",
        "## Plan context",
        plan_context,
        "",
    ]
    recent = list(prior_tasks)[-PRIOR_TASK_LIMIT:]
    if recent:
        parts.append("## Prior tasks")
        for summary in recent:
            parts.append(f"**{summary.title}** ({summary.status})")
            if summary.changed_files:
                parts.append(f"Changed: {', '.join(summary.changed_files)}")
        parts.append("")
    parts.extend(
        [
            "## Process",
            "Use strict TDD: write a failing test first, implement minimally, refactor.",
            "Commit after each green cycle.",
            "Self-review your changes before reporting done.",
        ]
    )
    return "\n".join(parts)


def build_fix_prompt(task: Task, formatted_findings: Sequence[str], changed_files: Sequence[str]) -> str:
    return "\n".join(
        [
            f'Fix these review findings for task "{task.title}".',
            "",
            "\n\n".join(formatted_findings),
            "",
            "## Changed files",
            _bullets(changed_files),
            "",
            "Update tests if needed and fix failing tests first.",
        ]
    )


def build_validation_fix_prompt(task: Task, error_text: str, command: str) -> str:
    return "\n".join(
        [
            f'Fix these validation errors for task "{task.title}":',
            "",
            error_text,
            "",
            f"Run the validation command to verify: {command}",
        ]
    )


def build_spec_review_prompt(task: Task, changed_files: Sequence[str]) -> str:
    return "\n".join(
        [
            f"## Spec review for: {task.title}",
            "",
            "### Task description",
            task.description,
            "",
            "### Files to read",
            _bullets(changed_files),
            "",
            "Only review the files listed; skip tests unless the task targets test code.",
            "Compare the implementation against the task description.",
        ]
    )


def build_quality_review_prompt(task: Task, changed_files: Sequence[str]) -> str:
    return "\n".join(
        [
            f"## Quality review for: {task.title}",
            "",
            "Review code quality in these files:",
            _bullets(changed_files),
            "",
            "Check naming, duplication, error handling and test quality.",
        ]
    )


def build_final_review_prompt(completed: Sequence[Task], changed_files: Sequence[str]) -> str:
    summary = "\n".join(
        f"- {task.title}: {task.description.splitlines()[0] if task.description else ''}"
        for task in completed
    )
    return "\n".join(
        [
            "## Final review",
            "",
            "### Completed tasks",
            summary or "- (none)",
            "",
            "### Changed files",
            _bullets(changed_files),
            "",
            "Review the whole implementation across these files.",
            "Check cross-task integration, consistency and completeness.",
        ]
    )
