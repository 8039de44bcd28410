from __future__ import annotations

import re
from dataclasses import dataclass, field

from conductor.parsers.extract import extract_fenced_block

TASK_FENCE = "conductor-tasks"
TASK_HEADING = re.compile(r"^###\s+Task\s+(\d+):\s*(.+)$", re.MULTILINE)
FILE_REF = re.compile(r"`([^`\s]+\.[A-Za-z0-9]+)`")
KEY_LINE = re.compile(r"^[A-Za-z_-]+:")


@dataclass(slots=True)
class ParsedTask:
    id: int
    title: str
    description: str = ""
    files: list[str] = field(default_factory=list)


def parse_task_block(content: str) -> list[ParsedTask] | None:
    block = extract_fenced_block(content, TASK_FENCE, quote_aware=False)
    if block is None:
        return None
    return _parse_task_entries(block.splitlines())


def parse_task_headings(content: str) -> list[ParsedTask]:
    matches = list(TASK_HEADING.finditer(content))
    tasks: list[ParsedTask] = []
    for position, match in enumerate(matches):
        end = matches[position + 1].start() if position + 1 < len(matches) else len(content)
        body = content[match.end() : end].strip()
        tasks.append(
            ParsedTask(
                id=int(match.group(1)),
                title=match.group(2).strip(),
                description="\n".join(body.splitlines()[:3]).strip(),
                files=_file_refs(body),
            )
        )
    return tasks


def parse_plan(content: str) -> list[ParsedTask]:
    fenced = parse_task_block(content)
    if fenced:
        return fenced
    return parse_task_headings(content)


def _file_refs(body: str) -> list[str]:
    return list(dict.fromkeys(FILE_REF.findall(body)))


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _inline_list(value: str) -> list[str]:
    cleaned = value.strip().removeprefix("[").removesuffix("]")
    return [item.strip().strip("'\"") for item in cleaned.split(",") if item.strip()]


def _parse_task_entries(lines: list[str]) -> list[ParsedTask]:
    tasks: list[ParsedTask] = []
    current: ParsedTask | None = None
    index = 0

    while index < len(lines):
        line = lines[index]
        stripped = line.strip()

        if stripped.startswith("- title:"):
            if current is not None:
                tasks.append(current)
            title = stripped.removeprefix("- title:").strip().strip("'\"")
            current = ParsedTask(id=len(tasks) + 1, title=title or f"Task {len(tasks) + 1}")
            index += 1
            continue

        if current is None:
            index += 1
            continue

        if stripped.startswith("description:"):
            value = stripped.removeprefix("description:").strip()
            if value in {"|", ">"}:
                key_indent = _indent(line)
                collected: list[str] = []
                index += 1
                while index < len(lines):
                    candidate = lines[index]
                    candidate_stripped = candidate.strip()
                    if candidate_stripped.startswith("- title:"):
                        break
                    if (
                        candidate_stripped
                        and _indent(candidate) <= key_indent
                        and KEY_LINE.match(candidate_stripped)
                    ):
                        break
                    collected.append(candidate)
                    index += 1
                current.description = _dedent_block(collected, folded=value == ">")
            else:
                current.description = value.strip("'\"")
                index += 1
            continue

        if stripped.startswith("files:"):
            value = stripped.removeprefix("files:").strip()
            index += 1
            if value:
                current.files = _inline_list(value)
                continue
            # Block sequence form: one "- path" per following line.
            files: list[str] = []
            while index < len(lines) and lines[index].strip().startswith("- "):
                if lines[index].strip().startswith("- title:"):
                    break
                files.append(lines[index].strip()[2:].strip().strip("'\""))
                index += 1
            current.files = files
            continue

        index += 1

    if current is not None:
        tasks.append(current)
    return tasks


def _dedent_block(lines: list[str], *, folded: bool) -> str:
    non_empty = [line for line in lines if line.strip()]
    common = min((_indent(line) for line in non_empty), default=0)
    dedented = [line[common:] if line.strip() else "" for line in lines]
    while dedented and not dedented[-1].strip():
        dedented.pop()
    if folded:
        return " ".join(line.strip() for line in dedented if line.strip())
    return "\n".join(dedented)
