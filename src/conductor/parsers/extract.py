from __future__ import annotations

import re

CLOSE_FENCE = re.compile(r"^\s{0,3}```\s*$")


def _scan_quotes(line: str, in_string: bool) -> bool:
    escape = False
    for char in line:
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
    return in_string


def extract_fenced_block(text: str, language: str, *, quote_aware: bool = True) -> str | None:
    """Return the body of the first ```language fence.

    With ``quote_aware`` a fence line inside an open JSON string does not close
    the block.
    """
    lines = text.splitlines()
    open_fence = re.compile(rf"^\s{{0,3}}```{re.escape(language)}\s*$")
    start = next((index for index, line in enumerate(lines) if open_fence.match(line)), None)
    if start is None:
        return None

    in_string = False
    for index in range(start + 1, len(lines)):
        if not in_string and CLOSE_FENCE.match(lines[index]):
            return "\n".join(lines[start + 1 : index]).strip()
        if quote_aware:
            in_string = _scan_quotes(lines[index], in_string)
    return None


def extract_last_brace_block(text: str) -> str | None:
    depth = 0
    start = -1
    last: tuple[int, int] | None = None
    in_string = False
    escape = False

    for index, char in enumerate(text):
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                last = (start, index + 1)

    if last is None:
        return None
    return text[last[0] : last[1]]
