from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from conductor.parsers.extract import extract_fenced_block, extract_last_brace_block

Severity = Literal["critical", "high", "medium", "low"]
SEVERITIES = ("critical", "high", "medium", "low")
REVIEW_FENCE = "conductor-json"


@dataclass(slots=True)
class ReviewFinding:
    severity: Severity
    file: str
    issue: str
    line: int | None = None
    suggestion: str | None = None


@dataclass(slots=True)
class ReviewFindings:
    passed: bool
    findings: list[ReviewFinding] = field(default_factory=list)
    must_fix: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass(slots=True)
class ReviewPass:
    findings: ReviewFindings


@dataclass(slots=True)
class ReviewFail:
    findings: ReviewFindings


@dataclass(slots=True)
class ReviewInconclusive:
    raw_output: str
    parse_error: str


ReviewResult = ReviewPass | ReviewFail | ReviewInconclusive


def parse_review_output(raw_output: str) -> ReviewResult:
    """Parse a reviewer's structured verdict.

    A ```conductor-json fence wins; otherwise the last balanced ``{...}`` block
    in the text is tried. Anything unparseable is inconclusive, never a guess.
    """
    candidate = extract_fenced_block(raw_output, REVIEW_FENCE)
    if candidate is None:
        candidate = extract_last_brace_block(raw_output)
    if candidate is None:
        return ReviewInconclusive(
            raw_output=raw_output,
            parse_error=f"No ```{REVIEW_FENCE} block or JSON object found in reviewer output",
        )
    return _parse_and_validate(candidate, raw_output)


def _parse_and_validate(candidate: str, raw_output: str) -> ReviewResult:
    try:
        # strict=False tolerates raw newlines inside string values.
        parsed: Any = json.loads(candidate, strict=False)
    except json.JSONDecodeError as exc:
        return ReviewInconclusive(raw_output=raw_output, parse_error=f"JSON parse error: {exc}")

    if not isinstance(parsed, dict):
        return ReviewInconclusive(raw_output=raw_output, parse_error="Parsed JSON is not an object")
    if not isinstance(parsed.get("passed"), bool):
        return ReviewInconclusive(
            raw_output=raw_output,
            parse_error="Missing or invalid 'passed' field (expected boolean)",
        )

    raw_findings = parsed.get("findings")
    raw_must_fix = parsed.get("mustFix")
    summary = parsed.get("summary")
    findings = ReviewFindings(
        passed=parsed["passed"],
        findings=[
            _normalize_finding(item)
            for item in (raw_findings if isinstance(raw_findings, list) else [])
            if isinstance(item, dict) and isinstance(item.get("issue"), str)
        ],
        must_fix=[
            item for item in (raw_must_fix if isinstance(raw_must_fix, list) else [])
            if isinstance(item, str)
        ],
        summary=summary if isinstance(summary, str) else "",
    )
    if findings.passed:
        return ReviewPass(findings=findings)
    return ReviewFail(findings=findings)


def _normalize_finding(item: dict[str, Any]) -> ReviewFinding:
    severity = item.get("severity")
    line = item.get("line")
    suggestion = item.get("suggestion")
    file_path = item.get("file")
    return ReviewFinding(
        severity=severity if severity in SEVERITIES else "medium",
        file=file_path if isinstance(file_path, str) else "unknown",
        issue=item["issue"],
        line=line if isinstance(line, int) and not isinstance(line, bool) else None,
        suggestion=suggestion if isinstance(suggestion, str) else None,
    )


def has_critical_findings(findings: ReviewFindings) -> bool:
    return any(finding.severity == "critical" for finding in findings.findings)


def format_findings(findings: ReviewFindings, review_type: str) -> str:
    verdict = "PASSED" if findings.passed else "FAILED"
    lines = [f"Review: {review_type} {verdict}"]
    if findings.summary:
        lines.append(f"Summary: {findings.summary}")
    if findings.must_fix:
        lines.append("")
        lines.append("Must fix:")
        lines.extend(f"  - {item}" for item in findings.must_fix)
    if findings.findings:
        lines.append("")
        lines.append(f"Findings ({len(findings.findings)}):")
        for finding in findings.findings:
            location = f"{finding.file}:{finding.line}" if finding.line else finding.file
            lines.append(f"  [{finding.severity.upper()}] {location}: {finding.issue}")
            if finding.suggestion:
                lines.append(f"    Suggestion: {finding.suggestion}")
    return "\n".join(lines)
