from conductor.parsers.plan import ParsedTask, parse_plan, parse_task_block, parse_task_headings
from conductor.parsers.review import (
    ReviewFail,
    ReviewFinding,
    ReviewFindings,
    ReviewInconclusive,
    ReviewPass,
    ReviewResult,
    format_findings,
    has_critical_findings,
    parse_review_output,
)
from conductor.parsers.test_output import parse_test_output

__all__ = [
    "ParsedTask",
    "ReviewFail",
    "ReviewFinding",
    "ReviewFindings",
    "ReviewInconclusive",
    "ReviewPass",
    "ReviewResult",
    "format_findings",
    "has_critical_findings",
    "parse_plan",
    "parse_review_output",
    "parse_task_block",
    "parse_task_headings",
    "parse_test_output",
]
