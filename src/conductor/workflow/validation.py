from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from conductor.parsers.test_output import parse_test_output
from conductor.workflow.baseline import BASELINE_TIMEOUT_SECONDS, ClassifiedResults, classify_failures
from conductor.workflow.commands import run_shell_command
from conductor.workflow.models import TestBaseline, TestResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationResult:
    passed: bool
    classified: ClassifiedResults
    flaky_tests: list[TestResult] = field(default_factory=list)
    blocking_failures: list[TestResult] = field(default_factory=list)


def should_run_validation(cadence: str, interval: int, completed_count: int) -> bool:
    if cadence == "every":
        return True
    if cadence == "on-demand":
        return False
    if cadence == "every-N":
        return interval > 0 and completed_count % interval == 0
    return False


async def _run_and_parse(command: str, cwd: Path, timeout_seconds: float) -> list[TestResult]:
    outcome = await run_shell_command(command, cwd, timeout_seconds=timeout_seconds)
    return parse_test_output(f"{outcome.stdout}\n{outcome.stderr}")


async def run_cross_task_validation(
    command: str,
    baseline: TestBaseline | None,
    cwd: Path,
    *,
    timeout_seconds: float = BASELINE_TIMEOUT_SECONDS,
) -> ValidationResult:
    """Run the suite and separate regressions from flakes and known failures.

    New failures are re-run once; a test that passes the second time is flaky,
    one that fails again blocks.
    """
    reference = baseline or TestBaseline(captured_at=0.0, sha="", command=command)
    classified = classify_failures(await _run_and_parse(command, cwd, timeout_seconds), reference)
    if not classified.flake_candidates:
        return ValidationResult(passed=True, classified=classified)

    logger.info("re-running suite to confirm %d new failures", len(classified.flake_candidates))
    rerun = {result.name: result for result in await _run_and_parse(command, cwd, timeout_seconds)}
    flaky: list[TestResult] = []
    blocking: list[TestResult] = []
    for candidate in classified.flake_candidates:
        second = rerun.get(candidate.name)
        if second is not None and second.passed:
            flaky.append(candidate)
        else:
            blocking.append(candidate)
    return ValidationResult(
        passed=not blocking,
        classified=classified,
        flaky_tests=flaky,
        blocking_failures=blocking,
    )
