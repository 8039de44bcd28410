from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from conductor.parsers.test_output import parse_test_output
from conductor.state.gitops import GitWorkspace
from conductor.workflow.commands import run_shell_command
from conductor.workflow.models import TestBaseline, TestResult

logger = logging.getLogger(__name__)

BASELINE_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class ClassifiedResults:
    new_failures: list[TestResult] = field(default_factory=list)
    pre_existing: list[TestResult] = field(default_factory=list)
    flake_candidates: list[TestResult] = field(default_factory=list)
    new_passes: list[TestResult] = field(default_factory=list)


def classify_failures(current: list[TestResult], baseline: TestBaseline) -> ClassifiedResults:
    known = set(baseline.known_failures)
    classified = ClassifiedResults()
    for result in current:
        if result.passed:
            if result.name in known:
                classified.new_passes.append(result)
            continue
        if result.name in known:
            classified.pre_existing.append(result)
        else:
            # Every new failure is re-run once before it counts as a regression.
            classified.new_failures.append(result)
            classified.flake_candidates.append(result)
    return classified


async def capture_baseline(
    test_command: str,
    cwd: Path,
    *,
    timeout_seconds: float = BASELINE_TIMEOUT_SECONDS,
) -> TestBaseline:
    sha = GitWorkspace(cwd).current_sha()
    captured_at = time.time()
    # A failing suite exits non-zero; the parsed output is what matters.
    outcome = await run_shell_command(test_command, cwd, timeout_seconds=timeout_seconds)
    results = parse_test_output(f"{outcome.stdout}\n{outcome.stderr}")
    baseline = TestBaseline(
        captured_at=captured_at,
        sha=sha,
        command=test_command,
        results=results,
        known_failures=[result.name for result in results if not result.passed],
    )
    logger.info(
        "captured test run: %d results, %d failing", len(results), len(baseline.known_failures)
    )
    return baseline
