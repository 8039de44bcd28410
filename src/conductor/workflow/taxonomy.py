from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Literal

logger = logging.getLogger(__name__)

FailureKind = Literal[
    "parse-error",
    "test-regression",
    "test-flake",
    "test-preexisting",
    "tool-timeout",
    "budget-threshold",
    "review-max-retries",
    "validation-failure",
    "impl-crash",
]

FailureAction = Literal[
    "auto-retry",
    "warn-continue",
    "ignore",
    "stop-show-diff",
    "retry-then-escalate",
    "checkpoint",
    "escalate",
]

DEFAULT_FAILURE_ACTIONS: dict[str, str] = {
    "parse-error": "auto-retry",
    "test-regression": "stop-show-diff",
    "test-flake": "warn-continue",
    "test-preexisting": "ignore",
    "tool-timeout": "retry-then-escalate",
    "budget-threshold": "checkpoint",
    "review-max-retries": "escalate",
    "validation-failure": "retry-then-escalate",
    "impl-crash": "retry-then-escalate",
}

FAILURE_KINDS = frozenset(DEFAULT_FAILURE_ACTIONS)
FAILURE_ACTIONS = frozenset(
    {
        "auto-retry",
        "warn-continue",
        "ignore",
        "stop-show-diff",
        "retry-then-escalate",
        "checkpoint",
        "escalate",
    }
)

# Actions that allow one automatic attempt before anything else happens.
RETRYING_ACTIONS = frozenset({"auto-retry", "retry-then-escalate"})
# Actions under which the failure is not surfaced to the operator.
NON_BLOCKING_ACTIONS = frozenset({"warn-continue", "ignore"})


def resolve_failure_action(
    kind: FailureKind | str,
    overrides: Mapping[str, str] | None = None,
) -> FailureAction:
    if kind not in DEFAULT_FAILURE_ACTIONS:
        raise KeyError(f"Unknown failure kind: {kind}")
    if overrides and kind in overrides:
        action = overrides[kind]
    else:
        action = DEFAULT_FAILURE_ACTIONS[kind]
    logger.debug("failure %s resolved to %s", kind, action)
    return action  # type: ignore[return-value]


def allows_automatic_retry(action: str) -> bool:
    return action in RETRYING_ACTIONS


def is_blocking(action: str) -> bool:
    return action not in NON_BLOCKING_ACTIONS
