import pytest

from conductor.workflow.taxonomy import (
    DEFAULT_FAILURE_ACTIONS,
    allows_automatic_retry,
    is_blocking,
    resolve_failure_action,
)


def test_defaults_cover_every_failure_kind() -> None:
    assert len(DEFAULT_FAILURE_ACTIONS) == 9
    assert resolve_failure_action("test-regression") == "stop-show-diff"
    assert resolve_failure_action("test-flake") == "warn-continue"
    assert resolve_failure_action("budget-threshold") == "checkpoint"


def test_overrides_take_precedence() -> None:
    overrides = {"test-flake": "escalate"}

    assert resolve_failure_action("test-flake", overrides) == "escalate"
    assert resolve_failure_action("parse-error", overrides) == "auto-retry"


def test_unknown_kind_raises() -> None:
    with pytest.raises(KeyError):
        resolve_failure_action("disk-full")


def test_action_predicates() -> None:
    assert allows_automatic_retry("retry-then-escalate")
    assert allows_automatic_retry("auto-retry")
    assert not allows_automatic_retry("escalate")
    assert is_blocking("stop-show-diff")
    assert not is_blocking("warn-continue")
    assert not is_blocking("ignore")
