from conductor.backends.base import (
    AgentDispatcher,
    DispatchError,
    DispatchProcessError,
    DispatchResult,
    DispatchTimeoutError,
    DispatchUsage,
    final_output,
    has_write_tool_calls,
)
from conductor.backends.claude import ClaudeDispatcher
from conductor.backends.resilient import ResilientDispatcher, RetryPolicy

__all__ = [
    "AgentDispatcher",
    "ClaudeDispatcher",
    "DispatchError",
    "DispatchProcessError",
    "DispatchResult",
    "DispatchTimeoutError",
    "DispatchUsage",
    "ResilientDispatcher",
    "RetryPolicy",
    "final_output",
    "has_write_tool_calls",
]
