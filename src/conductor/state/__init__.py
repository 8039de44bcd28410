from conductor.state.gitops import GitPreflightResult, GitWorkspace, SquashResult
from conductor.state.store import WorkflowStateError, WorkflowStore

__all__ = [
    "GitPreflightResult",
    "GitWorkspace",
    "SquashResult",
    "WorkflowStateError",
    "WorkflowStore",
]
