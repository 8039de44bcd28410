from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from conductor.config import ConductorConfig, ConfigError

AGENT_PROMPTS_DIR = Path(".conductor") / "agents"
TOOL_POLICY_ALLOWLIST = {
    "Read",
    "Grep",
    "Glob",
    "LS",
    "Bash",
    "Write",
    "Edit",
    "MultiEdit",
    "NotebookEdit",
}
READ_ONLY_TOOLS = ["Read", "Grep", "Glob", "LS"]
WRITE_CAPABLE_TOOLS = ["Read", "Grep", "Glob", "LS", "Bash", "Write", "Edit", "MultiEdit"]
ADVISORY_REVIEWERS = ("security-reviewer", "performance-reviewer")

REVIEW_CONTRACT = """
End your reply with a ```conductor-json block holding one JSON object:
{"passed": true|false, "findings": [{"severity": "critical|high|medium|low",
"file": "path", "line": 1, "issue": "...", "suggestion": "..."}],
"mustFix": ["..."], "summary": "..."}
Never modify files.
""".strip()


@dataclass(slots=True)
class AgentProfile:
    name: str
    role: str
    system_prompt: str
    tools: list[str] | None = None
    model: str | None = None


@dataclass(slots=True)
class _BuiltinAgent:
    role: str
    prompt: str
    tools: list[str] = field(default_factory=list)


BUILTIN_AGENTS: dict[str, _BuiltinAgent] = {
    "planner": _BuiltinAgent(
        role="planning",
        prompt="""
You are the planner. Turn a feature request into a small-step implementation plan.
Write the plan file you are asked to write and keep every task to 1-3 files.
""".strip(),
        tools=WRITE_CAPABLE_TOOLS,
    ),
    "architect": _BuiltinAgent(
        role="plan-review",
        prompt=f"""
You are the architect. Judge plans for design soundness, modularity and task order.
{REVIEW_CONTRACT}
""".strip(),
        tools=READ_ONLY_TOOLS,
    ),
    "implementer": _BuiltinAgent(
        role="implementation",
        prompt="""
You are the implementer. Implement exactly one task with strict TDD.
Match repository conventions and commit after each green cycle.
""".strip(),
        tools=WRITE_CAPABLE_TOOLS,
    ),
    "spec-reviewer": _BuiltinAgent(
        role="review",
        prompt=f"""
You are the spec reviewer. Verify the implementation against the task description.
Read the code yourself; do not trust the implementer's report.
{REVIEW_CONTRACT}
""".strip(),
        tools=READ_ONLY_TOOLS,
    ),
    "quality-reviewer": _BuiltinAgent(
        role="review",
        prompt=f"""
You are the quality reviewer. Check naming, duplication, error handling and test quality.
{REVIEW_CONTRACT}
""".strip(),
        tools=READ_ONLY_TOOLS,
    ),
    "security-reviewer": _BuiltinAgent(
        role="advisory-review",
        prompt=f"""
You are the security reviewer. Look for injection, unsafe deserialisation, secrets
in code and missing authorisation checks. Mark exploitable issues critical.
{REVIEW_CONTRACT}
""".strip(),
        tools=READ_ONLY_TOOLS,
    ),
    "performance-reviewer": _BuiltinAgent(
        role="advisory-review",
        prompt=f"""
You are the performance reviewer. Look for quadratic loops, unbounded memory use,
blocking I/O on hot paths and missing indexes. Mark severe regressions critical.
{REVIEW_CONTRACT}
""".strip(),
        tools=READ_ONLY_TOOLS,
    ),
}


def normalize_tools(tools: list[str] | None) -> list[str] | None:
    if not tools:
        return None
    normalized = sorted({tool.strip() for tool in tools if tool.strip()})
    unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
    if unknown:
        raise ConfigError("Tool policy rejected unknown tools: " + ", ".join(unknown))
    return normalized


def _load_system_prompt(name: str, fallback: str, repo_root: Path | None) -> str:
    if repo_root is None:
        return fallback
    override = repo_root / AGENT_PROMPTS_DIR / f"{name}.md"
    if override.is_file():
        return override.read_text(encoding="utf-8").strip()
    return fallback


def discover_agents(
    config: ConductorConfig, repo_root: Path | None = None
) -> dict[str, AgentProfile]:
    """Build the enabled agent profiles keyed by name.

    A ``.conductor/agents/<name>.md`` file under ``repo_root`` replaces the
    built-in system prompt for that agent.
    """
    agents: dict[str, AgentProfile] = {}
    for name in config.agents.enabled:
        builtin = BUILTIN_AGENTS.get(name)
        if builtin is None:
            known = ", ".join(sorted(BUILTIN_AGENTS))
            raise ConfigError(f"Unknown agent '{name}' in [agents].enabled (known: {known})")
        agents[name] = AgentProfile(
            name=name,
            role=builtin.role,
            system_prompt=_load_system_prompt(name, builtin.prompt, repo_root),
            tools=normalize_tools(builtin.tools),
            model=config.agents.model or None,
        )
    return agents
