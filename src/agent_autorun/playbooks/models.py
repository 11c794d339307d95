"""Domain models for agent sessions, playbooks and their tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agent_autorun.agents.capabilities import AgentType
from agent_autorun.agents.spawn_config import RemoteExecutionDescriptor


class TaskState(str, Enum):
    """Lifecycle states of one playbook task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class AgentSession:
    """Configured agent session that playbooks run against."""

    id: str
    name: str
    agent_type: AgentType
    cwd: Path
    auto_run_folder: Path | None = None
    remote: RemoteExecutionDescriptor | None = None


@dataclass(slots=True)
class Playbook:
    """Named, ordered list of documents belonging to one session."""

    id: str
    session_id: str
    name: str
    documents: list[str] = field(default_factory=list)
    prompt_template: str | None = None


@dataclass(slots=True)
class PlaybookDocument:
    """One markdown document that becomes one task."""

    name: str
    path: Path
    content: str


@dataclass(slots=True)
class PlaybookTask:
    """One unit of agent work inside a playbook run."""

    index: int
    document: PlaybookDocument
    prompt: str
    timeout_seconds: float
    state: TaskState = TaskState.PENDING
    started_at_ms: int | None = None
    duration_ms: int | None = None
    error: str | None = None
