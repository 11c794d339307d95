"""Run-level models for playbook execution."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from agent_autorun.agents.capabilities import AgentType
from agent_autorun.playbooks.models import PlaybookTask


class RunPhase(str, Enum):
    TASK_START = "task-start"
    TASK_COMPLETE = "task-complete"
    TASK_FAILED = "task-failed"
    RUN_COMPLETE = "run-complete"


class StopReason(str, Enum):
    """Why a run stopped dispatching tasks."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class ContinuationPolicy(str, Enum):
    """What a task failure does to the rest of the run."""

    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(slots=True)
class RunOptions:
    """Per-run switches chosen by the caller."""

    dry_run: bool = False
    write_history: bool = True
    continuation_policy: ContinuationPolicy = ContinuationPolicy.CONTINUE
    command_template: str | None = None
    project_path: str | None = None
    document_path: str | None = None


@dataclass(slots=True)
class PlaybookRun:
    """Live state of one playbook run."""

    agent_type: AgentType
    session_id: str
    playbook_name: str
    tasks: list[PlaybookTask]
    start_time_ms: int = 0
    tasks_completed: int = 0
    dry_run: bool = False
    write_history: bool = True
    stop_reason: StopReason | None = None
    duration_ms: int = 0

    @property
    def tasks_total(self) -> int:
        return len(self.tasks)

    def mark_task_completed(self) -> None:
        self.tasks_completed += 1


@dataclass(slots=True)
class RunEvent:
    """Progress notification yielded by a playbook execution."""

    phase: RunPhase
    tasks_total: int
    tasks_completed: int
    task_index: int | None = None
    message: str | None = None
    percent: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    dry_run: bool | None = None
    stop_reason: StopReason | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping with ``None`` fields dropped."""

        payload: dict[str, Any] = {"type": self.phase.value}
        for key, value in asdict(self).items():
            if key == "phase" or value is None:
                continue
            payload[key] = value.value if isinstance(value, Enum) else value
        return payload
