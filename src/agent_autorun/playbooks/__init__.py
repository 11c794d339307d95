"""Playbook catalog, task loading and run history."""

from agent_autorun.playbooks.catalog import PlaybookCatalog, render_prompt, resolve_id
from agent_autorun.playbooks.history import RunHistory
from agent_autorun.playbooks.models import (
    AgentSession,
    Playbook,
    PlaybookDocument,
    PlaybookTask,
    TaskState,
)

__all__ = [
    "AgentSession",
    "Playbook",
    "PlaybookCatalog",
    "PlaybookDocument",
    "PlaybookTask",
    "RunHistory",
    "TaskState",
    "render_prompt",
    "resolve_id",
]
