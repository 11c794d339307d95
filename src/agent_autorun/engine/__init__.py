"""Playbook execution engine."""

from agent_autorun.engine.models import (
    ContinuationPolicy,
    PlaybookRun,
    RunEvent,
    RunOptions,
    RunPhase,
    StopReason,
)
from agent_autorun.engine.runner import PlaybookEngine, PlaybookExecution

__all__ = [
    "ContinuationPolicy",
    "PlaybookEngine",
    "PlaybookExecution",
    "PlaybookRun",
    "RunEvent",
    "RunOptions",
    "RunPhase",
    "StopReason",
]
