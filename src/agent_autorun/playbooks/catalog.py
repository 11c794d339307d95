"""JSON-file backed catalog of agent sessions and playbooks."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from agent_autorun.agents.capabilities import AgentType
from agent_autorun.agents.spawn_config import RemoteExecutionDescriptor
from agent_autorun.errors import ConfigurationError
from agent_autorun.playbooks.models import (
    AgentSession,
    Playbook,
    PlaybookDocument,
    PlaybookTask,
)

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"


def resolve_id(partial: str, all_ids: Iterable[str], *, kind: str = "id") -> str:
    """Resolve an exact id or a unique id prefix."""

    candidates = list(all_ids)
    if partial in candidates:
        return partial
    matches = [candidate for candidate in candidates if candidate.startswith(partial)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ConfigurationError(f"No {kind} matches {partial!r}", code=_not_found_code(kind))
    preview = ", ".join(sorted(matches)[:5])
    raise ConfigurationError(
        f"Ambiguous {kind} {partial!r}; matches: {preview}",
        code=_not_found_code(kind),
    )


def render_prompt(template: str | None, document: PlaybookDocument) -> str:
    """Build the agent prompt for one document."""

    if not template:
        return document.content
    return template.replace("{document_name}", document.name).replace(
        "{document}",
        document.content,
    )


class PlaybookCatalog:
    """Sessions and playbooks loaded from one JSON file."""

    def __init__(self, sessions: list[AgentSession], playbooks: list[Playbook]) -> None:
        self.sessions = sessions
        self.playbooks = playbooks

    @classmethod
    def load(cls, path: Path) -> PlaybookCatalog:
        if not path.exists():
            raise ConfigurationError(
                f"Playbook catalog not found: {path}",
                code="CATALOG_NOT_FOUND",
            )
        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ConfigurationError(
                f"Playbook catalog is not valid JSON: {path}: {error}",
                code="CATALOG_INVALID",
            ) from error
        return cls.from_dict(payload, base_dir=path.parent)

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, base_dir: Path | None = None) -> PlaybookCatalog:
        sessions = [_parse_session(item, base_dir) for item in payload.get("sessions", [])]
        playbooks = [_parse_playbook(item) for item in payload.get("playbooks", [])]
        return cls(sessions=sessions, playbooks=playbooks)

    def resolve_session(self, partial: str) -> AgentSession:
        session_id = resolve_id(partial, (session.id for session in self.sessions), kind="agent")
        return next(session for session in self.sessions if session.id == session_id)

    def resolve_playbook(self, session_id: str, partial: str) -> Playbook:
        owned = [playbook for playbook in self.playbooks if playbook.session_id == session_id]
        playbook_id = resolve_id(partial, (playbook.id for playbook in owned), kind="playbook")
        return next(playbook for playbook in owned if playbook.id == playbook_id)

    def load_tasks(
        self,
        session: AgentSession,
        playbook: Playbook,
        *,
        timeout_seconds: float,
    ) -> list[PlaybookTask]:
        """Read every playbook document into an ordered task list."""

        folder = session.auto_run_folder
        if folder is None or not folder.is_dir():
            raise ConfigurationError(
                f"Agent {session.name!r} has no Auto Run folder configured",
                code="NO_AUTORUN_FOLDER",
            )

        tasks: list[PlaybookTask] = []
        for index, name in enumerate(playbook.documents):
            filename = name if name.endswith(DOCUMENT_SUFFIX) else f"{name}{DOCUMENT_SUFFIX}"
            path = folder / filename
            if not path.is_file():
                raise ConfigurationError(
                    f"Playbook document not found: {path}",
                    code="DOCUMENT_NOT_FOUND",
                )
            document = PlaybookDocument(
                name=name.removesuffix(DOCUMENT_SUFFIX),
                path=path,
                content=path.read_text("utf-8"),
            )
            tasks.append(
                PlaybookTask(
                    index=index,
                    document=document,
                    prompt=render_prompt(playbook.prompt_template, document),
                    timeout_seconds=timeout_seconds,
                ),
            )
        logger.debug("Loaded %s tasks for playbook %s", len(tasks), playbook.id)
        return tasks


def _not_found_code(kind: str) -> str:
    if kind == "agent":
        return "AGENT_NOT_FOUND"
    if kind == "playbook":
        return "PLAYBOOK_NOT_FOUND"
    return "NOT_FOUND"


def _parse_session(item: dict[str, Any], base_dir: Path | None) -> AgentSession:
    try:
        session_id = str(item["id"])
        agent_type = AgentType.parse(item["agent_type"])
    except KeyError as error:
        raise ConfigurationError(
            f"Catalog session is missing field {error}",
            code="CATALOG_INVALID",
        ) from error

    remote_payload = item.get("remote")
    remote = None
    if isinstance(remote_payload, dict):
        remote = RemoteExecutionDescriptor(
            enabled=bool(remote_payload.get("enabled", False)),
            remote_id=remote_payload.get("remote_id"),
            working_dir_override=remote_payload.get("working_dir_override"),
        )

    folder = item.get("auto_run_folder")
    return AgentSession(
        id=session_id,
        name=str(item.get("name") or session_id),
        agent_type=agent_type,
        cwd=_resolve_path(item.get("cwd") or ".", base_dir),
        auto_run_folder=_resolve_path(folder, base_dir) if folder else None,
        remote=remote,
    )


def _parse_playbook(item: dict[str, Any]) -> Playbook:
    try:
        playbook_id = str(item["id"])
        session_id = str(item["session_id"])
    except KeyError as error:
        raise ConfigurationError(
            f"Catalog playbook is missing field {error}",
            code="CATALOG_INVALID",
        ) from error

    documents: list[str] = []
    for entry in item.get("documents", []):
        documents.append(str(entry["filename"]) if isinstance(entry, dict) else str(entry))
    return Playbook(
        id=playbook_id,
        session_id=session_id,
        name=str(item.get("name") or playbook_id),
        documents=documents,
        prompt_template=item.get("prompt_template"),
    )


def _resolve_path(value: str, base_dir: Path | None) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and base_dir is not None:
        return base_dir / path
    return path
