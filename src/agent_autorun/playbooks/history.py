"""Append-only JSON history of finished playbook runs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 500


class RunHistory:
    """JSON array of run summaries, newest last, capped at ``max_entries``."""

    def __init__(self, path: Path, *, max_entries: int = MAX_HISTORY_ENTRIES) -> None:
        self.path = path
        self.max_entries = max_entries

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except json.JSONDecodeError:
            logger.warning("Run history at %s is not valid JSON; starting fresh", self.path)
            return []
        return payload if isinstance(payload, list) else []

    def append(self, entry: dict[str, Any]) -> None:
        entries = self.read()
        entries.append(entry)
        entries = entries[-self.max_entries :]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(entries, indent=2, ensure_ascii=False), "utf-8")
        tmp_path.replace(self.path)
