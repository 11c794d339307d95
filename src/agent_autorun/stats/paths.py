"""Path normalization for stored project and document paths."""

from __future__ import annotations


def normalize_path(path: str | None) -> str | None:
    """Convert Windows separators to forward slashes; ``None`` passes through."""

    if path is None:
        return None
    return path.replace("\\", "/")
