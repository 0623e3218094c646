"""Disk-backed session snapshots."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


class SessionLoadError(RuntimeError):
    """Raised when a stored snapshot exists but cannot be read."""


@dataclass
class SessionStorage:
    """Stores one JSON document per user identity.

    Snapshots live at ``<directory>/<user_id>.json``. Writes go through a
    temporary file so a crash mid-write never leaves a truncated record.

    Attributes:
        directory: Folder holding the snapshot files
    """

    directory: Path

    def __post_init__(self) -> None:
        """Ensure the snapshot directory exists."""
        self.directory = Path(self.directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, user_id: int) -> Path:
        return self.directory / f"{user_id}.json"

    def load(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot for ``user_id`` if present.

        Returns:
            dict or None: Parsed snapshot, or None when nothing is stored

        Raises:
            SessionLoadError: If the file is unreadable or not valid JSON
        """
        path = self._path(user_id)
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
            payload = json.loads(raw)
        except (OSError, ValueError) as exc:
            raise SessionLoadError(f"Could not load session {user_id}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SessionLoadError(f"Session {user_id} snapshot is not an object")
        return payload

    def save(self, user_id: int, payload: Dict[str, Any]) -> None:
        """Persist a snapshot, replacing any previous one.

        Args:
            user_id: Owner of the snapshot
            payload: JSON-serializable session state
        """
        path = self._path(user_id)
        temporary = path.with_suffix(".json.tmp")
        serialized = json.dumps(payload, indent=2, ensure_ascii=False)
        temporary.write_text(serialized + "\n", encoding="utf-8")
        os.replace(temporary, path)
