"""
Local checkpoint storage for the exit engine.

State is a JSON document ``{"positions": [...], "saved_at": ISO8601}``
written atomically (temp file + rename) so a crash mid-write never leaves
a truncated file behind.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when persisted state exists but cannot be read."""


def write_json_atomic(path: Path, data: dict) -> None:
    """Write JSON to a temp file next to path, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_name(path.name + ".tmp")
    with open(tmp_file, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_file, path)


class StateStore(Protocol):
    """Key-value style persistence used by the exit engine."""

    def load(self) -> Optional[dict]: ...

    def save(self, positions: list[dict]) -> None: ...


class JsonStateStore:
    """Stores the tracking table as a JSON file on local disk."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Optional[dict]:
        """
        Load persisted state.

        Returns:
            The state document, or None if nothing has been saved yet

        Raises:
            StateStoreError: If the file exists but is not valid state
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, "r") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Unreadable state file {self.path}: {e}") from e

        if not isinstance(state, dict) or not isinstance(state.get("positions", []), list):
            raise StateStoreError(f"Malformed state file {self.path}")

        state.setdefault("positions", [])
        return state

    def save(self, positions: list[dict]) -> None:
        state = {
            "positions": positions,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        write_json_atomic(self.path, state)
        logger.debug(f"State saved: {len(positions)} positions -> {self.path}")


class MemoryStateStore:
    """In-process store, used when no state file is configured."""

    def __init__(self):
        self._state: Optional[dict] = None

    def load(self) -> Optional[dict]:
        return self._state

    def save(self, positions: list[dict]) -> None:
        self._state = {
            "positions": positions,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
