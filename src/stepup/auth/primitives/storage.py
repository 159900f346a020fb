"""Best-effort session storage for flow state, markers and tokens.

Values are kept as JSON in memory and, when a path is given, mirrored to a
per-session file so they survive a reload of the process that owns the
session. Storage never raises: a failed write flips the store into a
degraded, memory-only mode for the rest of its lifetime.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SessionStore:
    """Key/value store with JSON (de)serialization and failure tolerance.

    ``save`` and ``remove`` return whether the change reached durable
    storage. Callers are free to ignore the result.
    """

    def __init__(self, path: str | Path | None = None):
        """Initialize the store.

        Args:
            path: Optional JSON file backing the store. Without a path the
                store lives only as long as this object.
        """
        self.path = Path(path) if path is not None else None
        self.degraded = False
        self._data: dict[str, str] = {}

        if self.path is not None:
            self._data = self._read_file()

    def save(self, key: str, value: Any) -> bool:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.debug(f"Not storing {key!r}: value is not JSON serializable ({e})")
            return False

        self._data[key] = encoded
        return self._flush()

    def load(self, key: str, fallback: Any = None) -> Any:
        encoded = self._data.get(key)
        if encoded is None:
            return fallback
        try:
            return json.loads(encoded)
        except ValueError:
            return fallback

    def has(self, key: str) -> bool:
        return key in self._data

    def remove(self, key: str) -> bool:
        if self._data.pop(key, None) is None:
            return not self.degraded
        return self._flush()

    def remove_prefix(self, prefix: str) -> bool:
        """Remove every key starting with ``prefix``."""
        stale = [key for key in self._data if key.startswith(prefix)]
        if not stale:
            return not self.degraded
        for key in stale:
            del self._data[key]
        return self._flush()

    def clear(self) -> bool:
        self._data.clear()
        return self._flush()

    def _read_file(self) -> dict[str, str]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            self._degrade(e)
            return {}

        try:
            data = json.loads(content)
        except ValueError:
            logger.warning(f"Ignoring unreadable session file {self.path}")
            return {}

        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> bool:
        if self.path is None:
            return True
        if self.degraded:
            return False

        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(self._data), encoding="utf-8")
            if os.name != "nt":
                tmp_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_path, self.path)
        except OSError as e:
            self._degrade(e)
            return False
        return True

    def _degrade(self, error: OSError) -> None:
        if not self.degraded:
            logger.warning(
                f"Session storage at {self.path} unavailable ({error}); "
                "continuing in memory only"
            )
        self.degraded = True
