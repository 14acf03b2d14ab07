"""Persistent state management for stock statuses and user subscriptions.

Provides JSON file backed documents with atomic-ish write (write temp then replace).
Every save rewrites the whole document.

Files:
- stock_state.json    : item_id -> last_in_stock(bool)
- subscriptions.json  : recipient_id -> subscription (see subscriptions.py)
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)


class JsonStateFile:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        """Return the stored document; a missing or corrupt file yields {}."""
        if not self.path.is_file():
            logger.info("No existing state file at %s, starting fresh", self.path)
            return {}
        try:
            data = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Could not load state file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("State file %s does not hold an object; ignoring it", self.path)
            return {}
        return data

    def save(self, data: Mapping[str, Any]) -> bool:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed saving state to %s: %s", self.path, e)
            return False
        return True


class PersistentStockState:
    """Last known availability per item, kept across restarts."""

    def __init__(self, path: Path) -> None:
        self._file = JsonStateFile(path)

    def load(self) -> Dict[str, bool]:
        return {str(k): v for k, v in self._file.load().items() if isinstance(v, bool)}

    def save(self, states: Mapping[str, bool]) -> bool:
        return self._file.save(dict(states))


__all__ = ["JsonStateFile", "PersistentStockState"]
