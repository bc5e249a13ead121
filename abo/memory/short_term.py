"""In-process scratchpad for the lifetime of one engine instance.

Nothing here is persisted; a restart loses it.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any


class ShortTermMemory:
    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._monotonic = monotonic

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._monotonic(), value)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry[1] if entry else default

    def has(self, key: str) -> bool:
        return key in self._entries

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self, max_age_seconds: float) -> int:
        """Drop entries older than ``max_age_seconds``. Returns how many went."""
        now = self._monotonic()
        stale = [
            k for k, (stored_at, _) in self._entries.items() if now - stored_at > max_age_seconds
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
