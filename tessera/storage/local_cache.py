from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Tuple


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache` when Redis is disabled.

    Values are round-tripped through JSON so callers observe the same
    shapes they would get back from Redis.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def get_json(self, key: str) -> Any:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = time.monotonic() + max(1, int(ttl_seconds))
        with self._lock:
            self._entries[key] = (expires_at, json.dumps(value))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
