import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float] = None  # monotonic seconds

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheStore:
    """
    TTL cache owned by a single device client, used from its event loop only.

    Keys are short resource names ("users", "queues", ...). Listings are
    loaded through ``get_or_load``; a mutation wraps itself in
    ``invalidating(key)`` so the key is dropped whether the call landed or not.
    """

    def __init__(self, name: str, default_ttl: int = 300, max_size: int = 64):
        self.name = name
        self.default_ttl = default_ttl  # seconds, 0 disables expiry
        self.max_size = max_size
        self.hits = 0
        self.misses = 0
        self._data: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expired(time.monotonic()):
            del self._data[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if key not in self._data and len(self._data) >= self.max_size:
            # Dicts keep insertion order; the first key is the oldest
            del self._data[next(iter(self._data))]
        ttl = self.default_ttl if ttl is None else ttl
        expires = time.monotonic() + ttl if ttl else None
        self._data.pop(key, None)
        self._data[key] = CacheEntry(value=value, expires_at=expires)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], fresh: bool = False) -> Any:
        """Returns the cached value, or awaits ``loader`` and caches its result."""
        if not fresh:
            value = self.get(key)
            if value is not None:
                self.hits += 1
                return value
        self.misses += 1
        value = await loader()
        self.set(key, value)
        return value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    @contextmanager
    def invalidating(self, *keys: str):
        try:
            yield
        finally:
            for key in keys:
                self.delete(key)

    def clear(self) -> None:
        self._data.clear()

    @property
    def size(self) -> int:
        return len(self._data)
