"""Per-browsing-session storage for in-progress funnel sessions."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Tuple

from pydantic import ValidationError

from .config import get_settings
from .schemas import SessionRecord

SESSION_KEY_PREFIX = "rmp_review_session_"
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


class StorageError(Exception):
    """Raised by a storage area that cannot accept a write."""


class StorageArea:
    """String key/value area with a size quota, one per browsing session."""

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES) -> None:
        self._items: Dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        used = sum(len(k) + len(v) for k, v in self._items.items() if k != key)
        if used + len(key) + len(value) > self._quota_bytes:
            raise StorageError(f"Quota of {self._quota_bytes} bytes exceeded writing '{key}'.")
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class SessionStore:
    """Persist funnel sessions keyed by business id.

    Reads treat missing, malformed and expired records alike: the caller only
    ever sees a valid ``SessionRecord`` or ``None``. Writes never raise.
    """

    def __init__(
        self,
        area: StorageArea | None = None,
        *,
        ttl_ms: int | None = None,
        clock: Clock = epoch_ms,
    ) -> None:
        self._area = area if area is not None else StorageArea()
        self._ttl_ms = ttl_ms if ttl_ms is not None else get_settings().session_ttl_ms
        self._clock = clock

    @staticmethod
    def key_for(business_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{business_id}"

    def now(self) -> int:
        return self._clock()

    def put(self, business_id: str, record: SessionRecord) -> None:
        """Overwrite the stored session for *business_id*."""

        try:
            self._area.set_item(self.key_for(business_id), record.model_dump_json(by_alias=True))
        except StorageError as exc:
            logger.warning("Session write for %s dropped: %s", business_id, exc)

    def get(self, business_id: str) -> SessionRecord | None:
        """Return the stored session, or ``None`` if absent, corrupt or expired."""

        raw = self._area.get_item(self.key_for(business_id))
        if raw is None:
            return None
        try:
            record = SessionRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring corrupt session record for %s", business_id)
            return None
        if self.now() - record.timestamp >= self._ttl_ms:
            logger.debug("Session record for %s expired", business_id)
            return None
        return record

    def delete(self, business_id: str) -> None:
        self._area.remove_item(self.key_for(business_id))


class IdleExpiringMap:
    """Mapping for per-browsing-session objects, bounded in age and size.

    Entries untouched for ``idle_ms`` are dropped on the next access, and the
    least recently used entry goes first once ``max_entries`` is reached.
    """

    def __init__(self, idle_ms: int, max_entries: int, clock: Clock = epoch_ms) -> None:
        self._entries: "OrderedDict[Hashable, Tuple[int, Any]]" = OrderedDict()
        self._idle_ms = idle_ms
        self._max_entries = max(1, max_entries)
        self._clock = clock

    def get(self, key: Hashable) -> Any | None:
        now = self._clock()
        self._evict_idle(now)
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries[key] = (now, entry[1])
        self._entries.move_to_end(key)
        return entry[1]

    def set(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        self._evict_idle(now)
        self._entries[key] = (now, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.info("Evicted browsing session entry %r over the cap of %d", evicted, self._max_entries)

    def pop(self, key: Hashable) -> Any | None:
        entry = self._entries.pop(key, None)
        return entry[1] if entry is not None else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_idle(self, now: int) -> None:
        # Entries are kept in access order, so the idle ones sit at the front.
        while self._entries:
            key, (last_seen, _) = next(iter(self._entries.items()))
            if now - last_seen < self._idle_ms:
                break
            del self._entries[key]
            logger.debug("Evicted idle browsing session entry %r", key)


class SessionStorage:
    """Hand out one ``SessionStore`` per browsing session id."""

    def __init__(
        self,
        clock: Clock = epoch_ms,
        *,
        idle_ms: int | None = None,
        max_sessions: int | None = None,
    ) -> None:
        settings = get_settings()
        self._stores = IdleExpiringMap(
            idle_ms if idle_ms is not None else settings.session_ttl_ms,
            max_sessions if max_sessions is not None else settings.max_browser_sessions,
            clock,
        )
        self._clock = clock

    def for_session(self, session_id: str) -> SessionStore:
        store = self._stores.get(session_id)
        if store is None:
            store = SessionStore(clock=self._clock)
            self._stores.set(session_id, store)
        return store

    def clear(self) -> None:
        self._stores.clear()

    def __len__(self) -> int:
        return len(self._stores)


session_storage = SessionStorage()
