"""
Deduplication — collapse repeated sends of the same reply.

A reply is identified by the contact it goes to plus the first 50
characters of its trimmed text (and an optional context such as the
source message id). Two sends with the same key inside the window are
treated as one; the second is skipped.

Usage:
    from relaydesk.agent.dedup import get_dedup_service

    dedup = get_dedup_service()
    if not dedup.is_duplicate(contact_id, text, context=f"messageId:{message_id}"):
        await deliver(...)
        dedup.mark_sent(contact_id, text, context=f"messageId:{message_id}")
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

KEY_CONTENT_CHARS = 50


@dataclass
class DedupeEntry:
    """A recorded send."""
    key: str
    timestamp: float

    def is_expired(self, now: float, window: float) -> bool:
        return now - self.timestamp >= window

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "timestamp": self.timestamp}


class DeduplicationService:
    """In-memory, lock-guarded record of recent sends."""

    def __init__(self, window_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, DedupeEntry] = {}
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()

    @staticmethod
    def make_key(subject_id: Any, content: str, context: Optional[str] = None) -> str:
        key = f"{subject_id}:{content.strip()[:KEY_CONTENT_CHARS]}"
        if context:
            key = f"{key}:{context}"
        return key

    def is_duplicate(self, subject_id: Any, content: Optional[str], context: Optional[str] = None) -> bool:
        """True if the same send was recorded within the window."""
        if not subject_id or not content:
            return False
        key = self.make_key(subject_id, content, context)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock(), self._window):
                self._entries.pop(key, None)
                return False
        logger.info(f"[DEDUPE] Duplicate send detected for {subject_id}")
        return True

    def mark_sent(self, subject_id: Any, content: Optional[str], context: Optional[str] = None) -> None:
        """Record a send and sweep expired entries."""
        if not subject_id or not content:
            logger.debug("[DEDUPE] mark_sent called without subject or content; ignoring")
            return
        key = self.make_key(subject_id, content, context)
        with self._lock:
            now = self._clock()
            self._entries[key] = DedupeEntry(key=key, timestamp=now)
            self._sweep_locked(now)

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def size(self) -> int:
        with self._lock:
            self._sweep_locked(self._clock())
            return len(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.is_expired(now, self._window)]
        for k in expired:
            del self._entries[k]
        return len(expired)


# ── Singleton ────────────────────────────────────────────
_service: Optional[DeduplicationService] = None


def get_dedup_service() -> DeduplicationService:
    """Get the global deduplication service."""
    global _service
    if _service is None:
        from relaydesk.config import settings
        _service = DeduplicationService(window_seconds=settings.dedup_window_seconds)
    return _service
