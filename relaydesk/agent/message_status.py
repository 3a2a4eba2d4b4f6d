"""
Message Status Tracker — lifecycle of each message through orchestration.

    new → analyzing → delegating → replying → completed
                 ↘          ↘          ↘
                              error

``new`` is implicit (the message is not in the cache yet); ``completed``
and ``error`` are terminal. The tracker also owns the processing set,
which is how concurrent triggers for the same message are collapsed:
an id is claimed before any side effect and released only after a short
grace period once the run finishes.

Timed behaviour (release from the processing set, eviction from the
cache, forgetting processed ids) is recorded as deadlines and enforced
by ``sweep()``, which runs on every access and on the scheduler tick.

Usage:
    from relaydesk.agent.message_status import get_status_tracker, MessageState

    tracker = get_status_tracker()
    if tracker.try_acquire(message_id):
        tracker.update_status(message_id, MessageState.ANALYZING, details="Fetching message details...")
        ...
        tracker.mark_as_processed(message_id)
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    NEW = "new"
    ANALYZING = "analyzing"
    DELEGATING = "delegating"
    REPLYING = "replying"
    COMPLETED = "completed"
    ERROR = "error"
    # Read-side only
    PROCESSING = "processing"
    UNKNOWN = "unknown"


TERMINAL_STATES = frozenset({MessageState.COMPLETED, MessageState.ERROR})

_UNSET: Any = object()


@dataclass
class ProcessingStage:
    stage: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "details": self.details}


@dataclass
class MessageStatus:
    """Cached status of one message."""
    id: str
    status: MessageState
    processing_stage: ProcessingStage
    agent_name: Optional[str] = None
    agent_description: Optional[str] = None
    response: Optional[str] = None
    processing_details: Optional[Dict[str, Any]] = None
    is_completed: bool = False
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def initial(cls, message_id: str) -> "MessageStatus":
        return cls(
            id=message_id,
            status=MessageState.NEW,
            processing_stage=ProcessingStage("analyzing", "Waiting to process message..."),
        )

    @classmethod
    def in_flight(cls, message_id: str) -> "MessageStatus":
        return cls(
            id=message_id,
            status=MessageState.PROCESSING,
            processing_stage=ProcessingStage("analyzing", "Message is already being processed..."),
        )

    @classmethod
    def unknown(cls, message_id: str) -> "MessageStatus":
        return cls(
            id=message_id,
            status=MessageState.UNKNOWN,
            processing_stage=ProcessingStage("unknown", "Message status unknown"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "processing_stage": self.processing_stage.to_dict(),
            "is_completed": self.is_completed,
        }
        for name in ("agent_name", "agent_description", "response", "processing_details"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


class MessageStatusTracker:
    """In-process status cache plus the processing and processed sets."""

    def __init__(
        self,
        processing_grace_seconds: float = 5.0,
        eviction_seconds: float = 900.0,
        processed_retention_seconds: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._statuses: Dict[str, MessageStatus] = {}
        self._processing: Dict[str, Optional[float]] = {}  # id → release deadline (None while running)
        self._processed: Dict[str, float] = {}  # id → forget deadline
        self._evictions: Dict[str, float] = {}  # id → cache eviction deadline
        self._processing_grace = processing_grace_seconds
        self._eviction_after = eviction_seconds
        self._processed_retention = processed_retention_seconds
        self._clock = clock
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Status cache
    # ------------------------------------------------------------------

    def update_status(
        self,
        message_id: str,
        status: MessageState,
        *,
        stage: Optional[str] = None,
        details: Optional[str] = None,
        agent_name: Optional[str] = _UNSET,
        agent_description: Optional[str] = _UNSET,
        response: Optional[str] = _UNSET,
        processing_details: Optional[Dict[str, Any]] = _UNSET,
    ) -> MessageStatus:
        """
        Merge a new status into the cache.

        Omitted fields keep their previous values. ``stage`` defaults to
        the status name and ``details`` to "Message is being <status>...".
        """
        status = MessageState(status)
        with self._lock:
            self._sweep_locked(self._clock())
            previous = self._statuses.get(message_id) or MessageStatus.initial(message_id)
            updated = replace(
                previous,
                status=status,
                processing_stage=ProcessingStage(
                    stage or status.value,
                    details or f"Message is being {status.value}...",
                ),
                agent_name=previous.agent_name if agent_name is _UNSET else agent_name,
                agent_description=(
                    previous.agent_description if agent_description is _UNSET else agent_description
                ),
                response=previous.response if response is _UNSET else response,
                processing_details=(
                    previous.processing_details if processing_details is _UNSET else processing_details
                ),
                updated_at=time.time(),
            )
            self._statuses[message_id] = updated
        logger.debug(f"[STATUS] {message_id} → {status.value}: {updated.processing_stage.details}")
        return updated

    def get_cached(self, message_id: str) -> Optional[MessageStatus]:
        with self._lock:
            self._sweep_locked(self._clock())
            return self._statuses.get(message_id)

    def get_status(self, message_id: str) -> MessageStatus:
        """
        Status for display.

        Falls back to ``completed`` for processed ids whose entry was
        evicted, ``processing`` for claimed ids whose run has not written
        a status yet, and ``unknown`` otherwise.
        """
        with self._lock:
            self._sweep_locked(self._clock())
            cached = self._statuses.get(message_id)
            if cached is not None:
                return cached
            if message_id in self._processed:
                return MessageStatus(
                    id=message_id,
                    status=MessageState.COMPLETED,
                    processing_stage=ProcessingStage(
                        "completed", "Message was processed (status retrieved from processed set)"
                    ),
                    is_completed=True,
                )
            if message_id in self._processing:
                return MessageStatus.in_flight(message_id)
            return MessageStatus.unknown(message_id)

    # ------------------------------------------------------------------
    # Processing / processed sets
    # ------------------------------------------------------------------

    def try_acquire(self, message_id: str, force: bool = False) -> bool:
        """
        Atomically claim a message for orchestration.

        Returns False while the id is in the processing set. With
        ``force`` an id that is only waiting out its release grace period
        can be re-claimed; a run that is still active never can.
        """
        with self._lock:
            self._sweep_locked(self._clock())
            if message_id in self._processing:
                still_running = self._processing[message_id] is None
                if still_running or not force:
                    return False
            self._claim_locked(message_id, forced=force)
            return True

    def mark_as_processing(self, message_id: str) -> None:
        with self._lock:
            self._claim_locked(message_id)

    def is_processing(self, message_id: str) -> bool:
        with self._lock:
            self._sweep_locked(self._clock())
            return message_id in self._processing

    def is_running(self, message_id: str) -> bool:
        """True while a run holds the id (excludes the release grace period)."""
        with self._lock:
            return message_id in self._processing and self._processing[message_id] is None

    def mark_as_processed(self, message_id: str) -> None:
        """
        Record that a run finished.

        The entry is flagged completed immediately (an ``error`` status is
        kept as-is), the id leaves the processing set after the short
        grace period and the status entry is evicted after the long one.
        """
        with self._lock:
            now = self._clock()
            status = self._statuses.get(message_id)
            if status is None:
                status = MessageStatus(
                    id=message_id,
                    status=MessageState.COMPLETED,
                    processing_stage=ProcessingStage("completed", "Message processing completed"),
                )
            self._statuses[message_id] = replace(status, is_completed=True, updated_at=time.time())
            self._processing[message_id] = now + self._processing_grace
            self._processed[message_id] = now + self._processed_retention
            self._evictions[message_id] = now + self._eviction_after
        logger.debug(f"[STATUS] {message_id} marked processed")

    def is_processed(self, message_id: str) -> bool:
        with self._lock:
            self._sweep_locked(self._clock())
            return message_id in self._processed

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Enforce recorded deadlines. Returns the number of entries removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def snapshot(self) -> Dict[str, Any]:
        """Debug dump of every set and cached status."""
        with self._lock:
            self._sweep_locked(self._clock())
            return {
                "processing": sorted(self._processing),
                "running": sorted(k for k, v in self._processing.items() if v is None),
                "processed": sorted(self._processed),
                "statuses": {k: v.to_dict() for k, v in self._statuses.items()},
            }

    def list_statuses(self, message_ids: List[str]) -> List[Dict[str, Any]]:
        return [
            {
                "message_id": message_id,
                "status": self.get_status(message_id).to_dict(),
                "is_processing": self.is_processing(message_id),
                "is_processed": self.is_processed(message_id),
            }
            for message_id in message_ids
        ]

    def reset(self) -> None:
        with self._lock:
            self._statuses.clear()
            self._processing.clear()
            self._processed.clear()
            self._evictions.clear()

    def _claim_locked(self, message_id: str, forced: bool = False) -> None:
        self._processing[message_id] = None
        self._evictions.pop(message_id, None)
        status = self._statuses.get(message_id)
        if status is None:
            return
        if forced:
            # a re-run starts without the previous run's reply
            self._statuses[message_id] = replace(
                status, is_completed=False, response=None, processing_details=None
            )
        elif status.is_completed:
            self._statuses[message_id] = replace(status, is_completed=False)

    def _sweep_locked(self, now: float) -> int:
        removed = 0
        for message_id, deadline in list(self._processing.items()):
            if deadline is not None and now >= deadline:
                del self._processing[message_id]
                removed += 1
        for message_id, deadline in list(self._evictions.items()):
            if now >= deadline:
                del self._evictions[message_id]
                self._statuses.pop(message_id, None)
                removed += 1
        for message_id, deadline in list(self._processed.items()):
            if now >= deadline:
                del self._processed[message_id]
                removed += 1
        return removed


# ── Singleton ────────────────────────────────────────────
_tracker: Optional[MessageStatusTracker] = None


def get_status_tracker() -> MessageStatusTracker:
    """Get the global message status tracker."""
    global _tracker
    if _tracker is None:
        from relaydesk.config import settings
        _tracker = MessageStatusTracker(
            processing_grace_seconds=settings.status_processing_grace_seconds,
            eviction_seconds=settings.status_eviction_seconds,
            processed_retention_seconds=settings.processed_retention_seconds,
        )
    return _tracker
