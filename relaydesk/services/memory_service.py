"""
Memory Service - long-term memory about contacts, stored in the tenant backend.

Handles:
- Extracting and storing memories from inbound messages
- Vector recall through the ``match_memory`` RPC
- Keyword fallbacks when vector recall finds nothing
- Resolving a contact's display name
- Cascading memory deletion for deleted messages

Every operation runs against the tenant backend the caller resolved;
a MemoryService is created per resolution and never shared.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relaydesk.config import settings
from relaydesk.services.backend import BackendError, DataBackend, eq, in_, text_search
from relaydesk.services.embedding_service import EmbeddingService, get_embedding_service
from relaydesk.services.memory_extractor import MemoryExtractor

logger = logging.getLogger(__name__)

PREFERENCE_KEYWORDS = (
    "preference", "like", "enjoy", "favorite", "prefer", "want", "wish",
    "choice", "me", "about me", "my", "myself", "i am", "personal",
)
LOCATION_KEYWORDS = ("where", "location", "city", "live", "from", "country", "address", "place")
LOCATION_SEARCH = "location or city or live or from or country or address"

NAME_FIELDS = ("name", "user_name", "first_name", "fullName")
_NAME_PHRASE = re.compile(r"(?:my name is|call me)\s+(\w+)", re.IGNORECASE)


def is_preference_query(query: str) -> bool:
    lower = query.lower()
    return any(k in lower for k in PREFERENCE_KEYWORDS)


def is_location_query(query: str) -> bool:
    lower = query.lower()
    return any(k in lower for k in LOCATION_KEYWORDS)


@dataclass
class Memory:
    """A stored memory row"""
    content: str
    memory_data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    user_id: Optional[str] = None
    message_id: Optional[str] = None
    created_at: Optional[str] = None
    similarity: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Memory":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            message_id=row.get("message_id"),
            content=row.get("content") or "",
            memory_data=row.get("memory_data") or {},
            created_at=row.get("created_at"),
            similarity=row.get("similarity"),
        )


@dataclass
class MemoryQueryResult:
    memories: List[Memory] = field(default_factory=list)
    subject_name: Optional[str] = None
    subject_info: Optional[str] = None
    strategy: str = "none"  # vector, preference_fallback, location_fallback, none


class MemoryService:
    """Store, recall and delete contact memories in one tenant backend."""

    def __init__(
        self,
        backend: DataBackend,
        embedder=None,
        extractor: Optional[MemoryExtractor] = None,
        match_threshold: Optional[float] = None,
    ):
        self.backend = backend
        self.embedder = embedder or get_embedding_service()
        self._extractor = extractor
        self.match_threshold = (
            match_threshold if match_threshold is not None else settings.memory_match_threshold
        )
        self.duplicate_threshold = settings.memory_duplicate_threshold

    @property
    def extractor(self) -> MemoryExtractor:
        if self._extractor is None:
            self._extractor = MemoryExtractor()
        return self._extractor

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def store(self, content: str, subject_id: str, message_id: Optional[str] = None) -> int:
        """
        Extract memories from a message and store each one.

        Best effort: extraction errors store nothing, and a candidate that
        fails to embed or insert is logged and skipped. Candidates from the
        same message whose embeddings are near-identical are stored once.
        """
        if not content or not subject_id:
            return 0
        try:
            candidates = await self.extractor.extract(content)
        except Exception as e:
            logger.warning(f"[MEMORY] Extraction failed for {subject_id}: {e}")
            return 0

        stored = 0
        kept: List[List[float]] = []
        for candidate in candidates:
            try:
                vector = await self.embedder.embed(candidate.content)
                if self._repeats(vector, kept):
                    logger.info(f"[MEMORY] Skipping near-duplicate '{candidate.content[:40]}'")
                    continue
                await self.backend.insert("memory", {
                    "user_id": subject_id,
                    "message_id": message_id,
                    "vector": vector,
                    "content": candidate.content,
                    "memory_data": candidate.memory_data,
                })
                kept.append(vector)
                stored += 1
            except Exception as e:
                logger.warning(f"[MEMORY] Skipping memory '{candidate.content[:40]}': {e}")
        if stored:
            logger.info(f"[MEMORY] Stored {stored}/{len(candidates)} memories for {subject_id}")
        return stored

    def _repeats(self, vector: List[float], kept: List[List[float]]) -> bool:
        return any(
            EmbeddingService.cosine_similarity(vector, other) >= self.duplicate_threshold
            for other in kept
        )

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    async def retrieve(self, subject_id: str, query: str, limit: int = 5) -> MemoryQueryResult:
        """
        Recall memories relevant to ``query``.

        Vector recall first. With no hits, preference/personal queries fall
        back to the most recent memories and location queries to a
        full-text search; preference is always checked first.
        """
        result = MemoryQueryResult()
        rows = await self._vector_recall(subject_id, query, limit)
        if rows:
            result.strategy = "vector"
        elif is_preference_query(query):
            rows = await self._safe_select(
                filters=[eq("user_id", subject_id)],
                order="created_at.desc",
                limit=limit,
            )
            result.strategy = "preference_fallback" if rows else "none"
        elif is_location_query(query):
            rows = await self._safe_select(
                filters=[eq("user_id", subject_id), text_search("content", LOCATION_SEARCH)],
                limit=limit,
            )
            result.strategy = "location_fallback" if rows else "none"

        result.memories = [Memory.from_row(r) for r in rows]
        if result.memories:
            contact = await self._contact(subject_id, "name, contact_info")
            if contact:
                result.subject_name = contact.get("name")
                result.subject_info = contact.get("contact_info")
        logger.debug(
            f"[MEMORY] Recalled {len(result.memories)} memories for {subject_id} ({result.strategy})"
        )
        return result

    async def _vector_recall(self, subject_id: str, query: str, limit: int) -> List[Dict[str, Any]]:
        try:
            vector = await self.embedder.embed(query)
        except Exception as e:
            logger.warning(f"[MEMORY] Query embedding failed: {e}")
            return []
        try:
            rows = await self.backend.rpc("match_memory", {
                "query_embedding": vector,
                "match_threshold": self.match_threshold,
                "match_count": limit,
                "filter_user_id": subject_id,
            })
        except BackendError as e:
            logger.warning(f"[MEMORY] match_memory failed, treating as no results: {e}")
            return []
        return [r for r in (rows or []) if str(r.get("user_id")) == str(subject_id)]

    async def _safe_select(self, **kwargs) -> List[Dict[str, Any]]:
        try:
            return await self.backend.select("memory", **kwargs)
        except BackendError as e:
            logger.warning(f"[MEMORY] Fallback search failed: {e}")
            return []

    async def _contact(self, subject_id: str, columns: str) -> Optional[Dict[str, Any]]:
        try:
            rows = await self.backend.select(
                "contacts", columns=columns, filters=[eq("id", subject_id)], limit=1
            )
        except BackendError as e:
            logger.warning(f"[MEMORY] Contact lookup failed for {subject_id}: {e}")
            return None
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Names and formatting
    # ------------------------------------------------------------------

    async def resolve_subject_name(self, subject_id: str) -> Optional[str]:
        """Name from memories ("my name is X", name fields), else contact first name."""
        try:
            rows = await self.backend.select(
                "memory",
                columns="memory_data, content",
                filters=[eq("user_id", subject_id), text_search("content", "name")],
                limit=5,
            )
        except BackendError as e:
            logger.warning(f"[MEMORY] Name search failed for {subject_id}: {e}")
            rows = []

        for row in rows:
            data = row.get("memory_data") or {}
            for key in NAME_FIELDS:
                if data.get(key):
                    return str(data[key])
            match = _NAME_PHRASE.search(row.get("content") or "")
            if match:
                return match.group(1)

        contact = await self._contact(subject_id, "name")
        if contact and contact.get("name"):
            return contact["name"].split()[0]
        return None

    @staticmethod
    def format_context(result: MemoryQueryResult) -> str:
        if not result.memories:
            return ""
        context = "User information based on previous conversations:\n\n"
        for index, memory in enumerate(result.memories, start=1):
            context += f"{index}. {memory.content}\n"
            if memory.memory_data:
                context += f"   Details: {json.dumps(memory.memory_data)}\n"
            context += "\n"
        return context

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_by_message_ids(self, message_ids: List[str]) -> bool:
        if not message_ids:
            return True
        try:
            await self.backend.delete("memory", [in_("message_id", message_ids)])
        except BackendError as e:
            logger.warning(f"[MEMORY] Could not delete memories for {len(message_ids)} messages: {e}")
            return False
        logger.info(f"[MEMORY] Deleted memories for {len(message_ids)} messages")
        return True
