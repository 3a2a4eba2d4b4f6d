"""
Message Store — messages, contacts and agents in a tenant backend.

Thin, intention-revealing wrappers over DataBackend so the orchestrator,
webhook ingestion and the messages API share one set of queries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from relaydesk.agent.agent_selector import Agent
from relaydesk.services.backend import BackendError, DataBackend, eq, gt, in_
from relaydesk.services.memory_service import MemoryService

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeleteResult:
    deleted: int
    memories_deleted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"deleted": self.deleted, "memories_deleted": self.memories_deleted}


class MessageStore:
    """Message, contact and agent queries for one tenant."""

    def __init__(
        self,
        backend: DataBackend,
        memory: Optional[MemoryService] = None,
        reuse_window_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.memory = memory
        self.reuse_window = timedelta(seconds=reuse_window_seconds)
        self._clock = clock

    # ── Messages ─────────────────────────────────────────

    async def message_exists(self, message_id: str) -> bool:
        return await self.backend.count("messages", [eq("id", message_id)]) > 0

    async def fetch_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Message row with its contact embedded under ``contacts``."""
        rows = await self.backend.select(
            "messages", columns="*, contacts(*)", filters=[eq("id", message_id)], limit=1
        )
        return rows[0] if rows else None

    async def find_recent_outgoing(self, contact_id: str, content: str) -> Optional[Dict[str, Any]]:
        since = (self._clock() - self.reuse_window).isoformat()
        rows = await self.backend.select(
            "messages",
            filters=[
                eq("contact_id", contact_id),
                eq("direction", "outgoing"),
                eq("content", content),
                gt("timestamp", since),
            ],
            order="timestamp.desc",
            limit=1,
        )
        return rows[0] if rows else None

    async def insert_outgoing(
        self, contact_id: str, content: str, is_ai_response: bool = True
    ) -> Dict[str, Any]:
        """
        Persist an outgoing reply.

        An identical reply to the same contact written inside the reuse
        window is returned instead of inserting a second row.
        """
        existing = await self.find_recent_outgoing(contact_id, content)
        if existing:
            logger.info(f"[STORE] Reusing outgoing message {existing.get('id')} for {contact_id}")
            return existing
        rows = await self.backend.insert("messages", {
            "contact_id": contact_id,
            "content": content,
            "timestamp": self._clock().isoformat(),
            "is_ai_response": is_ai_response,
            "is_sent": False,
            "is_viewed": False,
            "is_from_customer": False,
            "direction": "outgoing",
        })
        return rows[0] if rows else {}

    async def mark_delivery(self, message_id: str, delivered: bool) -> None:
        await self.backend.update(
            "messages",
            {"is_sent": delivered, "status": "sent" if delivered else "failed"},
            [eq("id", message_id)],
        )

    async def insert_incoming(self, contact_id: str, content: str) -> Dict[str, Any]:
        rows = await self.backend.insert("messages", {
            "contact_id": contact_id,
            "content": content,
            "timestamp": self._clock().isoformat(),
            "is_from_customer": True,
            "direction": "incoming",
            "is_ai_response": False,
            "is_sent": True,
            "is_viewed": False,
        })
        return rows[0] if rows else {}

    async def delete_messages(self, message_ids: List[str]) -> DeleteResult:
        """
        Delete messages, removing their memories first.

        A memory deletion failure is logged and message deletion proceeds.
        """
        memories_deleted = True
        if self.memory is not None:
            memories_deleted = await self.memory.delete_by_message_ids(message_ids)
            if not memories_deleted:
                logger.warning("[STORE] Memory cleanup failed; deleting messages anyway")
        if message_ids:
            await self.backend.delete("messages", [in_("id", message_ids)])
        logger.info(f"[STORE] Deleted {len(message_ids)} messages")
        return DeleteResult(deleted=len(message_ids), memories_deleted=memories_deleted)

    # ── Contacts ─────────────────────────────────────────

    async def find_or_create_contact(self, contact_info: str, name: str = "") -> str:
        """Contact id for a channel address, creating the contact if needed."""
        now = self._clock().isoformat()
        rows = await self.backend.select(
            "contacts", columns="id", filters=[eq("contact_info", contact_info)], limit=1
        )
        if rows:
            contact_id = rows[0]["id"]
            values: Dict[str, Any] = {"last_contact": now}
            if name:
                values["name"] = name
            await self.backend.update("contacts", values, [eq("id", contact_id)])
            return contact_id

        try:
            created = await self.backend.insert("contacts", {
                "name": name or contact_info,
                "contact_info": contact_info,
                "last_contact": now,
            })
            logger.info(f"[STORE] Created contact {name or contact_info}")
            return created[0]["id"]
        except BackendError as e:
            if not e.is_unique_violation:
                raise
            # Another request created it first
            rows = await self.backend.select(
                "contacts", columns="id", filters=[eq("contact_info", contact_info)], limit=1
            )
            if not rows:
                raise
            return rows[0]["id"]

    async def touch_contact(self, contact_id: str) -> None:
        await self.backend.update(
            "contacts", {"last_contact": self._clock().isoformat()}, [eq("id", contact_id)]
        )

    # ── Agents ───────────────────────────────────────────

    async def list_agents(self) -> List[Agent]:
        rows = await self.backend.select("agents", order="created_at.asc")
        return [Agent.from_row(row) for row in rows]
