"""
Telegram webhook ingestion.

POST /api/bots/telegram/webhook/{token}

The bot token in the path is what the credential resolver uses to find
the owning tenant. The update's chat becomes (or matches) a contact, the
text is stored as an incoming message, and orchestration is started for
it when auto-reply is on.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from relaydesk.agent.dedup import DeduplicationService, get_dedup_service
from relaydesk.agent.orchestrator import Orchestrator, get_orchestrator
from relaydesk.api.deps import get_resolution
from relaydesk.config import settings
from relaydesk.schemas import TelegramUpdate
from relaydesk.services.backend import BackendError
from relaydesk.services.credential_resolver import RequestContext, Resolution
from relaydesk.services.message_store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bots/telegram", tags=["webhooks"])


@router.post("/webhook/{token}")
async def telegram_webhook(
    token: str,
    update: TelegramUpdate,
    request: Request,
    resolution: Resolution = Depends(get_resolution),
    dedup: DeduplicationService = Depends(get_dedup_service),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    message = update.message or update.edited_message
    if message is None:
        return {"ok": True, "ignored": "no message"}

    update_key = f"telegram-update:{token}"
    if dedup.is_duplicate(update_key, str(update.update_id)):
        logger.info(f"[WEBHOOK] Duplicate update {update.update_id}; ignoring")
        return {"ok": True, "duplicate": True}

    if not resolution.is_functional:
        raise HTTPException(status_code=503, detail="No backend available for this bot")

    chat_id = str(message.chat.id)
    content = message.text or message.model_dump_json(by_alias=True)
    store = MessageStore(resolution.backend)
    try:
        contact_id = await store.find_or_create_contact(chat_id, message.display_name)
        row = await store.insert_incoming(contact_id, content)
    except BackendError as e:
        logger.error(f"[WEBHOOK] Could not store update {update.update_id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to store message")

    dedup.mark_sent(update_key, str(update.update_id))
    message_id = row.get("id")
    logger.info(
        f"[WEBHOOK] Stored message {message_id} from {message.display_name or chat_id} "
        f"({resolution.mode.value}/{resolution.source})"
    )

    result = None
    if settings.auto_reply_enabled and message_id and message.text:
        result = orchestrator.start_or_get_status(message_id, RequestContext.from_request(request))

    return {
        "ok": True,
        "message_id": message_id,
        "contact_id": contact_id,
        "orchestration": result.to_dict() if result else None,
    }
