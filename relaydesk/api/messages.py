"""Message management endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from relaydesk.api.deps import require_functional
from relaydesk.schemas import DeleteMessagesRequest, DeleteMessagesResponse
from relaydesk.services.backend import BackendError
from relaydesk.services.credential_resolver import Resolution
from relaydesk.services.memory_service import MemoryService
from relaydesk.services.message_store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


@router.delete("", response_model=DeleteMessagesResponse)
async def delete_messages(
    body: DeleteMessagesRequest,
    resolution: Resolution = Depends(require_functional),
):
    """Delete messages and the memories extracted from them."""
    backend = resolution.backend
    store = MessageStore(backend, memory=MemoryService(backend))
    try:
        result = await store.delete_messages(body.message_ids)
    except BackendError as e:
        logger.error(f"[API] Message deletion failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to delete messages: {e}")
    return result.to_dict()
