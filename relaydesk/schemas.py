"""Pydantic schemas for API request/response validation"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, EmailStr


# ============ Orchestration Schemas ============

class OrchestrationRequest(BaseModel):
    """Start one message (``id``) or read the status of many (``message_ids``)."""
    id: Optional[str] = None
    message_ids: Optional[List[str]] = None
    force_reprocess: bool = False


class ProcessingStageResponse(BaseModel):
    stage: str
    details: str


class MessageStatusResponse(BaseModel):
    id: str
    status: str
    processing_stage: ProcessingStageResponse
    agent_name: Optional[str] = None
    agent_description: Optional[str] = None
    response: Optional[str] = None
    processing_details: Optional[Dict[str, Any]] = None
    is_completed: bool = False


class StartResponse(BaseModel):
    message_id: str
    status: str
    details: str
    is_new: bool
    processing_stage: Optional[ProcessingStageResponse] = None


class StatusListItem(BaseModel):
    message_id: str
    status: MessageStatusResponse
    is_processing: bool
    is_processed: bool


class StatusListResponse(BaseModel):
    statuses: List[StatusListItem]


# ============ Tenant / Bot Schemas ============

class CredentialsRequest(BaseModel):
    email: EmailStr
    backend_url: str = Field(..., min_length=1)
    anon_key: str = Field(..., min_length=1)
    service_role_key: Optional[str] = None
    name: Optional[str] = None


class CredentialsResponse(BaseModel):
    tenant_id: str
    email: str
    encrypted: bool


class BotRegisterRequest(BaseModel):
    token: str = Field(..., min_length=1)
    bot_name: Optional[str] = None
    owner_email: Optional[EmailStr] = None
    is_admin_bot: bool = False


class BotRegisterResponse(BaseModel):
    token_suffix: str
    bot_name: Optional[str] = None
    owner_email: Optional[str] = None
    is_admin_bot: bool


# ============ Message Schemas ============

class DeleteMessagesRequest(BaseModel):
    message_ids: List[str] = Field(..., min_length=1)


class DeleteMessagesResponse(BaseModel):
    deleted: int
    memories_deleted: bool


# ============ Telegram Webhook ============

class TelegramUser(BaseModel):
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int


class TelegramMessage(BaseModel):
    message_id: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None

    model_config = {"populate_by_name": True}

    @property
    def display_name(self) -> str:
        if not self.from_user:
            return ""
        parts = [self.from_user.first_name or "", self.from_user.last_name or ""]
        return " ".join(p for p in parts if p).strip()


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None
