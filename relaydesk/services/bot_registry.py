"""
Bot Registry — maps channel bot tokens to the tenant that owns them.

Webhook requests carry only a bot token; the registry is how the
credential resolver finds the right tenant backend for them. Entries are
created on bot registration and refreshed when a webhook resolves a bot
by scanning tenants.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.db.models import BotRegistryEntry, Tenant
from relaydesk.services.backend import TenantCredentials
from relaydesk.services.encryption import (
    decrypt_credentials,
    decrypt_value,
    encrypt_credentials,
    encrypt_value,
)

logger = logging.getLogger(__name__)


async def get_bot(db: AsyncSession, token: str) -> Optional[BotRegistryEntry]:
    result = await db.execute(select(BotRegistryEntry).where(BotRegistryEntry.token == token))
    return result.scalar_one_or_none()


async def register_bot(
    db: AsyncSession,
    token: str,
    credentials: TenantCredentials,
    *,
    owner_id: Optional[str] = None,
    owner_email: Optional[str] = None,
    bot_name: Optional[str] = None,
    is_admin_bot: bool = False,
) -> BotRegistryEntry:
    """Create or update the registry entry for a bot token."""
    entry = await get_bot(db, token)
    if entry is None:
        entry = BotRegistryEntry(token=token)
        db.add(entry)

    entry.owner_id = owner_id
    entry.owner_email = owner_email.lower() if owner_email else None
    entry.bot_name = bot_name
    entry.is_admin_bot = is_admin_bot
    entry.is_active = True
    entry.backend_url = credentials.backend_url
    entry.backend_key = encrypt_value(credentials.anon_key)
    entry.user_credentials = None if is_admin_bot else encrypt_credentials(credentials.to_blob())

    await db.commit()
    await db.refresh(entry)
    logger.info(
        f"[REGISTRY] Registered {'admin' if is_admin_bot else 'tenant'} bot "
        f"{bot_name or '(unnamed)'} for {entry.owner_email or 'admin'}"
    )
    return entry


async def remove_bot(db: AsyncSession, token: str) -> bool:
    entry = await get_bot(db, token)
    if entry is None:
        return False
    await db.delete(entry)
    await db.commit()
    logger.info(f"[REGISTRY] Removed bot {entry.bot_name or '(unnamed)'}")
    return True


async def cache_tenant_credentials(
    db: AsyncSession,
    token: str,
    tenant: Tenant,
    blob: Dict[str, Any],
) -> BotRegistryEntry:
    """Write a tenant's credential blob back onto a bot's registry entry."""
    entry = await get_bot(db, token)
    if entry is None:
        entry = BotRegistryEntry(token=token, is_admin_bot=False, is_active=True)
        db.add(entry)
    entry.is_active = True
    entry.owner_id = tenant.id
    entry.owner_email = tenant.email
    entry.user_credentials = blob
    entry.last_used = datetime.utcnow()
    await db.commit()
    return entry


async def touch_bot(db: AsyncSession, entry: BotRegistryEntry) -> bool:
    """Record that a bot was used. Best effort: a failed commit is logged and rolled back."""
    entry.last_used = datetime.utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as e:
        logger.warning(f"[REGISTRY] Could not record last use of {entry.bot_name or '(unnamed)'}: {e}")
        await db.rollback()
        return False
    return True


def entry_credentials(entry: BotRegistryEntry) -> Optional[TenantCredentials]:
    """
    Credentials stored on a registry entry.

    Prefers the cached tenant blob, then the encrypted backend URL/key
    pair. Raises CredentialDecryptError if stored secrets cannot be read.
    """
    if entry.user_credentials:
        creds = TenantCredentials.from_blob(decrypt_credentials(entry.user_credentials))
        if creds:
            return creds
    if entry.backend_url and entry.backend_key:
        return TenantCredentials(
            backend_url=entry.backend_url,
            anon_key=decrypt_value(entry.backend_key),
            encrypted=True,
        )
    return None
