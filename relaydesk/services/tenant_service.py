"""Tenant lookup and credential storage in the admin registry"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.db.models import Tenant
from relaydesk.services.backend import TenantCredentials
from relaydesk.services.encryption import decrypt_credentials, encrypt_credentials

logger = logging.getLogger(__name__)


async def get_tenant_by_email(db: AsyncSession, email: str) -> Optional[Tenant]:
    """Get tenant by email"""
    result = await db.execute(select(Tenant).where(Tenant.email == email.lower()))
    return result.scalar_one_or_none()


async def list_tenants_with_credentials(db: AsyncSession, limit: int = 10) -> List[Tenant]:
    """Active tenants that have a stored credential blob, oldest first."""
    result = await db.execute(
        select(Tenant)
        .where(Tenant.credentials.is_not(None), Tenant.is_active == True)
        .order_by(Tenant.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


def load_tenant_credentials(tenant: Tenant) -> Optional[TenantCredentials]:
    """
    Decrypt a tenant's stored blob.

    Returns None when nothing usable is stored. Raises
    CredentialDecryptError when the blob is encrypted with another key.
    """
    if not tenant.credentials:
        return None
    return TenantCredentials.from_blob(decrypt_credentials(tenant.credentials))


async def store_tenant_credentials(
    db: AsyncSession,
    email: str,
    credentials: TenantCredentials,
    name: Optional[str] = None,
) -> Tenant:
    """Encrypt and store credentials for a tenant, creating the tenant if needed."""
    blob = encrypt_credentials(credentials.to_blob())
    tenant = await get_tenant_by_email(db, email)
    if tenant is None:
        tenant = Tenant(email=email.lower(), name=name, credentials=blob)
        db.add(tenant)
        logger.info(f"[TENANT] Created tenant {email.lower()}")
    else:
        tenant.credentials = blob
        if name:
            tenant.name = name
        logger.info(f"[TENANT] Updated credentials for {tenant.email}")
    await db.commit()
    await db.refresh(tenant)
    return tenant
