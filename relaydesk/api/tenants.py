"""
Tenant and bot registry management.

POST   /api/tenants/credentials   store (encrypted) backend credentials for a tenant
POST   /api/tenants/bots          register a bot token for a tenant or the admin workspace
DELETE /api/tenants/bots/{token}  remove a bot from the registry
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.api.deps import require_admin
from relaydesk.db.database import get_db
from relaydesk.schemas import (
    BotRegisterRequest,
    BotRegisterResponse,
    CredentialsRequest,
    CredentialsResponse,
)
from relaydesk.services import bot_registry, tenant_service
from relaydesk.services.backend import TenantCredentials
from relaydesk.services.credential_resolver import (
    CredentialResolutionError,
    CredentialResolver,
    get_credential_resolver,
)
from relaydesk.services.encryption import CredentialDecryptError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[Depends(require_admin)])


@router.post("/credentials", response_model=CredentialsResponse)
async def store_credentials(body: CredentialsRequest, db: AsyncSession = Depends(get_db)):
    creds = TenantCredentials(
        backend_url=body.backend_url.rstrip("/"),
        anon_key=body.anon_key,
        service_role_key=body.service_role_key,
    )
    try:
        tenant = await tenant_service.store_tenant_credentials(db, body.email, creds, name=body.name)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return CredentialsResponse(
        tenant_id=tenant.id,
        email=tenant.email,
        encrypted=bool((tenant.credentials or {}).get("_encrypted")),
    )


@router.post("/bots", response_model=BotRegisterResponse)
async def register_bot(
    body: BotRegisterRequest,
    db: AsyncSession = Depends(get_db),
    resolver: CredentialResolver = Depends(get_credential_resolver),
):
    owner_id = None
    if body.is_admin_bot:
        try:
            creds = resolver.admin_credentials()
        except CredentialResolutionError as e:
            raise HTTPException(status_code=503, detail=str(e))
    else:
        if not body.owner_email:
            raise HTTPException(status_code=400, detail="owner_email is required for tenant bots")
        tenant = await tenant_service.get_tenant_by_email(db, body.owner_email)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        try:
            creds = tenant_service.load_tenant_credentials(tenant)
        except CredentialDecryptError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if creds is None:
            raise HTTPException(status_code=409, detail="Tenant has no stored credentials")
        owner_id = tenant.id

    try:
        entry = await bot_registry.register_bot(
            db,
            body.token,
            creds,
            owner_id=owner_id,
            owner_email=body.owner_email,
            bot_name=body.bot_name,
            is_admin_bot=body.is_admin_bot,
        )
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return BotRegisterResponse(
        token_suffix=entry.token[-6:],
        bot_name=entry.bot_name,
        owner_email=entry.owner_email,
        is_admin_bot=entry.is_admin_bot,
    )


@router.delete("/bots/{token}")
async def delete_bot(token: str, db: AsyncSession = Depends(get_db)):
    if not await bot_registry.remove_bot(db, token):
        raise HTTPException(status_code=404, detail="Bot not registered")
    return {"status": "deleted"}
