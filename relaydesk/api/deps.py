"""Shared FastAPI dependencies"""

import logging
import secrets
from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request

from relaydesk.config import settings
from relaydesk.services.credential_resolver import (
    CredentialResolutionError,
    CredentialResolver,
    RequestContext,
    Resolution,
    get_credential_resolver,
)

logger = logging.getLogger(__name__)


async def get_resolution(
    request: Request,
    resolver: CredentialResolver = Depends(get_credential_resolver),
) -> AsyncIterator[Resolution]:
    """Resolve the tenant backend for this request; closed after the response."""
    try:
        resolution = await resolver.resolve(RequestContext.from_request(request))
    except CredentialResolutionError as e:
        logger.error(f"[API] Credential resolution failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    try:
        yield resolution
    finally:
        await resolution.close()


async def require_functional(resolution: Resolution = Depends(get_resolution)) -> Resolution:
    if not resolution.is_functional:
        raise HTTPException(status_code=401, detail="No tenant credentials for this request")
    return resolution


async def require_admin(request: Request) -> None:
    """Guard for management endpoints when an admin API key is configured."""
    if not settings.admin_api_key:
        return
    supplied = request.headers.get("x-admin-key", "")
    if not secrets.compare_digest(supplied, settings.admin_api_key):
        raise HTTPException(status_code=403, detail="Admin key required")
