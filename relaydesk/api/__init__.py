from relaydesk.api.orchestration import router as orchestration_router
from relaydesk.api.webhooks import router as webhooks_router
from relaydesk.api.messages import router as messages_router
from relaydesk.api.tenants import router as tenants_router

__all__ = [
    "orchestration_router",
    "webhooks_router",
    "messages_router",
    "tenants_router",
]
