from relaydesk.db.models import Base, Tenant, BotRegistryEntry
from relaydesk.db.database import get_db, init_db, drop_db, async_session_maker, engine, tenant_schema_sql

__all__ = [
    "Base",
    "Tenant",
    "BotRegistryEntry",
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "tenant_schema_sql",
]
