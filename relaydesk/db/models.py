"""
Database models for the RelayDesk admin registry.

The admin registry is the only database this service owns directly:
- Tenants and their (encrypted) backend credentials
- The bot registry mapping channel bot tokens to owning tenants

Per-tenant data (messages, contacts, agents, memory) lives in each
tenant's own backend and is reached through DataBackend.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import String, DateTime, Boolean, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


class Tenant(Base):
    """A workspace owner with its own backend database"""
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Credential blob: {backend_url, anon_key, service_role_key?, _encrypted?, _encrypted_at?}
    credentials: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Tenant {self.email}>"


class BotRegistryEntry(Base):
    """Maps a channel bot token to the tenant whose backend handles it"""
    __tablename__ = "bot_registry"

    token: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bot_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    backend_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    backend_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Fernet-encrypted
    is_admin_bot: Mapped[bool] = mapped_column(Boolean, default=False)
    # Cached tenant credential blob, written back when a webhook scan finds the owner
    user_credentials: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<BotRegistryEntry owner={self.owner_email} admin={self.is_admin_bot}>"
