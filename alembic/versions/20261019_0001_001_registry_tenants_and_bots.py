"""Registry schema - tenants and bot registry

Revision ID: 001_registry
Revises:
Create Date: 2026-10-19

Creates the two tables the service owns: tenants (with their encrypted
backend credential blobs) and the bot registry that maps channel bot
tokens to the tenant handling them.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_registry'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('credentials', sa.JSON, nullable=True),
        sa.Column('is_active', sa.Boolean, default=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_tenants_email', 'tenants', ['email'], unique=True)

    op.create_table(
        'bot_registry',
        sa.Column('token', sa.String(255), primary_key=True),
        sa.Column('owner_id', sa.String(36), nullable=True),
        sa.Column('owner_email', sa.String(255), nullable=True),
        sa.Column('bot_name', sa.String(255), nullable=True),
        sa.Column('backend_url', sa.Text, nullable=True),
        sa.Column('backend_key', sa.Text, nullable=True),
        sa.Column('is_admin_bot', sa.Boolean, default=False),
        sa.Column('user_credentials', sa.JSON, nullable=True),
        sa.Column('is_active', sa.Boolean, default=True),
        sa.Column('last_used', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_bot_registry_owner_id', 'bot_registry', ['owner_id'])


def downgrade() -> None:
    op.drop_index('ix_bot_registry_owner_id', table_name='bot_registry')
    op.drop_table('bot_registry')
    op.drop_index('ix_tenants_email', table_name='tenants')
    op.drop_table('tenants')
