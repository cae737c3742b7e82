"""Initial schema - tenants, tenant_configs, api_keys, connections, agents, usage_records, dashboard_messages.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _tenant_fk() -> sa.Column:
    return sa.Column(
        "tenant_id",
        sa.String(36),
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("identity_user_id", sa.Text(), unique=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("plan", sa.String(20), nullable=False, server_default="free"),
        sa.Column("billing_customer_id", sa.Text(), nullable=True),
        sa.Column("billing_subscription_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tenants_billing_customer_id", "tenants", ["billing_customer_id"])

    op.create_table(
        "tenant_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("config", JSON, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", name="uq_tenant_configs_tenant"),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        sa.Column("key_hash", sa.String(255), unique=True, nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"])

    op.create_table(
        "connections",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("channel_id", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("credentials_enc", sa.Text(), nullable=True),
        sa.Column("metadata", JSON, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "channel_id", name="uq_connections_tenant_channel"),
    )
    op.create_index("ix_connections_tenant_id", "connections", ["tenant_id"])
    op.create_index("ix_connections_channel_id", "connections", ["channel_id"])

    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("slug", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("model", sa.Text(), nullable=False, server_default="claude-sonnet-4-20250514"),
        sa.Column("model_provider", sa.String(20), nullable=False, server_default="anthropic"),
        sa.Column("tools_policy", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_agents_tenant_slug"),
    )
    op.create_index("ix_agents_tenant_id", "agents", ["tenant_id"])

    op.create_table(
        "usage_records",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("agent_slug", sa.Text(), nullable=True),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("channel_id", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_usage_records_tenant_created", "usage_records", ["tenant_id", "created_at"]
    )

    op.create_table(
        "dashboard_messages",
        sa.Column("id", sa.String(36), primary_key=True),
        _tenant_fk(),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_dashboard_messages_tenant_created", "dashboard_messages", ["tenant_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("dashboard_messages")
    op.drop_table("usage_records")
    op.drop_table("agents")
    op.drop_table("connections")
    op.drop_table("api_keys")
    op.drop_table("tenant_configs")
    op.drop_table("tenants")
