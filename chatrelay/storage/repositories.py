"""Repository functions for tenants, connections, agents, usage and chat history."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.models import (
    Agent,
    ApiKey,
    Connection,
    DashboardMessage,
    Tenant,
    TenantConfig,
    UsageRecord,
)


def _now() -> datetime:
    return datetime.now()


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


async def get_tenant(db: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_or_create_tenant(
    db: AsyncSession,
    identity_user_id: str,
    email: str | None = None,
    name: str | None = None,
) -> tuple[Tenant, bool]:
    """Find the tenant for an identity user, provisioning it (plus config) if absent."""
    result = await db.execute(select(Tenant).where(Tenant.identity_user_id == identity_user_id))
    tenant = result.scalar_one_or_none()
    if tenant:
        return tenant, False
    now = _now()
    tenant = Tenant(
        id=str(uuid4()),
        identity_user_id=identity_user_id,
        email=email,
        name=name,
        plan="free",
        created_at=now,
        updated_at=now,
    )
    db.add(tenant)
    db.add(TenantConfig(id=str(uuid4()), tenant_id=tenant.id, config={}, updated_at=now))
    await db.flush()
    return tenant, True


async def delete_tenant_by_identity(db: AsyncSession, identity_user_id: str) -> int:
    """Delete a tenant; dependent rows go with it via ON DELETE CASCADE."""
    result = await db.execute(delete(Tenant).where(Tenant.identity_user_id == identity_user_id))
    return result.rowcount or 0


async def update_tenant_billing(db: AsyncSession, tenant_id: str, **values: Any) -> int:
    result = await db.execute(
        update(Tenant).where(Tenant.id == tenant_id).values(updated_at=_now(), **values)
    )
    return result.rowcount or 0


async def update_tenant_billing_by_customer(
    db: AsyncSession, customer_id: str, **values: Any
) -> int:
    result = await db.execute(
        update(Tenant)
        .where(Tenant.billing_customer_id == customer_id)
        .values(updated_at=_now(), **values)
    )
    return result.rowcount or 0


async def get_tenant_by_api_key_hash(db: AsyncSession, key_hash: str) -> Tenant | None:
    result = await db.execute(
        select(Tenant).join(ApiKey, ApiKey.tenant_id == Tenant.id).where(ApiKey.key_hash == key_hash)
    )
    tenant = result.scalar_one_or_none()
    if tenant:
        await db.execute(
            update(ApiKey).where(ApiKey.key_hash == key_hash).values(last_used_at=_now())
        )
    return tenant


async def create_api_key(
    db: AsyncSession, tenant_id: str, key_prefix: str, key_hash: str, label: str | None = None
) -> ApiKey:
    key = ApiKey(
        id=str(uuid4()),
        tenant_id=tenant_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        label=label,
        created_at=_now(),
    )
    db.add(key)
    await db.flush()
    return key


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


async def get_agent_config(db: AsyncSession, tenant_id: str) -> Agent | None:
    """First agent for the tenant; no multi-agent routing."""
    result = await db.execute(
        select(Agent).where(Agent.tenant_id == tenant_id).order_by(Agent.created_at).limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


async def list_active_connections(db: AsyncSession, channel_id: str) -> list[Connection]:
    result = await db.execute(
        select(Connection)
        .where(Connection.channel_id == channel_id, Connection.status == "active")
        .order_by(Connection.created_at)
    )
    return list(result.scalars().all())


async def list_tenant_connections(db: AsyncSession, tenant_id: str) -> list[Connection]:
    result = await db.execute(
        select(Connection).where(Connection.tenant_id == tenant_id).order_by(Connection.created_at)
    )
    return list(result.scalars().all())


async def get_connection(db: AsyncSession, connection_id: str, tenant_id: str) -> Connection | None:
    """Get connection by ID (tenant-scoped)."""
    result = await db.execute(
        select(Connection).where(Connection.id == connection_id, Connection.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def get_tenant_connection(
    db: AsyncSession, tenant_id: str, channel_id: str
) -> Connection | None:
    result = await db.execute(
        select(Connection).where(
            Connection.tenant_id == tenant_id, Connection.channel_id == channel_id
        )
    )
    return result.scalar_one_or_none()


async def upsert_connection(
    db: AsyncSession,
    tenant_id: str,
    channel_id: str,
    credentials_enc: str,
    metadata: dict | None = None,
    label: str | None = None,
) -> Connection:
    """
    Insert or replace the tenant's connection for a channel.

    Atomic on the (tenant_id, channel_id) unique constraint, so concurrent
    connects for the same channel cannot produce duplicate rows.
    """
    table = Connection.__table__
    insert = pg_insert if db.bind.dialect.name == "postgresql" else sqlite_insert
    now = _now()
    stmt = insert(table).values(
        id=str(uuid4()),
        tenant_id=tenant_id,
        channel_id=channel_id,
        label=label,
        status="active",
        credentials_enc=credentials_enc,
        metadata=metadata or {},
        error_message=None,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.tenant_id, table.c.channel_id],
        set_={
            "credentials_enc": stmt.excluded["credentials_enc"],
            "metadata": stmt.excluded["metadata"],
            "label": func.coalesce(stmt.excluded["label"], table.c["label"]),
            "status": "active",
            "error_message": None,
            "updated_at": now,
        },
    )
    await db.execute(stmt)
    result = await db.execute(
        select(Connection)
        .where(Connection.tenant_id == tenant_id, Connection.channel_id == channel_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def mark_connection_error(db: AsyncSession, connection_id: str, message: str) -> None:
    await db.execute(
        update(Connection)
        .where(Connection.id == connection_id)
        .values(status="error", error_message=message, updated_at=_now())
    )


async def delete_connection(db: AsyncSession, connection_id: str, tenant_id: str) -> int:
    result = await db.execute(
        delete(Connection).where(Connection.id == connection_id, Connection.tenant_id == tenant_id)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


async def record_usage(
    db: AsyncSession,
    tenant_id: str,
    model: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    channel_id: str | None = None,
    agent_slug: str | None = None,
) -> UsageRecord:
    """Append a usage record. No read-modify-write, no idempotency key."""
    rec = UsageRecord(
        id=str(uuid4()),
        tenant_id=tenant_id,
        agent_slug=agent_slug,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        channel_id=channel_id,
        created_at=_now(),
    )
    db.add(rec)
    await db.flush()
    return rec


async def count_usage_since(db: AsyncSession, tenant_id: str, since: datetime) -> int:
    result = await db.execute(
        select(func.count(UsageRecord.id)).where(
            UsageRecord.tenant_id == tenant_id, UsageRecord.created_at >= since
        )
    )
    return int(result.scalar_one() or 0)


async def sum_usage_since(db: AsyncSession, tenant_id: str, since: datetime) -> tuple[int, int, int]:
    """(message_count, input_tokens, output_tokens) for the window."""
    result = await db.execute(
        select(
            func.count(UsageRecord.id),
            func.coalesce(func.sum(UsageRecord.input_tokens), 0),
            func.coalesce(func.sum(UsageRecord.output_tokens), 0),
        ).where(UsageRecord.tenant_id == tenant_id, UsageRecord.created_at >= since)
    )
    count, input_tokens, output_tokens = result.one()
    return int(count or 0), int(input_tokens or 0), int(output_tokens or 0)


# ---------------------------------------------------------------------------
# Dashboard chat history
# ---------------------------------------------------------------------------


async def add_dashboard_message(
    db: AsyncSession,
    tenant_id: str,
    role: str,
    content: str,
    model: str | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> DashboardMessage:
    msg = DashboardMessage(
        id=str(uuid4()),
        tenant_id=tenant_id,
        role=role,
        content=content,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        created_at=_now(),
    )
    db.add(msg)
    await db.flush()
    return msg


async def list_dashboard_messages(
    db: AsyncSession, tenant_id: str, limit: int = 100
) -> list[DashboardMessage]:
    result = await db.execute(
        select(DashboardMessage)
        .where(DashboardMessage.tenant_id == tenant_id)
        .order_by(DashboardMessage.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def clear_dashboard_messages(db: AsyncSession, tenant_id: str) -> int:
    result = await db.execute(
        delete(DashboardMessage).where(DashboardMessage.tenant_id == tenant_id)
    )
    return result.rowcount or 0
