#!/usr/bin/env python3
"""
Seed script: creates a demo tenant, a dashboard API key and a default agent.
Run after migrations: python scripts/seed.py
"""

import asyncio
import os
import sys
from datetime import datetime
from uuid import uuid4

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chatrelay.auth.middleware import hash_api_key
from chatrelay.config import settings
from chatrelay.models import Agent, ApiKey
from chatrelay.storage.repositories import create_api_key, get_or_create_tenant

API_KEY = "crk_demo_chatrelay_12345"  # Demo API key - print this for user
DEMO_USER_ID = "user_demo"


async def seed():
    engine = create_async_engine(settings.database_url)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        tenant, created = await get_or_create_tenant(
            session, DEMO_USER_ID, email="demo@example.com", name="Demo Tenant"
        )
        if not created:
            print("Tenant already exists, using existing.")

        key_hash = hash_api_key(API_KEY)
        result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
        if result.scalar_one_or_none() is None:
            await create_api_key(session, tenant.id, API_KEY[:8], key_hash, label="seed")

        result = await session.execute(
            select(Agent).where(Agent.tenant_id == tenant.id, Agent.slug == "default")
        )
        if result.scalar_one_or_none() is None:
            now = datetime.now()
            session.add(
                Agent(
                    id=str(uuid4()),
                    tenant_id=tenant.id,
                    slug="default",
                    name="Assistant",
                    system_prompt="You are a helpful assistant.",
                    model=settings.default_agent_model,
                    created_at=now,
                    updated_at=now,
                )
            )
        await session.commit()

    await engine.dispose()

    print("Seed complete!")
    print(f"Tenant: {tenant.id}")
    print(f"API Key: {API_KEY}")
    print(f"Use: Authorization: Bearer {API_KEY}")
    print("Example: curl -X POST http://localhost:8000/v1/chat/send \\")
    print('  -H "Authorization: Bearer ' + API_KEY + '" \\')
    print('  -H "Content-Type: application/json" \\')
    print('  -d \'{"message":"Hello"}\'')


if __name__ == "__main__":
    asyncio.run(seed())
