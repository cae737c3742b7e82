"""Database models."""

from chatrelay.models.tenant import ApiKey, Tenant, TenantConfig
from chatrelay.models.connection import Connection
from chatrelay.models.agent import Agent
from chatrelay.models.usage import DashboardMessage, UsageRecord

__all__ = [
    "Tenant",
    "TenantConfig",
    "ApiKey",
    "Connection",
    "Agent",
    "UsageRecord",
    "DashboardMessage",
]
