"""Billing (Stripe) and identity provider (Svix-signed) event webhooks."""

import json
import logging
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from svix.webhooks import Webhook, WebhookVerificationError

from chatrelay.auth.middleware import RelayDep
from chatrelay.database import get_db
from chatrelay.storage.repositories import (
    delete_tenant_by_identity,
    get_or_create_tenant,
    update_tenant_billing,
    update_tenant_billing_by_customer,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_configured() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Webhook secret not configured",
    )


@router.post("/billing")
async def billing_events(
    request: Request,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Plan transitions driven by Stripe subscription events."""
    secret = relay.settings.stripe_webhook_secret
    if not secret:
        raise _not_configured()

    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header",
        )

    payload = (await request.body()).decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from None

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        tenant_id = (obj.get("metadata") or {}).get("tenantId")
        if tenant_id:
            await update_tenant_billing(
                db,
                tenant_id,
                plan="pro",
                billing_customer_id=obj.get("customer"),
                billing_subscription_id=obj.get("subscription"),
            )
            logger.info("Tenant %s upgraded to pro", tenant_id)

    elif event_type == "customer.subscription.updated":
        customer_id = obj.get("customer")
        plan = "pro" if obj.get("status") == "active" else "free"
        if customer_id:
            await update_tenant_billing_by_customer(db, customer_id, plan=plan)
            logger.info("Subscription updated for customer %s: %s", customer_id, plan)

    elif event_type == "customer.subscription.deleted":
        customer_id = obj.get("customer")
        if customer_id:
            await update_tenant_billing_by_customer(
                db, customer_id, plan="free", billing_subscription_id=None
            )
            logger.info("Subscription deleted for customer %s, downgraded to free", customer_id)

    return {"ok": True}


@router.post("/identity")
async def identity_events(
    request: Request,
    relay: RelayDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Tenant provisioning and removal from identity provider user events."""
    secret = relay.settings.identity_webhook_secret
    if not secret:
        raise _not_configured()

    headers = {
        name: request.headers.get(name)
        for name in ("svix-id", "svix-timestamp", "svix-signature")
    }
    if not all(headers.values()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing svix headers",
        )

    body = await request.body()
    try:
        Webhook(secret).verify(body, headers)
        event = json.loads(body)
    except (WebhookVerificationError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from None

    if not isinstance(event, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid event payload",
        )

    event_type = event.get("type")
    data = event.get("data") or {}

    if event_type == "user.created" and data.get("id"):
        addresses = data.get("email_addresses") or []
        email = addresses[0].get("email_address") if addresses else None
        name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p) or None
        tenant, created = await get_or_create_tenant(db, data["id"], email=email, name=name)
        if created:
            logger.info("Provisioned tenant %s for user %s", tenant.id, data["id"])

    elif event_type == "user.deleted" and data.get("id"):
        removed = await delete_tenant_by_identity(db, data["id"])
        logger.info("Deleted %d tenant(s) for user %s", removed, data["id"])

    return {"ok": True}
