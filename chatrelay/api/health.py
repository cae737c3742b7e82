"""Health and metrics endpoints."""

from fastapi import APIRouter

from chatrelay.auth.middleware import RelayDep

router = APIRouter()


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
async def metrics(relay: RelayDep):
    """In-flight background work, for spotting a backlog."""
    return {
        "service": "chatrelay",
        "version": "0.1.0",
        "background_tasks": relay.background.pending,
    }
