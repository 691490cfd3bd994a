"""Health endpoints."""

from fastapi import APIRouter

from decisionos.auth.middleware import StoreDep

router = APIRouter()


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(store: StoreDep):
    """Database round trip through the guarded executor."""
    return {"status": "ok" if await store.ping() else "degraded"}
