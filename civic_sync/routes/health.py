"""Health check endpoints."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness check. Does not touch the stores."""
    return {"status": "healthy"}
