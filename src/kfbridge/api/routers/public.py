"""Public-facing routes."""

from fastapi import APIRouter, Depends

from kfbridge.api.deps import get_service
from kfbridge.services.bridge import BridgeService

router = APIRouter()


@router.get("/health")
def health(service: BridgeService = Depends(get_service)) -> dict:
    """Health check endpoint."""
    return {"status": "ok", "accounts": len(service.accounts())}
