"""Request-scoped access to the bridge service."""

from fastapi import Request

from kfbridge.services.bridge import BridgeService


def get_service(request: Request) -> BridgeService:
    """Return the BridgeService attached by create_app (allows test injection)."""
    return request.app.state.service
