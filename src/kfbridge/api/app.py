"""ASGI application for uvicorn (``uvicorn kfbridge.api.app:app``)."""

from .factory import create_app

app = create_app()
