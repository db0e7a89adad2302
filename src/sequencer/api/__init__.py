"""Read-only HTTP status API."""

from .app import create_app, create_ledger_router

__all__ = ["create_app", "create_ledger_router"]
