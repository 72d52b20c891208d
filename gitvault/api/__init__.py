"""HTTP interface for gitvault."""

from gitvault.api.app import create_app
from gitvault.api.auth import PublicAccess, TokenIssuer, TokenVerifier, create_signin_router
from gitvault.api.routes import create_router
from gitvault.api.webhook import PushEventHandler, create_webhook_router

__all__ = [
    "create_app",
    "create_router",
    "create_signin_router",
    "create_webhook_router",
    "PublicAccess",
    "PushEventHandler",
    "TokenIssuer",
    "TokenVerifier",
]
