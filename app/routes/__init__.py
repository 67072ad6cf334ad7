from .auth import router as auth_router
from .campaigns import router as campaigns_router
from .email_webhooks import router as email_webhooks_router
from .tracking import router as tracking_router
from .oauth import router as oauth_router
from .social import router as social_router
from .wallet import router as wallet_router
from .payments import router as payments_router

__all__ = [
    "auth_router",
    "campaigns_router",
    "email_webhooks_router",
    "tracking_router",
    "oauth_router",
    "social_router",
    "wallet_router",
    "payments_router",
]
