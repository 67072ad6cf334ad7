"""
Outbound provider clients: email senders and social OAuth/publish clients.
"""
from typing import Dict

from ..config import Settings, get_settings
from .base import OAuthTokens, Provider, ProviderClient, ProviderIdentity, PublishResult
from .facebook import FacebookClient
from .linkedin import LinkedInClient


def build_social_clients(settings: Settings) -> Dict[str, ProviderClient]:
    return {
        Provider.FACEBOOK.value: FacebookClient(settings),
        Provider.LINKEDIN.value: LinkedInClient(settings),
    }


def get_social_clients() -> Dict[str, ProviderClient]:
    """FastAPI dependency; tests override it with fakes."""
    return build_social_clients(get_settings())


__all__ = [
    "OAuthTokens",
    "Provider",
    "ProviderClient",
    "ProviderIdentity",
    "PublishResult",
    "FacebookClient",
    "LinkedInClient",
    "build_social_clients",
    "get_social_clients",
]
