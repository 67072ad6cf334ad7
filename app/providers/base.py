"""
Shared pieces for the social OAuth/publish clients.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from ..responses import ProviderError


class Provider(str, Enum):
    """Supported social providers"""
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"


@dataclass
class OAuthTokens:
    """Result of a code exchange"""
    access_token: str
    expires_in: Optional[int] = None  # seconds
    scopes: List[str] = field(default_factory=list)


@dataclass
class ProviderIdentity:
    """Minimal identity of the connected account"""
    external_id: str
    display_name: Optional[str] = None
    pages: List[Dict[str, str]] = field(default_factory=list)  # facebook only


@dataclass
class PublishResult:
    id: Optional[str]
    permalink: Optional[str] = None


def _upstream_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or str(error)
    if isinstance(body, dict):
        return body.get("error_description") or body.get("message") or error or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


class ProviderClient:
    """Base HTTP client; every failure surfaces as ProviderError."""

    name = "provider"

    def __init__(self, timeout: float):
        self.timeout = timeout

    def is_configured(self) -> bool:
        raise NotImplementedError

    def authorize_url(self, state: str) -> str:
        raise NotImplementedError

    def exchange_code(self, code: str) -> OAuthTokens:
        raise NotImplementedError

    def fetch_identity(self, access_token: str) -> ProviderIdentity:
        raise NotImplementedError

    def revoke(self, access_token: str) -> None:
        raise NotImplementedError

    def publish(self, access_token: str, target: str, text: str, image_url: Optional[str] = None) -> PublishResult:
        raise NotImplementedError

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = requests.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(self.name, f"request failed: {e}")

        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                _upstream_message(response),
                rejected=response.status_code < 500,
                details={"upstream_status": response.status_code},
            )
        return response

    def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        response = self._send(method, url, **kwargs)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
