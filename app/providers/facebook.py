"""
Facebook Graph API client

- OAuth dialog URL and code exchange (short-lived, then long-lived token)
- Identity and managed pages
- Page posts (text to /feed, image to /photos) with permalink lookup
- Permission revoke and deauthorize ``signed_request`` verification
"""
import base64
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..config import Settings
from ..logging_config import social_logger as logger, timed
from ..responses import ProviderError, ValidationError
from .base import OAuthTokens, ProviderClient, ProviderIdentity, PublishResult


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class FacebookClient(ProviderClient):
    """Graph API calls for one Facebook app"""

    name = "facebook"

    def __init__(self, settings: Settings):
        super().__init__(settings.provider_timeout_seconds)
        self.app_id = settings.facebook_app_id
        self.app_secret = settings.facebook_app_secret
        self.redirect_uri = settings.facebook_redirect_uri
        self.scopes = [s.strip() for s in settings.facebook_scopes.split(",") if s.strip()]
        self.version = settings.facebook_api_version
        self.graph_url = f"https://graph.facebook.com/{self.version}"

    def is_configured(self) -> bool:
        return bool(self.app_id and self.app_secret and self.redirect_uri)

    # --------------------------------------------------------
    # OAuth
    # --------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.app_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": ",".join(self.scopes),
        }
        return f"https://www.facebook.com/{self.version}/dialog/oauth?{urlencode(params)}"

    @timed(logger)
    def exchange_code(self, code: str) -> OAuthTokens:
        short = self._call("GET", f"{self.graph_url}/oauth/access_token", params={
            "client_id": self.app_id,
            "client_secret": self.app_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        })
        short_token = short.get("access_token")
        if not short_token:
            raise ProviderError(self.name, "no access_token in code exchange")

        long = self._call("GET", f"{self.graph_url}/oauth/access_token", params={
            "grant_type": "fb_exchange_token",
            "client_id": self.app_id,
            "client_secret": self.app_secret,
            "fb_exchange_token": short_token,
        })
        return OAuthTokens(
            access_token=long.get("access_token") or short_token,
            expires_in=long.get("expires_in") or short.get("expires_in"),
            scopes=list(self.scopes),
        )

    def fetch_identity(self, access_token: str) -> ProviderIdentity:
        me = self._call("GET", f"{self.graph_url}/me", params={
            "fields": "id,name",
            "access_token": access_token,
        })
        if not me.get("id"):
            raise ProviderError(self.name, "identity lookup returned no id")
        return ProviderIdentity(
            external_id=str(me["id"]),
            display_name=me.get("name"),
            pages=self.list_pages(access_token),
        )

    def list_pages(self, access_token: str) -> List[Dict[str, str]]:
        body = self._call("GET", f"{self.graph_url}/me/accounts", params={
            "fields": "id,name",
            "access_token": access_token,
        })
        return [
            {"id": str(page["id"]), "name": page.get("name") or ""}
            for page in body.get("data", [])
            if page.get("id")
        ]

    def revoke(self, access_token: str) -> None:
        self._call("DELETE", f"{self.graph_url}/me/permissions", params={"access_token": access_token})

    def verify_signed_request(self, signed_request: str) -> Dict[str, Any]:
        """Check a deauthorize ``signed_request`` against the app secret and return its payload."""
        try:
            encoded_sig, encoded_payload = signed_request.split(".", 1)
            signature = _b64url_decode(encoded_sig)
            payload = json.loads(_b64url_decode(encoded_payload))
        except (ValueError, AttributeError):
            raise ValidationError("Malformed signed_request")

        expected = hmac.new(self.app_secret.encode(), encoded_payload.encode(), hashlib.sha256).digest()
        if not self.app_secret or not hmac.compare_digest(signature, expected):
            raise ValidationError("Invalid signed_request signature")
        if not isinstance(payload, dict) or str(payload.get("algorithm") or "").upper() != "HMAC-SHA256":
            raise ValidationError("Unsupported signed_request algorithm")
        return payload

    # --------------------------------------------------------
    # Publishing
    # --------------------------------------------------------

    def page_token(self, page_id: str, access_token: str) -> str:
        body = self._call("GET", f"{self.graph_url}/{page_id}", params={
            "fields": "access_token",
            "access_token": access_token,
        })
        token = body.get("access_token")
        if not token:
            raise ProviderError(self.name, f"no page token for page {page_id}", rejected=True)
        return token

    @timed(logger)
    def publish(self, access_token: str, target: str, text: str, image_url: Optional[str] = None) -> PublishResult:
        page_token = self.page_token(target, access_token)

        if image_url:
            body = self._call("POST", f"{self.graph_url}/{target}/photos", data={
                "url": image_url,
                "caption": text or "",
                "published": "true",
                "access_token": page_token,
            })
            post_id = body.get("post_id") or body.get("id")
        else:
            body = self._call("POST", f"{self.graph_url}/{target}/feed", data={
                "message": text,
                "access_token": page_token,
            })
            post_id = body.get("id")

        if not post_id:
            raise ProviderError(self.name, "publish returned no id")

        permalink = None
        try:
            permalink = self._call("GET", f"{self.graph_url}/{post_id}", params={
                "fields": "permalink_url",
                "access_token": page_token,
            }).get("permalink_url")
        except ProviderError as e:
            logger.warning("Permalink lookup failed", post_id=post_id, error_message=e.detail)

        return PublishResult(id=str(post_id), permalink=permalink)
