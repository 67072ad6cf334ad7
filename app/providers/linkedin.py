"""
LinkedIn client: OpenID Connect sign-in, member posts via ugcPosts and
image upload through the assets API.
"""
from typing import Optional
from urllib.parse import urlencode

from ..config import Settings
from ..logging_config import social_logger as logger, timed
from ..responses import ProviderError
from .base import OAuthTokens, ProviderClient, ProviderIdentity, PublishResult

AUTHORIZE_URL = "https://www.linkedin.com/oauth/v2/authorization"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
REVOKE_URL = "https://www.linkedin.com/oauth/v2/revoke"
API_URL = "https://api.linkedin.com/v2"

UPLOAD_MECHANISM = "com.linkedin.digitalmedia.uploading.MediaUploadHttpRequest"
FEEDSHARE_IMAGE = "urn:li:digitalmediaRecipe:feedshare-image"


class LinkedInClient(ProviderClient):
    """Calls made on behalf of one LinkedIn member"""

    name = "linkedin"

    def __init__(self, settings: Settings):
        super().__init__(settings.provider_timeout_seconds)
        self.client_id = settings.linkedin_client_id
        self.client_secret = settings.linkedin_client_secret
        self.redirect_uri = settings.linkedin_redirect_uri
        self.scopes = settings.linkedin_scopes.split()

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "X-Restli-Protocol-Version": "2.0.0",
        }

    # --------------------------------------------------------
    # OAuth
    # --------------------------------------------------------

    def authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "scope": " ".join(self.scopes),
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    @timed(logger)
    def exchange_code(self, code: str) -> OAuthTokens:
        body = self._call("POST", TOKEN_URL, data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        })
        if not body.get("access_token"):
            raise ProviderError(self.name, "no access_token in code exchange")

        scope = body.get("scope") or ""
        return OAuthTokens(
            access_token=body["access_token"],
            expires_in=body.get("expires_in"),
            scopes=[s for s in scope.replace(",", " ").split() if s] or list(self.scopes),
        )

    def fetch_identity(self, access_token: str) -> ProviderIdentity:
        info = self._call("GET", f"{API_URL}/userinfo", headers={"Authorization": f"Bearer {access_token}"})
        if not info.get("sub"):
            raise ProviderError(self.name, "userinfo returned no sub")
        name = info.get("name") or " ".join(
            part for part in (info.get("given_name"), info.get("family_name")) if part
        )
        return ProviderIdentity(external_id=f"urn:li:person:{info['sub']}", display_name=name or None)

    def revoke(self, access_token: str) -> None:
        self._call("POST", REVOKE_URL, data={
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "token": access_token,
        })

    # --------------------------------------------------------
    # Publishing
    # --------------------------------------------------------

    def _upload_image(self, access_token: str, owner: str, image_url: str) -> str:
        """Register an upload, PUT the image bytes and return the asset urn."""
        image = self._send("GET", image_url)
        content_type = image.headers.get("Content-Type", "application/octet-stream")

        registered = self._call(
            "POST",
            f"{API_URL}/assets?action=registerUpload",
            headers=self._headers(access_token),
            json={
                "registerUploadRequest": {
                    "recipes": [FEEDSHARE_IMAGE],
                    "owner": owner,
                    "serviceRelationships": [
                        {"relationshipType": "OWNER", "identifier": "urn:li:userGeneratedContent"}
                    ],
                }
            },
        )
        value = registered.get("value") or {}
        upload_url = (value.get("uploadMechanism") or {}).get(UPLOAD_MECHANISM, {}).get("uploadUrl")
        asset = value.get("asset")
        if not upload_url or not asset:
            raise ProviderError(self.name, "registerUpload returned no upload url")

        self._send(
            "PUT",
            upload_url,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": content_type},
            data=image.content,
        )
        return asset

    @timed(logger)
    def publish(
        self,
        access_token: str,
        target: str,
        text: str,
        image_url: Optional[str] = None,
        visibility: str = "PUBLIC",
    ) -> PublishResult:
        media = []
        if image_url:
            asset = self._upload_image(access_token, target, image_url)
            media.append({"status": "READY", "media": asset})

        response = self._send(
            "POST",
            f"{API_URL}/ugcPosts",
            headers=self._headers(access_token),
            json={
                "author": target,
                "lifecycleState": "PUBLISHED",
                "specificContent": {
                    "com.linkedin.ugc.ShareContent": {
                        "shareCommentary": {"text": text},
                        "shareMediaCategory": "IMAGE" if media else "NONE",
                        "media": media,
                    }
                },
                "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": visibility},
            },
        )
        post_id = response.headers.get("x-restli-id")
        if not post_id:
            try:
                post_id = response.json().get("id")
            except ValueError:
                post_id = None
        permalink = f"https://www.linkedin.com/feed/update/{post_id}" if post_id else None
        return PublishResult(id=post_id, permalink=permalink)
