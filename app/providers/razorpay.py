"""
Razorpay orders API and webhook signature check.
"""
import hashlib
import hmac
from typing import Any, Dict, Optional

from ..config import Settings, get_settings
from ..logging_config import payments_logger as logger, timed
from ..responses import ProviderError
from .base import ProviderClient


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 (hex) of the raw request body."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


class RazorpayClient(ProviderClient):
    name = "razorpay"

    def __init__(self, settings: Settings):
        super().__init__(settings.provider_timeout_seconds)
        self.key_id = settings.razorpay_key_id
        self.key_secret = settings.razorpay_key_secret
        self.api_url = settings.razorpay_api_url.rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @timed(logger)
    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> Dict[str, Any]:
        order = self._call(
            "POST",
            f"{self.api_url}/orders",
            auth=(self.key_id, self.key_secret),
            json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
        )
        if not order.get("id"):
            raise ProviderError(self.name, "order response has no id")
        return order


def get_razorpay_client() -> RazorpayClient:
    """FastAPI dependency returning the configured client."""
    return RazorpayClient(get_settings())
