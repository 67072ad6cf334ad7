"""
Email Provider Integration

Send a single rendered email through:
- Resend (HTTP API)
- Amazon SES v2 (boto3)

The provider is picked with EMAIL_PROVIDER. Both attach the campaign id and
tracking token as message tags so delivery notifications can be matched even
when the provider message id is unknown.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, get_settings
from ..logging_config import get_logger, timed
from ..responses import ProviderError

logger = get_logger("providers.email")


@dataclass
class OutgoingEmail:
    """One rendered message for one recipient"""
    to: str
    subject: str
    html: str
    from_email: str
    from_name: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def from_header(self) -> str:
        return f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email


class EmailSender(Protocol):
    name: str

    def send(self, message: OutgoingEmail) -> Optional[str]:
        """Send the message and return the provider message id."""
        ...


# ============================================================
# RESEND
# ============================================================

class ResendSender:
    """Send through the Resend REST API"""

    name = "resend"

    def __init__(self, api_key: str, api_url: str, timeout: float):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @timed(logger)
    def send(self, message: OutgoingEmail) -> Optional[str]:
        if not self.is_configured():
            raise ProviderError(self.name, "RESEND_API_KEY not configured")

        payload = {
            "from": message.from_header,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "tags": [{"name": k, "value": str(v)} for k, v in sorted(message.tags.items())],
        }
        try:
            response = requests.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(self.name, f"request failed: {e}")

        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:300]}",
                rejected=response.status_code < 500,
            )
        return response.json().get("id")


# ============================================================
# AMAZON SES
# ============================================================

class SesSender:
    """Send through the SES v2 API"""

    name = "ses"

    def __init__(self, region: str, configuration_set: str, timeout: float):
        self.configuration_set = configuration_set
        self.client = boto3.client(
            "sesv2",
            region_name=region,
            config=BotoConfig(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 2}),
        )

    @timed(logger)
    def send(self, message: OutgoingEmail) -> Optional[str]:
        request = {
            "FromEmailAddress": message.from_header,
            "Destination": {"ToAddresses": [message.to]},
            "Content": {
                "Simple": {
                    "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                    "Body": {"Html": {"Data": message.html, "Charset": "UTF-8"}},
                }
            },
            "EmailTags": [{"Name": k, "Value": str(v)} for k, v in sorted(message.tags.items())],
        }
        if self.configuration_set:
            request["ConfigurationSetName"] = self.configuration_set

        try:
            response = self.client.send_email(**request)
        except ClientError as e:
            error = e.response.get("Error", {})
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500)
            raise ProviderError(self.name, f"{error.get('Code')}: {error.get('Message')}", rejected=status < 500)
        except BotoCoreError as e:
            raise ProviderError(self.name, str(e))
        return response.get("MessageId")


# ============================================================
# FACTORY
# ============================================================

def build_email_sender(settings: Settings) -> EmailSender:
    provider = settings.email_provider.lower()
    if provider == "resend":
        return ResendSender(settings.resend_api_key, settings.resend_api_url, settings.provider_timeout_seconds)
    if provider == "ses":
        return SesSender(settings.aws_region, settings.ses_configuration_set, settings.provider_timeout_seconds)
    raise ValueError(f"Unknown EMAIL_PROVIDER: {settings.email_provider}")


def get_email_sender() -> EmailSender:
    """FastAPI dependency returning the configured sender."""
    return build_email_sender(get_settings())
