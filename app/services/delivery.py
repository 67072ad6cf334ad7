"""
Delivery webhook reconciliation.

Each provider has its own parser that turns a raw webhook into at most one
normalized ``DeliveryEvent``. ``apply_delivery_event`` is the only code that
writes delivery state onto recipients, so both wire formats share the same
matching and transition rules.
"""
import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol
from urllib.parse import urlparse

import requests
from sqlalchemy.orm import Session

from ..config import Settings
from ..logging_config import delivery_logger as logger
from ..models.campaign import CampaignRecipient
from ..responses import ApiException, ProviderError, ValidationError

DELIVERED = "delivered"
BOUNCED = "bounced"
COMPLAINED = "complained"

TIMESTAMP_FIELDS = {
    DELIVERED: "delivered_at",
    BOUNCED: "bounced_at",
    COMPLAINED: "complained_at",
}

# status -> statuses a delivery event may move it to
ALLOWED_TRANSITIONS = {
    "claimed": {DELIVERED, BOUNCED, COMPLAINED},
    "sent": {DELIVERED, BOUNCED, COMPLAINED},
    DELIVERED: {BOUNCED, COMPLAINED},
}

SVIX_TOLERANCE_SECONDS = 5 * 60
MAX_ID = 2 ** 63 - 1


@dataclass
class DeliveryEvent:
    kind: str  # delivered, bounced, complained
    occurred_at: datetime
    message_id: Optional[str] = None
    campaign_id: Optional[int] = None
    tracking_token: Optional[str] = None
    email: Optional[str] = None


@dataclass
class WebhookResult:
    """What a parser made of one webhook request"""
    action: str  # event, ignored, subscription_confirmed
    event: Optional[DeliveryEvent] = None


class WebhookParser(Protocol):
    name: str

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        ...


# ============================================================
# HELPERS
# ============================================================

def _load_json(body: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Malformed webhook payload")
    if not isinstance(data, dict):
        raise ValidationError("Malformed webhook payload")
    return data


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _int_or_none(value: Any) -> Optional[int]:
    """Positive 64-bit id or None."""
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if 0 < number <= MAX_ID else None


def _obj(value: Any) -> Dict[str, Any]:
    """Optional nested object; anything but a dict counts as absent."""
    return value if isinstance(value, dict) else {}


def _first(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, (dict, list)):
        return None
    return str(value) if value not in (None, "") else None


# ============================================================
# RESEND
# ============================================================

RESEND_KINDS = {
    "email.delivered": DELIVERED,
    "email.bounced": BOUNCED,
    "email.complained": COMPLAINED,
}


class ResendParser:
    """Resend webhooks (Svix-signed JSON)"""

    name = "resend"

    def __init__(self, webhook_secret: str = ""):
        self.webhook_secret = webhook_secret

    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        if not self.webhook_secret:
            return

        msg_id = headers.get("svix-id")
        timestamp = headers.get("svix-timestamp")
        signatures = headers.get("svix-signature")
        if not (msg_id and timestamp and signatures):
            raise ValidationError("Missing webhook signature headers")
        try:
            if abs(time.time() - int(timestamp)) > SVIX_TOLERANCE_SECONDS:
                raise ValidationError("Webhook timestamp outside tolerance")
        except ValueError:
            raise ValidationError("Invalid webhook timestamp")

        secret = self.webhook_secret
        if secret.startswith("whsec_"):
            secret = secret[len("whsec_"):]
        key = base64.b64decode(secret)
        signed = f"{msg_id}.{timestamp}.".encode() + body
        expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()

        for candidate in signatures.split():
            version, _, signature = candidate.partition(",")
            if version == "v1" and hmac.compare_digest(signature, expected):
                return
        raise ValidationError("Invalid webhook signature")

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        self.verify(headers, body)
        payload = _load_json(body)

        event_type = payload.get("type")
        data = payload.get("data")
        if not isinstance(event_type, str) or not isinstance(data, dict):
            raise ValidationError("Malformed Resend payload", {"required": ["type", "data"]})

        kind = RESEND_KINDS.get(event_type)
        if kind is None:
            return WebhookResult(action="ignored")

        tags = data.get("tags")
        if isinstance(tags, list):
            tags = {t.get("name"): t.get("value") for t in tags if isinstance(t, dict)}
        tags = _obj(tags)

        return WebhookResult(action="event", event=DeliveryEvent(
            kind=kind,
            occurred_at=_parse_time(payload.get("created_at") or data.get("created_at")),
            message_id=_first(data.get("email_id") or data.get("id")),
            campaign_id=_int_or_none(tags.get("campaign_id")),
            tracking_token=_first(tags.get("tracking_token")),
            email=_first(data.get("to")),
        ))


# ============================================================
# SES VIA SNS
# ============================================================

SES_KINDS = {
    "Delivery": DELIVERED,
    "Bounce": BOUNCED,
    "Complaint": COMPLAINED,
}


def is_trusted_subscribe_url(url: Optional[str]) -> bool:
    if not isinstance(url, str) or not url:
        return False
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and (host == "amazonaws.com" or host.endswith(".amazonaws.com"))


def confirm_subscription(url: str, timeout: float = 10.0) -> None:
    """Visit the SubscribeURL so SNS starts delivering to this endpoint."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError("sns", f"subscription confirm failed: {e}")
    if response.status_code >= 400:
        raise ProviderError("sns", f"subscription confirm failed: HTTP {response.status_code}")


def _ses_recipient(message: Dict[str, Any], kind: str) -> Optional[str]:
    detail = _obj(message.get(kind_key(kind)))
    if kind == DELIVERED:
        recipients = detail.get("recipients")
        address = _first(recipients) if isinstance(recipients, list) else None
    else:
        field = "bouncedRecipients" if kind == BOUNCED else "complainedRecipients"
        recipients = detail.get(field)
        first = recipients[0] if isinstance(recipients, list) and recipients else None
        address = _first(_obj(first).get("emailAddress"))
    return address or _first(_obj(message.get("mail")).get("destination"))


class SnsParser:
    """SES event/notification JSON wrapped in an SNS envelope"""

    name = "ses"

    def __init__(
        self,
        topic_arns: Optional[List[str]] = None,
        confirm: Callable[[str], None] = confirm_subscription,
    ):
        self.topic_arns = list(topic_arns or [])
        self.confirm = confirm

    def parse(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        envelope = _load_json(body)
        message_type = headers.get("x-amz-sns-message-type") or envelope.get("Type")
        if not message_type:
            raise ValidationError("Missing SNS message type")

        topic = envelope.get("TopicArn")
        if self.topic_arns and topic not in self.topic_arns:
            logger.warning("SNS topic rejected", topic_arn=topic)
            raise ApiException(403, "Unexpected SNS topic", "FORBIDDEN_TOPIC")

        if message_type == "SubscriptionConfirmation":
            url = envelope.get("SubscribeURL")
            if not is_trusted_subscribe_url(url):
                raise ValidationError("Untrusted SubscribeURL")
            self.confirm(url)
            logger.info("SNS subscription confirmed", topic_arn=topic)
            return WebhookResult(action="subscription_confirmed")

        if message_type != "Notification":
            return WebhookResult(action="ignored")

        raw_message = envelope.get("Message")
        if isinstance(raw_message, str):
            try:
                message = json.loads(raw_message)
            except ValueError:
                raise ValidationError("Malformed SNS Message")
        else:
            message = raw_message
        if not isinstance(message, dict):
            raise ValidationError("Malformed SNS Message")

        event_type = message.get("notificationType") or message.get("eventType")
        kind = SES_KINDS.get(event_type) if isinstance(event_type, str) else None
        if kind is None:
            return WebhookResult(action="ignored")

        mail = message.get("mail") or {}
        if not isinstance(mail, dict):
            raise ValidationError("Malformed SES mail object")
        tags = _obj(mail.get("tags"))
        detail = _obj(message.get(kind_key(kind)))

        return WebhookResult(action="event", event=DeliveryEvent(
            kind=kind,
            occurred_at=_parse_time(detail.get("timestamp") or mail.get("timestamp")),
            message_id=_first(mail.get("messageId")),
            campaign_id=_int_or_none(_first(tags.get("campaign_id"))),
            tracking_token=_first(tags.get("tracking_token")),
            email=_ses_recipient(message, kind),
        ))


def kind_key(kind: str) -> str:
    """SES detail object name for a normalized kind."""
    return {DELIVERED: "delivery", BOUNCED: "bounce", COMPLAINED: "complaint"}[kind]


def build_parser(provider: str, settings: Settings) -> WebhookParser:
    if provider == "resend":
        return ResendParser(settings.resend_webhook_secret)
    if provider == "ses":
        return SnsParser(settings.sns_topic_arns, lambda url: confirm_subscription(url, settings.provider_timeout_seconds))
    raise ApiException(404, f"Unknown email provider: {provider}", "NOT_FOUND")


# ============================================================
# RECONCILIATION
# ============================================================

def _match_recipient(db: Session, event: DeliveryEvent) -> Optional[CampaignRecipient]:
    if event.message_id:
        recipient = db.query(CampaignRecipient).filter(
            CampaignRecipient.message_id == event.message_id
        ).first()
        if recipient:
            return recipient

    if event.campaign_id and event.tracking_token:
        recipient = db.query(CampaignRecipient).filter(
            CampaignRecipient.campaign_id == event.campaign_id,
            CampaignRecipient.tracking_token == event.tracking_token,
        ).first()
        if recipient:
            return recipient

    if event.email:
        return db.query(CampaignRecipient).filter(
            CampaignRecipient.email == event.email.strip().lower(),
            CampaignRecipient.status.notin_(("queued", "claimed")),
        ).order_by(CampaignRecipient.sent_at.desc(), CampaignRecipient.id.desc()).first()

    return None


def apply_delivery_event(db: Session, event: DeliveryEvent) -> bool:
    """
    Apply a normalized event to the matching recipient.

    Returns whether a recipient matched. ``last_event_at`` always moves;
    status only follows allowed transitions and each event timestamp is set
    once, so re-applying the same event changes nothing else.
    """
    recipient = _match_recipient(db, event)
    if recipient is None:
        logger.info(
            "Delivery event unmatched",
            kind=event.kind,
            message_id=event.message_id,
            campaign_id=event.campaign_id,
        )
        return False

    previous = recipient.status
    recipient.last_event_at = datetime.now(timezone.utc)

    applies = previous == event.kind or event.kind in ALLOWED_TRANSITIONS.get(previous, set())
    if applies:
        recipient.status = event.kind
        field = TIMESTAMP_FIELDS[event.kind]
        if getattr(recipient, field) is None:
            setattr(recipient, field, event.occurred_at)

    db.commit()
    logger.info(
        "Delivery event applied",
        recipient_id=recipient.id,
        kind=event.kind,
        previous_status=previous,
        status=recipient.status,
    )
    return True
