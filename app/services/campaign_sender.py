"""
Campaign Sender

Moves queued recipients of one campaign through a single send batch:

1. claim up to ``limit`` queued rows (queued -> claimed, tagged with a claim id);
   rows left claimed longer than ``claim_ttl_minutes`` are claimable again
2. reserve credits for the whole batch
3. render each message with tracking and hand it to the email provider on a
   bounded worker pool, pausing between calls
4. persist each outcome (sent / failed) and refund the failures

One recipient failing never aborts the batch. Only a missing campaign, bad
content or an unpaid batch are request-level errors.
"""
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..logging_config import campaign_logger as logger
from ..models.campaign import Campaign, CampaignRecipient, new_tracking_token
from ..providers.email import EmailSender, OutgoingEmail
from ..responses import ApiException, InsufficientCredits, ValidationError
from . import wallet
from .idempotency import derive_correlation_id
from .tracking import with_tracking

REACHED_STATUSES = ("sent", "delivered", "bounced", "complained")


@dataclass
class SendOverrides:
    subject: Optional[str] = None
    html: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None


@dataclass
class SendSummary:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "ok": True,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class _Content:
    subject: str
    html: str
    from_email: str
    from_name: Optional[str]


def clamp_limit(limit: Optional[int], settings: Settings) -> int:
    if limit is None:
        limit = settings.send_default_limit
    return min(max(int(limit), 1), settings.send_max_limit)


class CampaignSender:
    """Runs one send batch for a campaign."""

    def __init__(self, db: Session, email_sender: EmailSender, settings: Optional[Settings] = None):
        self.db = db
        self.email_sender = email_sender
        self.settings = settings or get_settings()

    # --------------------------------------------------------
    # Public API
    # --------------------------------------------------------

    def send(
        self,
        campaign: Campaign,
        overrides: Optional[SendOverrides] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> SendSummary:
        content = self._resolve_content(campaign, overrides or SendOverrides())
        limit = clamp_limit(limit, self.settings)
        log = logger.bind(campaign_id=campaign.id, user_id=campaign.user_id)

        if campaign.is_closed:
            log.info("Send skipped for closed campaign", status=campaign.status)
            return SendSummary()

        if dry_run:
            return self._dry_run(campaign, content, limit)

        claim_id, recipients = self._claim(campaign.id, limit)
        if not recipients:
            return SendSummary()

        price = campaign.price_per_email or 0
        correlation_id = derive_correlation_id(
            campaign.user_id,
            "campaign.send",
            {"campaign_id": campaign.id, "recipients": sorted(r.id for r in recipients)},
        )
        # Nothing has reached the provider yet, so any failure hands the rows back.
        # A debit that already went through stays; retrying the same rows replays it.
        try:
            if price > 0:
                wallet.debit(
                    self.db,
                    campaign.user_id,
                    price * len(recipients),
                    correlation_id,
                    note="campaign.send",
                    metadata={"campaign_id": campaign.id, "recipients": len(recipients)},
                )

            if campaign.status == "draft":
                campaign.status = "sending"
                self.db.commit()

            jobs = self._build_jobs(campaign, content, recipients)
        except Exception as e:
            self.db.rollback()
            self._release(claim_id)
            if not isinstance(e, InsufficientCredits):
                log.error("Send batch aborted before delivery", error=e, claim_id=claim_id)
            raise

        summary = self._send_claimed(campaign, claim_id, jobs, self._deliver(jobs))

        if price > 0 and summary.failed:
            wallet.credit(
                self.db,
                campaign.user_id,
                price * summary.failed,
                f"{correlation_id}:refund",
                note="campaign.send refund",
                metadata={"campaign_id": campaign.id, "failed": summary.failed},
                kind="refund",
            )

        self.db.refresh(campaign)
        campaign.credits_charged = (campaign.credits_charged or 0) + price * summary.sent
        self._finalize(campaign)
        self.db.commit()

        log.info(
            "Campaign batch processed",
            claim_id=claim_id,
            sent=summary.sent,
            failed=summary.failed,
            status=campaign.status,
        )
        return summary

    # --------------------------------------------------------
    # Steps
    # --------------------------------------------------------

    def _resolve_content(self, campaign: Campaign, overrides: SendOverrides) -> _Content:
        subject = overrides.subject if overrides.subject is not None else campaign.subject
        html = overrides.html if overrides.html is not None else campaign.html
        from_email = overrides.from_email or campaign.from_email or self.settings.default_from_email
        from_name = overrides.from_name or campaign.from_name or self.settings.default_from_name or None

        missing = [
            name for name, value in (("subject", subject), ("html", html), ("fromEmail", from_email))
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError("Missing subject/html/fromEmail", {"missing": missing})
        return _Content(subject=subject, html=html, from_email=from_email, from_name=from_name)

    def _ensure_token(self, recipient: CampaignRecipient) -> str:
        # Column is NOT NULL; this only repairs rows written outside the ORM
        if not recipient.tracking_token:
            recipient.tracking_token = new_tracking_token()
            self.db.commit()
        return recipient.tracking_token

    def _dry_run(self, campaign: Campaign, content: _Content, limit: int) -> SendSummary:
        recipients = (
            self.db.query(CampaignRecipient)
            .filter(CampaignRecipient.campaign_id == campaign.id, CampaignRecipient.status == "queued")
            .limit(limit)
            .all()
        )
        summary = SendSummary()
        for recipient in recipients:
            token = self._ensure_token(recipient)
            with_tracking(content.html, campaign.id, token, self.settings.public_base_url)
            summary.skipped += 1
        logger.info("Campaign dry run", campaign_id=campaign.id, skipped=summary.skipped)
        return summary

    def _claimable(self, now: datetime):
        """Queued rows, plus claimed rows whose batch never finished within the TTL."""
        cutoff = now - timedelta(minutes=self.settings.claim_ttl_minutes)
        return or_(
            CampaignRecipient.status == "queued",
            and_(CampaignRecipient.status == "claimed", CampaignRecipient.claimed_at < cutoff),
        )

    def _candidates(self, campaign_id: int, limit: int, now: datetime) -> List[int]:
        return [
            row.id for row in
            self.db.query(CampaignRecipient.id)
            .filter(CampaignRecipient.campaign_id == campaign_id, self._claimable(now))
            .order_by(CampaignRecipient.id)
            .limit(limit)
            .all()
        ]

    def _claim(self, campaign_id: int, limit: int) -> Tuple[str, List[CampaignRecipient]]:
        """
        Atomically move up to ``limit`` claimable rows to claimed.

        Candidates may be stale by the time the update runs; the update
        re-checks claimability per row, so concurrent batches never share one.
        """
        claim_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        candidate_ids = self._candidates(campaign_id, limit, now)
        if not candidate_ids:
            return claim_id, []

        self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id.in_(candidate_ids),
            self._claimable(now),
        ).update(
            {
                CampaignRecipient.status: "claimed",
                CampaignRecipient.claim_id: claim_id,
                CampaignRecipient.claimed_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        recipients = (
            self.db.query(CampaignRecipient)
            .filter(CampaignRecipient.claim_id == claim_id, CampaignRecipient.status == "claimed")
            .order_by(CampaignRecipient.id)
            .all()
        )
        return claim_id, recipients

    def _release(self, claim_id: str) -> None:
        self.db.query(CampaignRecipient).filter(
            CampaignRecipient.claim_id == claim_id,
            CampaignRecipient.status == "claimed",
        ).update(
            {
                CampaignRecipient.status: "queued",
                CampaignRecipient.claim_id: None,
                CampaignRecipient.claimed_at: None,
            },
            synchronize_session=False,
        )
        self.db.commit()

    def _build_jobs(
        self,
        campaign: Campaign,
        content: _Content,
        recipients: List[CampaignRecipient],
    ) -> List[Tuple[int, OutgoingEmail]]:
        jobs = []
        for recipient in recipients:
            token = self._ensure_token(recipient)
            jobs.append((recipient.id, OutgoingEmail(
                to=recipient.email,
                subject=content.subject,
                html=with_tracking(content.html, campaign.id, token, self.settings.public_base_url),
                from_email=content.from_email,
                from_name=content.from_name,
                tags={"campaign_id": str(campaign.id), "tracking_token": token},
            )))
        return jobs

    def _record(self, recipient_id: int, claim_id: str, values: Dict, status: str) -> None:
        """
        Write a send outcome. The status only moves off ``claimed``: a delivery
        webhook may already have advanced the row while the provider call was
        in flight, and a row reclaimed by another batch is left alone.
        """
        mine = self.db.query(CampaignRecipient).filter(
            CampaignRecipient.id == recipient_id,
            CampaignRecipient.claim_id == claim_id,
        )
        mine.update(values, synchronize_session=False)
        mine.filter(CampaignRecipient.status == "claimed").update(
            {CampaignRecipient.status: status},
            synchronize_session=False,
        )

    def _send_claimed(
        self,
        campaign: Campaign,
        claim_id: str,
        jobs: List[Tuple[int, OutgoingEmail]],
        results: Dict[int, Tuple[Optional[str], Optional[Exception]]],
    ) -> SendSummary:
        summary = SendSummary()
        now = datetime.now(timezone.utc)
        for recipient_id, message in jobs:
            message_id, error = results[recipient_id]
            if error is None:
                self._record(recipient_id, claim_id, {
                    CampaignRecipient.message_id: message_id,
                    CampaignRecipient.sent_at: now,
                    CampaignRecipient.last_error: None,
                }, "sent")
                summary.sent += 1
            else:
                detail = error.detail if isinstance(error, ApiException) else str(error)
                self._record(recipient_id, claim_id, {
                    CampaignRecipient.last_event_at: now,
                    CampaignRecipient.last_error: detail[:1000],
                }, "failed")
                summary.failed += 1
                summary.errors.append({"recipient_id": recipient_id, "email": message.to, "error": detail})
                logger.warning(
                    "Recipient send failed",
                    campaign_id=campaign.id,
                    recipient_id=recipient_id,
                    error_message=detail,
                )
        self.db.commit()
        return summary

    def _deliver(self, jobs: List[Tuple[int, OutgoingEmail]]) -> Dict[int, Tuple[Optional[str], Optional[Exception]]]:
        """Call the provider for every job on a bounded pool. Never raises."""
        delay = max(self.settings.send_delay_ms, 0) / 1000.0

        def _send_one(message: OutgoingEmail) -> Optional[str]:
            try:
                return self.email_sender.send(message)
            finally:
                if delay:
                    time.sleep(delay)

        results: Dict[int, Tuple[Optional[str], Optional[Exception]]] = {}
        workers = max(1, min(self.settings.send_concurrency, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="campaign-send") as pool:
            futures = {pool.submit(_send_one, message): recipient_id for recipient_id, message in jobs}
            for future in as_completed(futures):
                recipient_id = futures[future]
                try:
                    results[recipient_id] = (future.result(), None)
                except Exception as e:
                    results[recipient_id] = (None, e)
        return results

    def _finalize(self, campaign: Campaign) -> None:
        pending = self.db.query(CampaignRecipient.id).filter(
            CampaignRecipient.campaign_id == campaign.id,
            CampaignRecipient.status.in_(("queued", "claimed")),
        ).count()
        if pending:
            return

        reached = self.db.query(CampaignRecipient.id).filter(
            CampaignRecipient.campaign_id == campaign.id,
            CampaignRecipient.status.in_(REACHED_STATUSES),
        ).count()
        campaign.status = "sent" if reached else "failed"
        if reached:
            campaign.sent_at = datetime.now(timezone.utc)
