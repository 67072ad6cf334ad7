"""
Open/click tracking.

``with_tracking`` is a pure function: it routes every http(s) link through the
click endpoint and adds a hidden open pixel. The recorder functions apply
set-once timestamps and counters in a single UPDATE so concurrent hits never
lose an increment.
"""
import base64
import html as html_lib
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlparse

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.campaign import CampaignRecipient

HREF_PATTERN = re.compile(r"""href=(["'])(https?://[^"']+)\1""", re.IGNORECASE)
BODY_CLOSE_PATTERN = re.compile(r"</body\s*>", re.IGNORECASE)

# 1x1 transparent PNG
PIXEL_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def open_pixel_url(base_url: str, campaign_id, token: str) -> str:
    return f"{base_url.rstrip('/')}/track/open?c={campaign_id}&t={token}"


def click_url(base_url: str, campaign_id, token: str, target: str) -> str:
    return f"{base_url.rstrip('/')}/track/click?c={campaign_id}&t={token}&u={quote(target, safe='')}"


def with_tracking(html: str, campaign_id, token: str, base_url: str) -> str:
    """
    Rewrite links and append the open pixel for one recipient.

    Deterministic for identical inputs, and safe to apply twice: links that
    already go through the tracking endpoint are left alone and the pixel is
    only added once.
    """
    base = base_url.rstrip("/")
    track_prefix = f"{base}/track/"

    def _wrap(match: re.Match) -> str:
        url = match.group(2)
        if url.startswith(track_prefix):
            return match.group(0)
        target = html_lib.unescape(url)
        return f'href="{click_url(base, campaign_id, token, target)}"'

    rewritten = HREF_PATTERN.sub(_wrap, html)

    pixel_src = open_pixel_url(base, campaign_id, token)
    if pixel_src in rewritten:
        return rewritten
    pixel = f'<img src="{pixel_src}" width="1" height="1" style="display:none" alt="" />'

    closers = list(BODY_CLOSE_PATTERN.finditer(rewritten))
    if closers:
        pos = closers[-1].start()
        return rewritten[:pos] + pixel + rewritten[pos:]
    return rewritten + pixel


def safe_redirect_target(target: Optional[str]) -> Optional[str]:
    """Return ``target`` only if it is an absolute http(s) URL with a host."""
    if not target:
        return None
    target = target.strip()
    try:
        parsed = urlparse(target)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None
    return target


MAX_ID = 2 ** 63 - 1


def parse_campaign_id(value: Optional[str]) -> Optional[int]:
    """Positive id that fits a signed 64-bit column, else None."""
    if not value:
        return None
    try:
        campaign_id = int(value)
    except (TypeError, ValueError):
        return None
    return campaign_id if 0 < campaign_id <= MAX_ID else None


def _recipient_query(db: Session, campaign_id: int, token: str):
    return db.query(CampaignRecipient).filter(
        CampaignRecipient.campaign_id == campaign_id,
        CampaignRecipient.tracking_token == token,
    )


def record_open(db: Session, campaign_id: int, token: str) -> bool:
    """Count an open; ``opened_at`` keeps the first one. Returns whether a recipient matched."""
    now = datetime.now(timezone.utc)
    updated = _recipient_query(db, campaign_id, token).update(
        {
            CampaignRecipient.opens_count: CampaignRecipient.opens_count + 1,
            CampaignRecipient.opened_at: func.coalesce(CampaignRecipient.opened_at, now),
            CampaignRecipient.last_event_at: now,
        },
        synchronize_session=False,
    )
    db.commit()
    return updated > 0


def record_click(db: Session, campaign_id: int, token: str) -> bool:
    """Count a click; ``clicked_at`` keeps the first one. Returns whether a recipient matched."""
    now = datetime.now(timezone.utc)
    updated = _recipient_query(db, campaign_id, token).update(
        {
            CampaignRecipient.clicks_count: CampaignRecipient.clicks_count + 1,
            CampaignRecipient.clicked_at: func.coalesce(CampaignRecipient.clicked_at, now),
            CampaignRecipient.last_event_at: now,
        },
        synchronize_session=False,
    )
    db.commit()
    return updated > 0
