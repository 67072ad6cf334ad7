"""
Public open/click tracking endpoints embedded in sent emails.

Both always answer (pixel or redirect); a recording failure is rolled back
and logged, never surfaced to the mail client.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_db
from ..logging_config import tracking_logger as logger
from ..services.tracking import PIXEL_PNG, parse_campaign_id, record_click, record_open, safe_redirect_target

router = APIRouter(prefix="/api/track", tags=["tracking"])

NO_STORE = {"Cache-Control": "no-store, no-cache, must-revalidate, max-age=0", "Pragma": "no-cache"}


@router.get("/open")
def track_open(
    c: Optional[str] = None,
    t: Optional[str] = None,
    db: Session = Depends(get_db),
):
    campaign_id = parse_campaign_id(c)
    if campaign_id is not None and t:
        try:
            if not record_open(db, campaign_id, t):
                logger.debug("Open for unknown recipient", campaign_id=campaign_id)
        except Exception as e:
            db.rollback()
            logger.error("Open not recorded", error=e, campaign_id=campaign_id)

    return Response(content=PIXEL_PNG, media_type="image/png", headers=NO_STORE)


@router.get("/click")
def track_click(
    c: Optional[str] = None,
    t: Optional[str] = None,
    u: Optional[str] = None,
    db: Session = Depends(get_db),
):
    campaign_id = parse_campaign_id(c)
    if campaign_id is not None and t:
        try:
            record_click(db, campaign_id, t)
        except Exception as e:
            db.rollback()
            logger.error("Click not recorded", error=e, campaign_id=campaign_id)

    target = safe_redirect_target(u)
    if target is None:
        if u:
            logger.warning("Unsafe click target replaced", campaign_id=campaign_id)
        target = get_settings().click_fallback_url
    return RedirectResponse(target, status_code=302, headers=NO_STORE)
