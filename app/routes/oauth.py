"""
Social connection routes: OAuth start/callback, disconnect, status and
Facebook page management.
"""
from typing import Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..auth import get_required_user
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..logging_config import oauth_logger as logger
from ..models.user import User
from ..providers import Provider, ProviderClient, get_social_clients
from ..responses import ApiException, ChangeLimitExceeded, InvalidState, ProviderError
from ..schemas.social import PageSelect
from ..services.connections import ConnectionManager

settings = get_settings()

router = APIRouter(prefix="/api", tags=["connections"])


def manager_for(provider: Provider, db: Session, clients: Dict[str, ProviderClient]) -> ConnectionManager:
    return ConnectionManager(db, clients[provider.value])


def frontend_redirect(provider: Provider, outcome: str, reason: Optional[str] = None) -> RedirectResponse:
    params = {provider.value: outcome}
    if reason:
        params["reason"] = reason
    base = get_settings().frontend_redirect_url
    separator = "&" if "?" in base else "?"
    return RedirectResponse(f"{base}{separator}{urlencode(params)}", status_code=302)


# ============================================================
# FACEBOOK-ONLY ROUTES
# ============================================================

@router.get("/facebook/pages")
def list_facebook_pages(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    """Pages the connected Facebook user manages."""
    manager = manager_for(Provider.FACEBOOK, db, clients)
    pages = manager.list_pages(current_user.id)
    account = manager.get_account(current_user.id)
    return {"ok": True, "pages": pages, "selected_page_id": account.selected_page_id}


@router.post("/facebook/pages/selected")
def select_facebook_page(
    payload: PageSelect,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    manager = manager_for(Provider.FACEBOOK, db, clients)
    account = manager.select_page(current_user.id, payload.page_id, payload.page_name)
    return {"ok": True, "selected_page_id": account.selected_page_id, "selected_page_name": account.selected_page_name}


@router.post("/facebook/deauthorize")
def facebook_deauthorize(
    signed_request: str = Form(...),
    db: Session = Depends(get_db),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    """Called by Facebook when a user removes the app."""
    deleted = manager_for(Provider.FACEBOOK, db, clients).deauthorize(signed_request)
    return {"ok": True, "deleted": deleted}


# ============================================================
# PER-PROVIDER ROUTES
# ============================================================

@router.get("/{provider}/oauth/start")
@limiter.limit(settings.oauth_start_rate_limit)
def oauth_start(
    request: Request,
    provider: Provider,
    format: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    """Redirect to the provider consent screen (or return the URL with ?format=json)."""
    manager = manager_for(provider, db, clients)
    url = manager.start(current_user.id)

    if format == "json":
        return {"url": url, "changes_left": manager.changes_left(current_user.id)}
    return RedirectResponse(url, status_code=302)


@router.get("/{provider}/oauth/callback")
def oauth_callback(
    provider: Provider,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    """Finish the OAuth dance; every outcome is a redirect back to the frontend."""
    if error:
        logger.warning("OAuth denied by provider", provider=provider.value, reason=error)
        return frontend_redirect(provider, "error", error)
    if not code or not state:
        return frontend_redirect(provider, "error", "missing_code_or_state")

    manager = manager_for(provider, db, clients)
    try:
        manager.callback(code, state)
    except InvalidState as e:
        logger.warning("OAuth callback with bad state", provider=provider.value, reason=e.detail)
        return frontend_redirect(provider, "error", "invalid_state")
    except ChangeLimitExceeded:
        return frontend_redirect(provider, "error", "change_limit")
    except ProviderError as e:
        logger.warning("OAuth token exchange failed", provider=provider.value, error_message=e.detail)
        return frontend_redirect(provider, "error", "token_exchange_failed")
    except ApiException as e:
        logger.error("OAuth callback failed", provider=provider.value, error_code=e.error_code)
        return frontend_redirect(provider, "error", e.error_code.lower())

    return frontend_redirect(provider, "connected")


@router.post("/{provider}/disconnect")
def oauth_disconnect(
    provider: Provider,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    changes_left = manager_for(provider, db, clients).disconnect(current_user.id)
    return {"ok": True, "changes_left": changes_left}


@router.get("/{provider}/status")
def connection_status(
    provider: Provider,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_required_user),
    clients: Dict[str, ProviderClient] = Depends(get_social_clients),
):
    return {"ok": True, **manager_for(provider, db, clients).status(current_user.id)}
