"""
OAuth connection lifecycle for social providers.

    disconnected -> pending state -> connected -> (re-auth) -> connected | disconnected

Identity switches and disconnects both spend from a per-provider change
quota. The quota is only ever moved by a conditional increment, so
``changes_used`` can never pass the limit.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..logging_config import oauth_logger as logger
from ..models.social import ConnectionUsage, OAuthState, SocialAccount
from ..providers.base import ProviderClient
from ..responses import ApiException, ChangeLimitExceeded, InvalidState, NotFound, PersistenceError, ValidationError


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; treat them as UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ConnectionManager:
    """Connect/disconnect flow for one provider."""

    def __init__(self, db: Session, client: ProviderClient, settings: Optional[Settings] = None):
        self.db = db
        self.client = client
        self.provider = client.name
        self.settings = settings or get_settings()

    # --------------------------------------------------------
    # Quota
    # --------------------------------------------------------

    @property
    def limit(self) -> int:
        return self.settings.connection_change_limit

    def changes_used(self, user_id: int) -> int:
        used = self.db.query(ConnectionUsage.changes_used).filter(
            ConnectionUsage.user_id == user_id,
            ConnectionUsage.provider == self.provider,
        ).scalar()
        return used or 0

    def changes_left(self, user_id: int) -> int:
        return max(self.limit - self.changes_used(user_id), 0)

    def _use_change(self, user_id: int) -> bool:
        """Spend one change. False when the quota is exhausted."""
        exists = self.db.query(ConnectionUsage.id).filter(
            ConnectionUsage.user_id == user_id,
            ConnectionUsage.provider == self.provider,
        ).first()
        if not exists:
            self.db.add(ConnectionUsage(user_id=user_id, provider=self.provider, changes_used=0))
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()

        updated = self.db.query(ConnectionUsage).filter(
            ConnectionUsage.user_id == user_id,
            ConnectionUsage.provider == self.provider,
            ConnectionUsage.changes_used < self.limit,
        ).update(
            {
                ConnectionUsage.changes_used: ConnectionUsage.changes_used + 1,
                ConnectionUsage.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
        self.db.commit()
        return updated == 1

    # --------------------------------------------------------
    # OAuth flow
    # --------------------------------------------------------

    def get_account(self, user_id: int) -> Optional[SocialAccount]:
        return self.db.query(SocialAccount).filter(
            SocialAccount.user_id == user_id,
            SocialAccount.provider == self.provider,
        ).first()

    def _prune_states(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        try:
            self.db.query(OAuthState).filter(OAuthState.created_at < cutoff).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("OAuth state prune failed", provider=self.provider, error_message=str(e))

    def start(self, user_id: int) -> str:
        """Store a fresh state and return the provider authorization URL."""
        if not self.client.is_configured():
            raise ApiException(503, f"{self.provider} is not configured", "NOT_CONFIGURED")

        self._prune_states()
        if self.changes_left(user_id) <= 0:
            raise ChangeLimitExceeded(self.provider)

        state = secrets.token_urlsafe(24)
        self.db.add(OAuthState(state=state, user_id=user_id, provider=self.provider))
        self.db.commit()

        logger.info("OAuth started", provider=self.provider, user_id=user_id)
        return self.client.authorize_url(state)

    def consume_state(self, state: str) -> int:
        """Delete the state row exactly once and return its user id."""
        row = self.db.query(OAuthState).filter(
            OAuthState.state == state,
            OAuthState.provider == self.provider,
        ).first()
        if row is None:
            raise InvalidState()

        user_id = row.user_id
        created_at = as_utc(row.created_at)

        deleted = self.db.query(OAuthState).filter(OAuthState.state == state).delete(synchronize_session=False)
        self.db.commit()
        if deleted != 1:
            raise InvalidState("OAuth state already used")

        ttl = timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        if created_at is None or created_at < datetime.now(timezone.utc) - ttl:
            raise InvalidState("OAuth state expired")
        return user_id

    def callback(self, code: str, state: str) -> SocialAccount:
        user_id = self.consume_state(state)

        tokens = self.client.exchange_code(code)
        identity = self.client.fetch_identity(tokens.access_token)

        account = self.get_account(user_id)
        if account is not None and account.external_id and account.external_id != identity.external_id:
            if not self._use_change(user_id):
                # New token is dropped; the existing connection stays as it was
                logger.warning(
                    "Identity switch refused",
                    provider=self.provider,
                    user_id=user_id,
                    changes_used=self.changes_used(user_id),
                )
                raise ChangeLimitExceeded(self.provider)
            logger.info("Identity switched", provider=self.provider, user_id=user_id)

        if account is None:
            account = SocialAccount(user_id=user_id, provider=self.provider)
            self.db.add(account)
        elif account.external_id != identity.external_id:
            account.selected_page_id = None
            account.selected_page_name = None

        account.access_token = tokens.access_token
        account.expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(tokens.expires_in))
            if tokens.expires_in else None
        )
        account.scopes = tokens.scopes
        account.external_id = identity.external_id
        account.display_name = identity.display_name
        if identity.pages:
            account.page_ids = [page["id"] for page in identity.pages]
            if account.selected_page_id not in account.page_ids:
                account.selected_page_id = identity.pages[0]["id"]
                account.selected_page_name = identity.pages[0]["name"]

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error("Account upsert failed", error=e, provider=self.provider, user_id=user_id)
            raise PersistenceError("Could not store connection")

        self.db.refresh(account)
        logger.info("OAuth connected", provider=self.provider, user_id=user_id, external_id=account.external_id)
        return account

    def disconnect(self, user_id: int) -> int:
        """Spend a change, revoke best-effort and drop the account. Returns changes left."""
        account = self.get_account(user_id)
        if account is None:
            raise NotFound("Connection", self.provider)

        if not self._use_change(user_id):
            logger.warning("Disconnect refused", provider=self.provider, user_id=user_id)
            raise ChangeLimitExceeded(self.provider)

        try:
            self.client.revoke(account.access_token)
        except ApiException as e:
            logger.warning("Token revoke failed", provider=self.provider, user_id=user_id, error_message=e.detail)

        self.db.delete(account)
        self.db.commit()

        left = self.changes_left(user_id)
        logger.info("OAuth disconnected", provider=self.provider, user_id=user_id, changes_left=left)
        return left

    # --------------------------------------------------------
    # Status & pages
    # --------------------------------------------------------

    def status(self, user_id: int) -> Dict:
        account = self.get_account(user_id)
        changes_left = self.changes_left(user_id)
        if account is None:
            return {"connected": False, "can_post": False, "changes_left": changes_left}

        expires_at = as_utc(account.expires_at)
        expired = expires_at is not None and expires_at <= datetime.now(timezone.utc)
        if self.provider == "facebook":
            can_post = not expired and bool(account.selected_page_id or account.page_ids)
        else:
            can_post = not expired and bool(account.external_id)

        return {
            "connected": True,
            "can_post": can_post,
            "external_id": account.external_id,
            "display_name": account.display_name,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "scopes": account.scopes or [],
            "selected_page_id": account.selected_page_id,
            "selected_page_name": account.selected_page_name,
            "changes_left": changes_left,
        }

    def _require_account(self, user_id: int) -> SocialAccount:
        account = self.get_account(user_id)
        if account is None:
            raise NotFound("Connection", self.provider)
        return account

    def list_pages(self, user_id: int) -> List[Dict[str, str]]:
        account = self._require_account(user_id)
        pages = self.client.list_pages(account.access_token)
        account.page_ids = [page["id"] for page in pages]
        self.db.commit()
        return pages

    def select_page(self, user_id: int, page_id: str, page_name: Optional[str] = None) -> SocialAccount:
        account = self._require_account(user_id)
        if account.page_ids and page_id not in account.page_ids:
            raise ValidationError("Page is not managed by this account", {"page_id": page_id})
        account.selected_page_id = page_id
        account.selected_page_name = page_name
        self.db.commit()
        logger.info("Page selected", provider=self.provider, user_id=user_id, page_id=page_id)
        return account

    def deauthorize(self, signed_request: str) -> int:
        """Drop every account for the app-scoped user id in a verified ``signed_request``."""
        payload = self.client.verify_signed_request(signed_request)
        external_id = str(payload.get("user_id") or "")
        if not external_id:
            raise ValidationError("signed_request has no user_id")

        deleted = self.db.query(SocialAccount).filter(
            SocialAccount.provider == self.provider,
            SocialAccount.external_id == external_id,
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info("Deauthorized", provider=self.provider, external_id=external_id, deleted=deleted)
        return deleted
