"""
Pytest configuration and fixtures for Outreach API tests.
"""
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from app.database import Base, get_db
from app.limiter import limiter
from app.main import app
from app.models.campaign import Campaign, CampaignRecipient
from app.models.social import SocialAccount
from app.models.user import User
from app.auth import get_password_hash, create_access_token
from app.providers import ProviderClient, ProviderIdentity, OAuthTokens, PublishResult, get_social_clients
from app.providers.email import get_email_sender
from app.responses import ProviderError
from app.services import wallet

# Disable rate limiting for tests
limiter.enabled = False

# Use in-memory SQLite for tests with shared connection
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Global session for sharing across requests
_test_session = None


def get_test_db():
    """Get the shared test database session."""
    global _test_session
    try:
        yield _test_session
    finally:
        pass


# ============================================================
# FAKE PROVIDERS
# ============================================================

class FakeEmailSender:
    """Records messages instead of sending; addresses in ``fail_for`` are rejected."""

    name = "fake"

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []
        self._lock = threading.Lock()

    def send(self, message):
        if message.to in self.fail_for:
            raise ProviderError(self.name, "mailbox rejected", rejected=True)
        with self._lock:
            self.sent.append(message)
        return f"msg-{message.to}"


class FakeSocialClient(ProviderClient):
    """In-memory stand-in for the Facebook/LinkedIn clients."""

    def __init__(self, name: str):
        super().__init__(timeout=1.0)
        self.name = name
        self.identity = "person-1" if name == "linkedin" else "fb-user-1"
        self.pages = [{"id": "page-1", "name": "Page One"}] if name == "facebook" else []
        self.fail_publish = False
        self.exchanged = []
        self.published = []
        self.revoked = []

    def is_configured(self) -> bool:
        return True

    def authorize_url(self, state: str) -> str:
        return f"https://auth.example.com/{self.name}?state={state}"

    def exchange_code(self, code: str) -> OAuthTokens:
        self.exchanged.append(code)
        return OAuthTokens(access_token=f"token-{code}", expires_in=3600, scopes=["w_member_social"])

    def fetch_identity(self, access_token: str) -> ProviderIdentity:
        return ProviderIdentity(external_id=self.identity, display_name="Test Account", pages=list(self.pages))

    def list_pages(self, access_token: str):
        return list(self.pages)

    def revoke(self, access_token: str) -> None:
        self.revoked.append(access_token)

    def publish(self, access_token, target, text, image_url=None) -> PublishResult:
        if self.fail_publish:
            raise ProviderError(self.name, "upstream unavailable")
        self.published.append({"target": target, "text": text, "image_url": image_url})
        post_id = f"{self.name}-post-{len(self.published)}"
        return PublishResult(id=post_id, permalink=f"https://social.example.com/{post_id}")


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    global _test_session

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create a session
    _test_session = TestingSessionLocal()

    # Override the get_db dependency
    app.dependency_overrides[get_db] = get_test_db

    yield _test_session

    # Cleanup
    app.dependency_overrides.clear()
    _test_session.close()
    _test_session = None

    # Drop all tables
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Create a test client."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def settings(monkeypatch):
    """The cached settings object; tests tweak fields with monkeypatch."""
    s = get_settings()
    monkeypatch.setattr(s, "send_delay_ms", 0)
    monkeypatch.setattr(s, "public_base_url", "https://api.example.com/api")
    return s


@pytest.fixture(scope="function")
def test_user(db):
    """Create a test user."""
    user = User(
        email="test@example.com",
        hashed_password=get_password_hash("testpassword123"),
        display_name="Test User",
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def auth_token(test_user):
    """Get an auth token for the test user."""
    return create_access_token({"sub": str(test_user.id)})


@pytest.fixture(scope="function")
def auth_headers(auth_token):
    """Get auth headers for the test user."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture(scope="function")
def fund(db, test_user):
    """Top up the test user's wallet: ``fund(10)``."""
    counter = {"n": 0}

    def _fund(amount: int) -> int:
        counter["n"] += 1
        return wallet.credit(db, test_user.id, amount, f"test-topup-{counter['n']}")

    return _fund


@pytest.fixture(scope="function")
def email_sender(db, settings):
    """Replace the email provider with a recording fake."""
    sender = FakeEmailSender()
    app.dependency_overrides[get_email_sender] = lambda: sender
    return sender


@pytest.fixture(scope="function")
def social_clients(db, settings):
    """Replace the Facebook/LinkedIn clients with fakes."""
    clients = {
        "facebook": FakeSocialClient("facebook"),
        "linkedin": FakeSocialClient("linkedin"),
    }
    app.dependency_overrides[get_social_clients] = lambda: clients
    return clients


@pytest.fixture(scope="function")
def make_campaign(db, test_user):
    """Create a campaign with queued recipients."""

    def _make(emails=("a@example.com", "b@example.com"), html=None, **fields):
        campaign = Campaign(
            user_id=test_user.id,
            name=fields.pop("name", "Launch"),
            subject=fields.pop("subject", "Hello"),
            html=html or '<html><body><p>Hi</p><a href="https://example.com/offer">Offer</a></body></html>',
            from_email=fields.pop("from_email", "sender@example.com"),
            price_per_email=fields.pop("price_per_email", 1),
            recipients_count=len(emails),
            **fields,
        )
        db.add(campaign)
        db.commit()
        for email in emails:
            db.add(CampaignRecipient(campaign_id=campaign.id, email=email))
        db.commit()
        db.refresh(campaign)
        return campaign

    return _make


@pytest.fixture(scope="function")
def connect_account(db, test_user):
    """Store a connected social account directly."""

    def _connect(provider: str, external_id: str, **fields):
        account = SocialAccount(
            user_id=test_user.id,
            provider=provider,
            access_token=f"stored-{provider}-token",
            external_id=external_id,
            display_name="Connected",
            scopes=[],
            page_ids=fields.pop("page_ids", []),
            **fields,
        )
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _connect
