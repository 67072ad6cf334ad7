"""
Tests for the OAuth connect/disconnect flow and its change quota.
"""
import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from app.main import app
from app.models.social import ConnectionUsage, OAuthState, SocialAccount
from app.providers import FacebookClient, get_social_clients


def _start(client, auth_headers, provider="linkedin"):
    response = client.get(f"/api/{provider}/oauth/start?format=json", headers=auth_headers)
    assert response.status_code == 200, response.text
    url = response.json()["url"]
    return parse_qs(urlparse(url).query)["state"][0]


def _callback(client, provider="linkedin", code="code-1", state=None):
    params = {}
    if code is not None:
        params["code"] = code
    if state is not None:
        params["state"] = state
    response = client.get(f"/api/{provider}/oauth/callback", params=params, follow_redirects=False)
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)


def _connect(client, auth_headers, provider="linkedin", code="code-1"):
    return _callback(client, provider, code, _start(client, auth_headers, provider))


def _changes_used(db, user_id, provider="linkedin"):
    db.expire_all()
    row = db.query(ConnectionUsage).filter(
        ConnectionUsage.user_id == user_id, ConnectionUsage.provider == provider
    ).first()
    return row.changes_used if row else 0


class TestOAuthStart:

    def test_start_json(self, client, db, auth_headers, social_clients):
        response = client.get("/api/linkedin/oauth/start?format=json", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["changes_left"] == 2
        assert data["url"].startswith("https://auth.example.com/linkedin?state=")
        assert db.query(OAuthState).count() == 1

    def test_start_redirects(self, client, db, auth_headers, social_clients):
        response = client.get("/api/facebook/oauth/start", headers=auth_headers, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://auth.example.com/facebook")

    def test_start_prunes_expired_states(self, client, db, test_user, auth_headers, social_clients):
        db.add(OAuthState(
            state="old",
            user_id=test_user.id,
            provider="linkedin",
            created_at=datetime.now(timezone.utc) - timedelta(hours=1),
        ))
        db.commit()

        _start(client, auth_headers)
        db.expire_all()
        assert db.get(OAuthState, "old") is None

    def test_start_requires_auth(self, client, db, social_clients):
        assert client.get("/api/linkedin/oauth/start").status_code == 401

    def test_unknown_provider(self, client, db, auth_headers, social_clients):
        assert client.get("/api/myspace/status", headers=auth_headers).status_code == 422


class TestOAuthCallback:

    def test_connects_account(self, client, db, test_user, auth_headers, social_clients):
        result = _connect(client, auth_headers)
        assert result == {"linkedin": ["connected"]}

        account = db.query(SocialAccount).filter(SocialAccount.user_id == test_user.id).one()
        assert account.provider == "linkedin"
        assert account.external_id == "person-1"
        assert account.access_token == "token-code-1"
        assert account.expires_at is not None
        assert db.query(OAuthState).count() == 0
        assert _changes_used(db, test_user.id) == 0

    def test_state_is_single_use(self, client, db, auth_headers, social_clients):
        state = _start(client, auth_headers)
        assert _callback(client, state=state)["linkedin"] == ["connected"]

        replay = _callback(client, code="code-2", state=state)
        assert replay == {"linkedin": ["error"], "reason": ["invalid_state"]}
        assert social_clients["linkedin"].exchanged == ["code-1"]

    def test_state_for_other_provider_is_invalid(self, client, db, auth_headers, social_clients):
        state = _start(client, auth_headers, provider="facebook")
        assert _callback(client, provider="linkedin", state=state)["reason"] == ["invalid_state"]

    def test_expired_state(self, client, db, auth_headers, social_clients):
        state = _start(client, auth_headers)
        row = db.get(OAuthState, state)
        row.created_at = datetime.now(timezone.utc) - timedelta(minutes=16)
        db.commit()

        assert _callback(client, state=state)["reason"] == ["invalid_state"]
        db.expire_all()
        assert db.get(OAuthState, state) is None

    def test_missing_code(self, client, db, social_clients):
        result = _callback(client, code=None, state="anything")
        assert result["reason"] == ["missing_code_or_state"]

    def test_provider_error_param(self, client, db, social_clients):
        response = client.get("/api/facebook/oauth/callback?error=access_denied", follow_redirects=False)
        assert parse_qs(urlparse(response.headers["location"]).query) == {
            "facebook": ["error"],
            "reason": ["access_denied"],
        }

    def test_reconnect_same_identity_is_free(self, client, db, test_user, auth_headers, social_clients):
        _connect(client, auth_headers, code="code-1")
        _connect(client, auth_headers, code="code-2")

        account = db.query(SocialAccount).filter(SocialAccount.user_id == test_user.id).one()
        assert account.access_token == "token-code-2"
        assert _changes_used(db, test_user.id) == 0

    def test_identity_switch_spends_a_change(self, client, db, test_user, auth_headers, social_clients):
        _connect(client, auth_headers)
        social_clients["linkedin"].identity = "person-2"

        assert _connect(client, auth_headers, code="code-2") == {"linkedin": ["connected"]}
        assert _changes_used(db, test_user.id) == 1
        account = db.query(SocialAccount).filter(SocialAccount.user_id == test_user.id).one()
        assert account.external_id == "person-2"

    def test_identity_switch_over_limit_keeps_old_account(self, client, db, test_user, auth_headers, social_clients):
        _connect(client, auth_headers)
        state = _start(client, auth_headers)

        # Quota runs out between start and callback
        db.add(ConnectionUsage(user_id=test_user.id, provider="linkedin", changes_used=2))
        db.commit()
        social_clients["linkedin"].identity = "person-2"

        assert _callback(client, code="code-2", state=state)["reason"] == ["change_limit"]

        db.expire_all()
        account = db.query(SocialAccount).filter(SocialAccount.user_id == test_user.id).one()
        assert account.external_id == "person-1"
        assert account.access_token == "token-code-1"
        assert _changes_used(db, test_user.id) == 2

    def test_start_refused_when_quota_used(self, client, db, test_user, auth_headers, social_clients):
        db.add(ConnectionUsage(user_id=test_user.id, provider="linkedin", changes_used=2))
        db.commit()

        response = client.get("/api/linkedin/oauth/start?format=json", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["error"] == "CHANGE_LIMIT"
        assert response.json()["changes_left"] == 0

    def test_facebook_stores_pages(self, client, db, test_user, auth_headers, social_clients):
        _connect(client, auth_headers, provider="facebook")
        account = db.query(SocialAccount).filter(SocialAccount.provider == "facebook").one()
        assert account.page_ids == ["page-1"]
        assert account.selected_page_id == "page-1"


class TestDisconnect:

    def test_disconnect(self, client, db, test_user, auth_headers, social_clients, connect_account):
        connect_account("linkedin", "person-1")

        response = client.post("/api/linkedin/disconnect", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "changes_left": 1}
        assert social_clients["linkedin"].revoked == ["stored-linkedin-token"]
        assert db.query(SocialAccount).count() == 0

    def test_disconnect_without_account(self, client, db, test_user, auth_headers, social_clients):
        response = client.post("/api/linkedin/disconnect", headers=auth_headers)
        assert response.status_code == 404
        assert _changes_used(db, test_user.id) == 0

    def test_third_change_is_refused(self, client, db, test_user, auth_headers, social_clients, connect_account):
        for expected_left in (1, 0):
            connect_account("linkedin", "person-1")
            response = client.post("/api/linkedin/disconnect", headers=auth_headers)
            assert response.json()["changes_left"] == expected_left

        connect_account("linkedin", "person-1")
        response = client.post("/api/linkedin/disconnect", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["error"] == "CHANGE_LIMIT"
        assert _changes_used(db, test_user.id) == 2
        assert db.query(SocialAccount).count() == 1

    def test_revoke_failure_still_disconnects(self, client, db, auth_headers, social_clients, connect_account):
        from app.responses import ProviderError

        def failing_revoke(token):
            raise ProviderError("linkedin", "revoke endpoint down")

        social_clients["linkedin"].revoke = failing_revoke
        connect_account("linkedin", "person-1")

        response = client.post("/api/linkedin/disconnect", headers=auth_headers)
        assert response.status_code == 200
        assert db.query(SocialAccount).count() == 0


class TestStatusAndPages:

    def test_status_disconnected(self, client, db, auth_headers, social_clients):
        response = client.get("/api/linkedin/status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "connected": False, "can_post": False, "changes_left": 2}

    def test_status_never_exposes_token(self, client, db, auth_headers, social_clients, connect_account):
        connect_account("linkedin", "urn:li:person:abc")
        data = client.get("/api/linkedin/status", headers=auth_headers).json()
        assert data["connected"] is True
        assert data["can_post"] is True
        assert data["external_id"] == "urn:li:person:abc"
        assert "stored-linkedin-token" not in json.dumps(data)

    def test_expired_token_cannot_post(self, client, db, auth_headers, social_clients, connect_account):
        connect_account("linkedin", "urn:li:person:abc", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        assert client.get("/api/linkedin/status", headers=auth_headers).json()["can_post"] is False

    def test_list_and_select_pages(self, client, db, auth_headers, social_clients, connect_account):
        connect_account("facebook", "fb-user-1")

        pages = client.get("/api/facebook/pages", headers=auth_headers).json()
        assert pages["pages"] == [{"id": "page-1", "name": "Page One"}]

        response = client.post(
            "/api/facebook/pages/selected",
            headers=auth_headers,
            json={"pageId": "page-1", "pageName": "Page One"},
        )
        assert response.status_code == 200
        assert response.json()["selected_page_id"] == "page-1"

        response = client.post("/api/facebook/pages/selected", headers=auth_headers, json={"pageId": "page-9"})
        assert response.status_code == 400


class TestFacebookDeauthorize:

    SECRET = "fb-app-secret"

    def _signed_request(self, payload, secret=SECRET):
        encoded = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
        sig = hmac.new(secret.encode(), encoded.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(sig).decode().rstrip("=") + "." + encoded

    def _use_real_client(self, settings, monkeypatch):
        monkeypatch.setattr(settings, "facebook_app_secret", self.SECRET)
        app.dependency_overrides[get_social_clients] = lambda: {"facebook": FacebookClient(settings)}

    def test_deletes_matching_account(self, client, db, settings, monkeypatch, connect_account):
        self._use_real_client(settings, monkeypatch)
        connect_account("facebook", "fb-user-1")

        signed = self._signed_request({"algorithm": "HMAC-SHA256", "user_id": "fb-user-1"})
        response = client.post("/api/facebook/deauthorize", data={"signed_request": signed})
        assert response.status_code == 200
        assert response.json()["deleted"] == 1
        assert db.query(SocialAccount).count() == 0

    def test_rejects_bad_signature(self, client, db, settings, monkeypatch, connect_account):
        self._use_real_client(settings, monkeypatch)
        connect_account("facebook", "fb-user-1")

        signed = self._signed_request({"algorithm": "HMAC-SHA256", "user_id": "fb-user-1"}, secret="wrong")
        response = client.post("/api/facebook/deauthorize", data={"signed_request": signed})
        assert response.status_code == 400
        assert db.query(SocialAccount).count() == 1

    def test_rejects_missing_or_non_string_algorithm(self, client, db, settings, monkeypatch, connect_account):
        self._use_real_client(settings, monkeypatch)
        connect_account("facebook", "fb-user-1")

        for algorithm in (None, 256, ["HMAC-SHA256"]):
            signed = self._signed_request({"algorithm": algorithm, "user_id": "fb-user-1"})
            response = client.post("/api/facebook/deauthorize", data={"signed_request": signed})
            assert response.status_code == 400
        assert db.query(SocialAccount).count() == 1
