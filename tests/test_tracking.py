"""
Tests for link/pixel rewriting and the public tracking endpoints.
"""
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from sqlalchemy.exc import SQLAlchemyError

from app.models.campaign import CampaignRecipient
from app.services.tracking import PIXEL_PNG, parse_campaign_id, safe_redirect_target, with_tracking

BASE = "https://api.example.com/api"


class TestRewriter:
    """with_tracking is pure and idempotent."""

    def test_wraps_links_and_adds_pixel(self):
        html = '<html><body><a href="https://shop.example.com/a?x=1&amp;y=2">Shop</a></body></html>'
        out = with_tracking(html, 5, "tok", BASE)

        href = out.split('href="')[1].split('"')[0]
        parsed = urlparse(href)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{BASE}/track/click"
        query = parse_qs(parsed.query)
        assert query["c"] == ["5"]
        assert query["t"] == ["tok"]
        assert query["u"] == ["https://shop.example.com/a?x=1&y=2"]

        pixel = f'<img src="{BASE}/track/open?c=5&t=tok" width="1" height="1" style="display:none" alt="" />'
        assert out.endswith(pixel + "</body></html>")

    def test_single_quoted_links(self):
        out = with_tracking("<a href='http://example.com/x'>x</a>", 1, "t", BASE)
        assert f'href="{BASE}/track/click?c=1&t=t&u=http%3A%2F%2Fexample.com%2Fx"' in out

    def test_non_http_links_untouched(self):
        html = '<a href="mailto:me@example.com">mail</a><a href="#top">top</a>'
        out = with_tracking(html, 1, "t", BASE)
        assert 'href="mailto:me@example.com"' in out
        assert 'href="#top"' in out

    def test_pixel_appended_without_body(self):
        out = with_tracking("<p>plain</p>", 1, "t", BASE)
        assert out.startswith("<p>plain</p><img ")

    def test_pixel_goes_before_last_body_close(self):
        html = "<body>one</body><body>two</BODY>"
        out = with_tracking(html, 1, "t", BASE)
        assert out.index("<img ") > out.index("two")
        assert out.endswith("</BODY>")

    def test_idempotent(self):
        html = '<html><body><a href="https://example.com">x</a></body></html>'
        once = with_tracking(html, 3, "abc", BASE)
        assert with_tracking(once, 3, "abc", BASE) == once
        assert once.count("<img ") == 1

    def test_deterministic(self):
        html = '<body><a href="https://example.com/1">1</a><a href="https://example.com/2">2</a></body>'
        assert with_tracking(html, 9, "tok", BASE) == with_tracking(html, 9, "tok", BASE)


class TestRedirectSafety:

    def test_accepts_http_and_https(self):
        assert safe_redirect_target("https://example.com/x") == "https://example.com/x"
        assert safe_redirect_target("http://example.com") == "http://example.com"

    def test_rejects_everything_else(self):
        for target in (None, "", "javascript:alert(1)", "//evil.example.com", "/relative", "ftp://example.com", "https://"):
            assert safe_redirect_target(target) is None


class TestTrackingEndpoints:

    def test_open_sets_first_timestamp_once(self, client, db, make_campaign):
        campaign = make_campaign(emails=("a@example.com",))
        recipient = campaign.recipients[0]

        first = client.get(f"/api/track/open?c={campaign.id}&t={recipient.tracking_token}")
        assert first.status_code == 200
        assert first.headers["content-type"] == "image/png"
        assert "no-store" in first.headers["cache-control"]
        assert first.content == PIXEL_PNG

        db.expire_all()
        opened_at = db.get(CampaignRecipient, recipient.id).opened_at
        assert opened_at is not None

        client.get(f"/api/track/open?c={campaign.id}&t={recipient.tracking_token}")
        db.expire_all()
        row = db.get(CampaignRecipient, recipient.id)
        assert row.opens_count == 2
        assert row.opened_at == opened_at

    def test_open_unknown_token_still_returns_pixel(self, client, db):
        response = client.get("/api/track/open?c=999&t=nope")
        assert response.status_code == 200
        assert response.content == PIXEL_PNG

        response = client.get("/api/track/open?c=notanumber")
        assert response.status_code == 200

    def test_click_counts_and_redirects(self, client, db, make_campaign):
        campaign = make_campaign(emails=("a@example.com",))
        recipient = campaign.recipients[0]

        response = client.get(
            "/api/track/click",
            params={"c": campaign.id, "t": recipient.tracking_token, "u": "https://example.com/offer"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/offer"

        db.expire_all()
        row = db.get(CampaignRecipient, recipient.id)
        assert row.clicks_count == 1
        assert row.clicked_at is not None
        assert row.last_event_at is not None

    def test_click_unsafe_target_uses_fallback(self, client, db, settings, monkeypatch):
        monkeypatch.setattr(settings, "click_fallback_url", "https://fallback.example.com")
        response = client.get(
            "/api/track/click",
            params={"c": 1, "t": "x", "u": "javascript:alert(1)"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://fallback.example.com"

    def test_oversized_campaign_id_still_returns_pixel(self, client, db):
        response = client.get("/api/track/open?c=99999999999999999999999&t=abc")
        assert response.status_code == 200
        assert response.content == PIXEL_PNG

    def test_oversized_campaign_id_still_redirects(self, client, db):
        response = client.get(
            "/api/track/click",
            params={"c": "99999999999999999999999", "t": "abc", "u": "https://example.com/offer"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/offer"

    def test_click_redirects_when_recording_fails(self, client, db, make_campaign):
        campaign = make_campaign(emails=("a@example.com",))
        token = campaign.recipients[0].tracking_token

        with patch("app.routes.tracking.record_click", side_effect=SQLAlchemyError("db down")):
            response = client.get(
                "/api/track/click",
                params={"c": campaign.id, "t": token, "u": "https://example.com/offer"},
                follow_redirects=False,
            )
        assert response.status_code == 302
        assert response.headers["location"] == "https://example.com/offer"

    def test_open_returns_pixel_when_recording_fails(self, client, db, make_campaign):
        campaign = make_campaign(emails=("a@example.com",))
        token = campaign.recipients[0].tracking_token

        with patch("app.routes.tracking.record_open", side_effect=SQLAlchemyError("db down")):
            response = client.get(f"/api/track/open?c={campaign.id}&t={token}")
        assert response.status_code == 200
        assert response.content == PIXEL_PNG


class TestCampaignIdParsing:

    def test_bounds(self):
        assert parse_campaign_id("42") == 42
        assert parse_campaign_id(str(2 ** 63 - 1)) == 2 ** 63 - 1
        for value in (None, "", "abc", "0", "-3", str(2 ** 63), "99999999999999999999999"):
            assert parse_campaign_id(value) is None
