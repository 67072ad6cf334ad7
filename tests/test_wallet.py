"""
Tests for the credit wallet and ledger.
"""
import pytest

from app.models.wallet import CreditLedgerEntry
from app.responses import InsufficientCredits, ValidationError
from app.services import wallet
from app.services.idempotency import derive_correlation_id


class TestLedger:
    """Ledger writes through debit/credit."""

    def test_balance_defaults_to_zero(self, db, test_user):
        assert wallet.get_balance(db, test_user.id) == 0

    def test_credit_then_debit(self, db, test_user):
        assert wallet.credit(db, test_user.id, 10, "topup-1") == 10
        assert wallet.debit(db, test_user.id, 3, "spend-1") == 7
        assert wallet.ledger_balance(db, test_user.id) == 7

    def test_debit_replay_is_noop(self, db, test_user):
        """A repeated correlation id charges once."""
        wallet.credit(db, test_user.id, 5, "topup-1")
        wallet.debit(db, test_user.id, 2, "spend-1")
        assert wallet.debit(db, test_user.id, 2, "spend-1") == 3

        entries = db.query(CreditLedgerEntry).filter(CreditLedgerEntry.correlation_id == "spend-1").count()
        assert entries == 1

    def test_insufficient_credits(self, db, test_user):
        wallet.credit(db, test_user.id, 1, "topup-1")
        with pytest.raises(InsufficientCredits) as exc:
            wallet.debit(db, test_user.id, 2, "spend-1")

        assert exc.value.status_code == 402
        assert exc.value.details == {"required": 2, "balance": 1}
        assert wallet.get_balance(db, test_user.id) == 1
        assert db.query(CreditLedgerEntry).filter(CreditLedgerEntry.correlation_id == "spend-1").count() == 0

    def test_debit_without_wallet(self, db, test_user):
        with pytest.raises(InsufficientCredits):
            wallet.debit(db, test_user.id, 1, "spend-1")

    def test_rejects_non_positive_amounts(self, db, test_user):
        with pytest.raises(ValidationError):
            wallet.debit(db, test_user.id, 0, "spend-0")
        with pytest.raises(ValidationError):
            wallet.credit(db, test_user.id, -5, "topup-neg")

    def test_rejects_unknown_credit_kind(self, db, test_user):
        with pytest.raises(ValidationError):
            wallet.credit(db, test_user.id, 5, "topup-1", kind="debit")

    def test_materialized_balance_matches_ledger(self, db, test_user):
        wallet.credit(db, test_user.id, 20, "topup-1")
        for i in range(5):
            wallet.debit(db, test_user.id, 3, f"spend-{i}")
        wallet.credit(db, test_user.id, 3, "spend-4:refund", kind="refund")

        assert wallet.get_balance(db, test_user.id) == 8
        assert wallet.ledger_balance(db, test_user.id) == 8


class TestCorrelationIds:

    def test_deterministic(self):
        a = derive_correlation_id(7, "linkedin.publish", {"text": "hi", "image_url": None})
        b = derive_correlation_id(7, "linkedin.publish", {"image_url": None, "text": "hi"})
        assert a == b
        assert a.startswith("linkedin.publish-")
        assert len(a.split("-")[-1]) == 24

    def test_differs_by_actor_and_params(self):
        base = derive_correlation_id(7, "campaign.send", {"campaign_id": 1})
        assert derive_correlation_id(8, "campaign.send", {"campaign_id": 1}) != base
        assert derive_correlation_id(7, "campaign.send", {"campaign_id": 2}) != base


class TestWalletEndpoints:

    def test_get_wallet(self, client, auth_headers, fund):
        fund(12)
        response = client.get("/api/wallet", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["balance"] == 12

    def test_get_ledger(self, client, db, test_user, auth_headers, fund):
        fund(10)
        wallet.debit(db, test_user.id, 4, "spend-1", note="campaign.send")

        response = client.get("/api/wallet/ledger", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["pagination"]["total"] == 2
        deltas = sorted(entry["delta"] for entry in data["data"])
        assert deltas == [-4, 10]

    def test_wallet_requires_auth(self, client):
        assert client.get("/api/wallet").status_code == 401
