"""
Unit Tests for the Deposit State Machine

Tests cover:
1. Deposit creation and amount validation
2. Approval crediting and the deposit transaction
3. Referral commission on approval
4. Rejection
5. Terminal states and admin authorization
6. All-or-nothing approval
7. Concurrent approvals
"""

import threading
from decimal import Decimal
from uuid import UUID

import pytest

from wallet.errors import (
    InvalidStateTransition,
    NotFound,
    PriceUnavailable,
    Unauthorized,
    ValidationError,
)
from wallet.identity import IdentityService
from wallet.models import DepositStatus, RegisterRequest, TransactionStatus, TransactionType
from wallet.referral import ReferralAccrualEngine
from wallet.service import MAX_AMOUNT, DepositService
from wallet.storage import SEED_TOKEN_ID, InMemoryStorage


UNKNOWN_ID = UUID("00000000-0000-0000-0000-000000000000")


def ledger_snapshot(storage):
    return {
        "deposits": storage.select("deposit_requests"),
        "transactions": storage.select("transactions"),
        "balances": storage.select("user_balances"),
        "earnings": storage.select("referral_earnings"),
    }


class TestCreateDeposit:
    """Tests for submitting deposit requests."""

    def test_create_deposit_pending(self, deposits, balances, make_user):
        """A new deposit is pending and has no ledger side effect."""
        alice = make_user("alice")

        deposit = deposits.create_deposit(alice.id, "100.00", "0xabc123", "bsc")

        assert deposit.status == DepositStatus.PENDING
        assert deposit.user_id == alice.id
        assert deposit.amount == Decimal("100.00")
        assert str(deposit.amount) == "100.00000000"
        assert deposit.transaction_hash == "0xabc123"
        assert deposit.admin_notes is None

        assert balances.get_transactions(alice.id) == []
        assert balances.get_balance(alice.id).balance == Decimal("0")

    @pytest.mark.parametrize("amount", [
        "0", "-5.00", "abc", "NaN", "Infinity", None, "0.000000001", "50000000000000000000",
    ])
    def test_invalid_amount_rejected(self, deposits, make_user, amount):
        """Non-positive or malformed amounts fail validation."""
        alice = make_user("alice")

        with pytest.raises(ValidationError):
            deposits.create_deposit(alice.id, amount, "0xabc")

        assert deposits.list_deposits(alice.id) == []

    def test_unknown_payment_method(self, deposits, make_user):
        alice = make_user("alice")
        with pytest.raises(ValidationError):
            deposits.create_deposit(alice.id, "10", "0xabc", "paypal")

    def test_unknown_user(self, deposits):
        with pytest.raises(NotFound):
            deposits.create_deposit(UNKNOWN_ID, "10", "0xabc")

    def test_list_deposits_newest_first(self, deposits, make_user):
        """Users see their own deposits, admins see all of them."""
        alice = make_user("alice")
        bob = make_user("bob")

        first = deposits.create_deposit(alice.id, "10", "0x1")
        second = deposits.create_deposit(alice.id, "20", "0x2")
        deposits.create_deposit(bob.id, "30", "0x3")

        mine = deposits.list_deposits(alice.id)
        assert [d.id for d in mine] == [second.id, first.id]
        assert len(deposits.list_deposits()) == 3


class TestApproveDeposit:
    """Tests for the approval side effects."""

    def test_approval_credits_at_current_price(self, deposits, balances, make_user, admin, set_price):
        """100.00 USD at 0.50 USD per token credits 200 tokens."""
        set_price("0.50")
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "100.00", "0xabc")

        approved = deposits.approve(deposit.id, "Payment verified", admin)

        assert approved.status == DepositStatus.APPROVED
        assert approved.admin_notes == "Payment verified"

        balance = balances.get_balance(alice.id)
        assert balance.balance == Decimal("200")
        assert balance.usd_value == Decimal("100.00")

        transactions = balances.get_transactions(alice.id)
        assert len(transactions) == 1
        tx = transactions[0]
        assert tx.type == TransactionType.DEPOSIT
        assert tx.status == TransactionStatus.CONFIRMED
        assert tx.amount == Decimal("200")
        assert tx.description == "Deposit approved"
        assert tx.deposit_request_id == deposit.id

    def test_price_taken_at_approval_time(self, deposits, balances, make_user, admin, set_price):
        """A price change between submission and approval is honoured."""
        set_price("1.00")
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "50", "0xabc")

        set_price("0.25")
        deposits.approve(deposit.id, None, admin)

        assert balances.get_balance(alice.id).balance == Decimal("200")

    def test_set_status_equivalent_to_approve(self, deposits, balances, make_user, admin):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "75.00", "0xabc")

        updated = deposits.set_status(deposit.id, "approved", "via set_status", admin)

        assert updated.status == DepositStatus.APPROVED
        assert balances.get_balance(alice.id).usd_value == Decimal("75.00")

    def test_referrer_earns_commission(self, deposits, balances, referrals, make_user, admin, set_price):
        """A referred deposit pays 5% to the referrer at the same price."""
        set_price("0.50")
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        deposit = deposits.create_deposit(dave.id, "100.00", "0xabc")

        deposits.approve(deposit.id, None, admin)

        earnings = referrals.list_earnings(carol.id)
        assert len(earnings) == 1
        assert earnings[0].referred_user_id == dave.id
        assert earnings[0].deposit_amount == Decimal("100.00")
        assert earnings[0].earnings_amount == Decimal("5.00")
        assert earnings[0].deposit_request_id == deposit.id

        carol_balance = balances.get_balance(carol.id)
        assert carol_balance.balance == Decimal("10")
        assert carol_balance.usd_value == Decimal("5.00")

        carol_txs = balances.get_transactions(carol.id)
        assert len(carol_txs) == 1
        assert carol_txs[0].type == TransactionType.RECEIVE
        assert carol_txs[0].status == TransactionStatus.CONFIRMED
        assert "Referral commission" in carol_txs[0].description

        # the depositor is credited in full
        assert balances.get_balance(dave.id).balance == Decimal("200")

    def test_small_commission_is_credited_exactly(self, deposits, balances, referrals, make_user, admin):
        """A sub-cent commission reaches the referrer's USD value unrounded."""
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        deposit = deposits.create_deposit(dave.id, "0.10", "0xabc")

        deposits.approve(deposit.id, None, admin)

        assert referrals.list_earnings(carol.id)[0].earnings_amount == Decimal("0.005")
        assert balances.get_balance(carol.id).usd_value == Decimal("0.005")
        assert balances.get_balance(carol.id).balance == Decimal("0.005")

    def test_largest_amount_accepted(self, deposits, balances, make_user, admin):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, MAX_AMOUNT, "0xabc")

        deposits.approve(deposit.id, None, admin)

        assert balances.get_balance(alice.id).balance == MAX_AMOUNT

    def test_no_commission_without_referrer(self, deposits, referrals, storage, make_user, admin):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "100", "0xabc")

        deposits.approve(deposit.id, None, admin)

        assert storage.select("referral_earnings") == []


class TestRejectDeposit:
    """Tests for the rejection flow."""

    def test_reject_has_no_side_effects(self, deposits, balances, storage, make_user, admin):
        """Rejecting a 25.00 deposit only records the status and notes."""
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "25.00", "0xabc", "upi")
        balance_before = balances.get_balance(alice.id)

        rejected = deposits.reject(deposit.id, "Payment not found", admin)

        assert rejected.status == DepositStatus.REJECTED
        assert rejected.admin_notes == "Payment not found"
        assert deposits.get_deposit(deposit.id).status == DepositStatus.REJECTED
        assert balances.get_transactions(alice.id) == []
        assert balances.get_balance(alice.id) == balance_before
        assert storage.select("referral_earnings") == []


class TestTerminalStates:
    """Tests for transitions out of approved / rejected."""

    @pytest.mark.parametrize("first,second", [
        ("approved", "approved"),
        ("approved", "rejected"),
        ("rejected", "approved"),
        ("rejected", "rejected"),
    ])
    def test_terminal_state_is_final(self, deposits, storage, make_user, admin, first, second):
        """A second transition fails and leaves every ledger row as it was."""
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        deposit = deposits.create_deposit(dave.id, "40", "0xabc")
        deposits.set_status(deposit.id, first, "first decision", admin)
        before = ledger_snapshot(storage)

        with pytest.raises(InvalidStateTransition):
            deposits.set_status(deposit.id, second, "second decision", admin)

        assert ledger_snapshot(storage) == before
        assert deposits.get_deposit(deposit.id).admin_notes == "first decision"

    def test_cannot_move_back_to_pending(self, deposits, make_user, admin):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "10", "0xabc")
        with pytest.raises(ValidationError):
            deposits.set_status(deposit.id, "pending", None, admin)

    def test_unknown_status(self, deposits, make_user, admin):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "10", "0xabc")
        with pytest.raises(ValidationError):
            deposits.set_status(deposit.id, "completed", None, admin)

    def test_unknown_deposit(self, deposits, admin):
        with pytest.raises(NotFound):
            deposits.approve(UNKNOWN_ID, None, admin)


class TestAuthorization:
    """Only admins may decide on deposits."""

    def test_non_admin_cannot_approve(self, deposits, balances, make_user):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "100", "0xabc")

        with pytest.raises(Unauthorized):
            deposits.approve(deposit.id, "self approval", alice)

        assert deposits.get_deposit(deposit.id).status == DepositStatus.PENDING
        assert balances.get_transactions(alice.id) == []

    def test_missing_admin(self, deposits, make_user):
        alice = make_user("alice")
        deposit = deposits.create_deposit(alice.id, "100", "0xabc")
        with pytest.raises(Unauthorized):
            deposits.reject(deposit.id, None, None)


class TestAtomicApproval:
    """A failed approval must leave no partial state behind."""

    def test_failed_referral_rolls_back_credit(self, deposits, balances, storage, make_user, admin, monkeypatch):
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        deposit = deposits.create_deposit(dave.id, "100", "0xabc")
        before = ledger_snapshot(storage)

        def broken_accrue(*args, **kwargs):
            raise RuntimeError("referral store unavailable")

        monkeypatch.setattr(deposits.referrals, "accrue", broken_accrue)

        with pytest.raises(RuntimeError):
            deposits.approve(deposit.id, "should not stick", admin)

        assert ledger_snapshot(storage) == before
        assert deposits.get_deposit(deposit.id).status == DepositStatus.PENDING
        assert balances.get_balance(dave.id).balance == Decimal("0")

        # the deposit is still pending and can be approved once the fault is gone
        monkeypatch.undo()
        deposits.approve(deposit.id, "retry", admin)
        assert len(balances.get_transactions(dave.id)) == 1
        assert len(balances.get_transactions(carol.id)) == 1

    def test_balance_overflow_leaves_ledger_untouched(self, deposits, balances, storage, make_user, admin):
        """A credit the balance cannot hold fails before any row is written."""
        alice = make_user("alice")
        with storage.unit_of_work() as uow:
            uow.credit_balance(alice.id, SEED_TOKEN_ID, Decimal("9" * 20), Decimal("0"))
        deposit = deposits.create_deposit(alice.id, "1", "0xabc")
        before = ledger_snapshot(storage)

        with pytest.raises(ValidationError):
            deposits.approve(deposit.id, None, admin)

        assert ledger_snapshot(storage) == before
        assert deposits.get_deposit(deposit.id).status == DepositStatus.PENDING
        assert balances.get_transactions(alice.id) == []

        # still pending, so it can be closed normally
        assert deposits.reject(deposit.id, "over limit", admin).status == DepositStatus.REJECTED

    def test_missing_price_fails_approval(self, settings):
        """Without an active token there is no price, so nothing is credited."""
        storage = InMemoryStorage(seed=False)
        identity = IdentityService(storage, settings)
        service = DepositService(storage, referrals=ReferralAccrualEngine(storage, Decimal("0.05")))
        root = identity.register(RegisterRequest(
            name="Root", username="root", email="root@example.com", password="password123",
        ), is_admin=True)
        deposit = service.create_deposit(root.id, "10", "0xabc")

        with pytest.raises(PriceUnavailable):
            service.approve(deposit.id, None, root)

        assert service.get_deposit(deposit.id).status == DepositStatus.PENDING
        assert storage.select("transactions") == []
        assert storage.select("user_balances") == []


class TestConcurrentApproval:
    """Tests for simultaneous admin actions."""

    def test_simultaneous_approvals_credit_once(self, deposits, balances, referrals, make_user, admin):
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        deposit = deposits.create_deposit(dave.id, "100", "0xabc")

        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        outcomes_lock = threading.Lock()

        def approve():
            barrier.wait()
            try:
                deposits.approve(deposit.id, "double click", admin)
                result = "approved"
            except InvalidStateTransition:
                result = "conflict"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=approve) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("approved") == 1
        assert outcomes.count("conflict") == workers - 1
        assert len(balances.get_transactions(dave.id)) == 1
        assert balances.get_balance(dave.id).balance == Decimal("100")
        assert len(referrals.list_earnings(carol.id)) == 1
        assert balances.get_balance(carol.id).usd_value == Decimal("5.00")

    def test_row_lock_released_after_decision(self, deposits, storage, make_user, admin):
        alice = make_user("alice")
        approved = deposits.create_deposit(alice.id, "10", "0x1")
        rejected = deposits.create_deposit(alice.id, "10", "0x2")

        deposits.approve(approved.id, None, admin)
        deposits.reject(rejected.id, None, admin)
        with pytest.raises(InvalidStateTransition):
            deposits.approve(rejected.id, None, admin)

        assert storage._row_locks == {}

    def test_parallel_referrals_do_not_lose_updates(self, deposits, balances, make_user, admin):
        """Unrelated deposits crediting the same referrer all land."""
        carol = make_user("carol")
        referred = [make_user(f"user{i}", referral_code=carol.referral_code) for i in range(6)]
        pending = [deposits.create_deposit(u.id, "20", f"0x{i}") for i, u in enumerate(referred)]

        barrier = threading.Barrier(len(pending))

        def approve(deposit_id):
            barrier.wait()
            deposits.approve(deposit_id, None, admin)

        threads = [threading.Thread(target=approve, args=(d.id,)) for d in pending]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        carol_balance = balances.get_balance(carol.id)
        assert carol_balance.usd_value == Decimal("6.00")
        assert carol_balance.balance == Decimal("6")
        assert balances.reconcile(carol.id).is_consistent


class TestLedgerInvariant:
    """Stored balances always equal the sum of confirmed transactions."""

    def test_balances_match_transactions(self, deposits, balances, storage, make_user, admin, set_price):
        carol = make_user("carol")
        dave = make_user("dave", referral_code=carol.referral_code)
        erin = make_user("erin", referral_code=dave.referral_code)

        set_price("0.30")
        d1 = deposits.create_deposit(dave.id, "33.33", "0x1")
        d2 = deposits.create_deposit(erin.id, "12.50", "0x2")
        d3 = deposits.create_deposit(carol.id, "7", "0x3")
        deposits.approve(d1.id, None, admin)
        set_price("1.70")
        deposits.approve(d2.id, None, admin)
        deposits.reject(d3.id, None, admin)

        for user in (carol, dave, erin):
            result = balances.reconcile(user.id)
            assert result.is_consistent, result

        approved = [d for d in deposits.list_deposits() if d.status == DepositStatus.APPROVED]
        for deposit in approved:
            matching = [
                t for t in storage.select("transactions")
                if t["deposit_request_id"] == deposit.id
                and t["user_id"] == deposit.user_id
                and t["type"] == TransactionType.DEPOSIT
            ]
            assert len(matching) == 1
            assert matching[0]["status"] == TransactionStatus.CONFIRMED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
