"""Ledger append, posting, reversal and verification."""

import pytest

from payledger.common.db import SessionLocal
from payledger.common.errors import AlreadyReversed, InvalidEntry
from payledger.services.ledger.models import POSTING_POSTED, POSTING_REVERSED, LedgerEntry


def _record(services, business_id, amount=10_000, posting_state="PENDING", correlation_id=None):
    with SessionLocal() as db:
        entries = services.ledger.record_transaction(
            db,
            business_id=business_id,
            debit_account="ESCROW",
            credit_account="BANK",
            amount_minor_units=amount,
            currency="ZAR",
            description="test transfer",
            correlation_id=correlation_id,
            posting_state=posting_state,
        )
        db.commit()
        return entries


def test_record_transaction_appends_balanced_pair(services, factory):
    """A transaction is a debit and a credit of equal amount under one correlation id."""

    business_id = factory.business()
    debit, credit = _record(services, business_id, amount=12_345)

    assert debit.transaction_type == "DEBIT"
    assert credit.transaction_type == "CREDIT"
    assert debit.correlation_id == credit.correlation_id
    assert debit.amount_minor_units == credit.amount_minor_units == 12_345
    assert credit.sequence_number == debit.sequence_number + 1
    assert services.ledger.verify_balances()["balanced"] is True


def test_sequence_numbers_are_strictly_increasing(services, factory):
    business_id = factory.business()
    sequences = []
    for amount in (100, 200, 300):
        sequences.extend(entry.sequence_number for entry in _record(services, business_id, amount=amount))

    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amount_rejected(services, factory, amount):
    business_id = factory.business()
    with SessionLocal() as db:
        with pytest.raises(InvalidEntry):
            services.ledger.append(db, business_id, "ESCROW", "DEBIT", amount, "ZAR", correlation_id="c-1")


def test_unknown_account_type_rejected(services, factory):
    business_id = factory.business()
    with SessionLocal() as db:
        with pytest.raises(InvalidEntry):
            services.ledger.append(db, business_id, "SUSPENSE", "DEBIT", 100, "ZAR", correlation_id="c-1")


def test_currency_must_match_account(services, factory):
    business_id = factory.business()
    _record(services, business_id)
    with SessionLocal() as db:
        with pytest.raises(InvalidEntry):
            services.ledger.append(db, business_id, "ESCROW", "DEBIT", 100, "USD", correlation_id="c-2")


def test_posting_and_balances(services, factory):
    """Posted-only balances ignore pending legs until they post."""

    business_id = factory.business()
    debit, _ = _record(services, business_id, amount=5_000)

    with SessionLocal() as db:
        assert services.ledger.account_balance(db, business_id, "ESCROW") == 5_000
        assert services.ledger.account_balance(db, business_id, "ESCROW", posted_only=True) == 0
        assert services.ledger.post_transaction(db, debit.correlation_id) == 2
        db.commit()

    with SessionLocal() as db:
        assert services.ledger.account_balance(db, business_id, "ESCROW", posted_only=True) == 5_000
        assert services.ledger.account_balance(db, business_id, "BANK", posted_only=True) == -5_000
        assert db.get(LedgerEntry, debit.entry_id).posted_at is not None


def test_reversal_links_both_directions(services, factory):
    business_id = factory.business()
    debit, _ = _record(services, business_id, amount=7_500, posting_state=POSTING_POSTED)

    with SessionLocal() as db:
        reversal = services.ledger.reverse(db, debit.entry_id, "operator correction")
        db.commit()

    with SessionLocal() as db:
        original = db.get(LedgerEntry, debit.entry_id)
        assert original.reversed_by_id == reversal.entry_id
        assert original.posting_state == POSTING_REVERSED
        assert reversal.reversal_of_id == debit.entry_id
        assert reversal.transaction_type == "CREDIT"
        assert reversal.amount_minor_units == 7_500
        assert reversal.correlation_id == debit.correlation_id


def test_double_reversal_rejected(services, factory):
    business_id = factory.business()
    debit, _ = _record(services, business_id)

    with SessionLocal() as db:
        reversal = services.ledger.reverse(db, debit.entry_id, "first")
        db.commit()

    with SessionLocal() as db:
        with pytest.raises(AlreadyReversed):
            services.ledger.reverse(db, debit.entry_id, "second")
    with SessionLocal() as db:
        with pytest.raises(InvalidEntry):
            services.ledger.reverse(db, reversal.entry_id, "reversal of a reversal")


def test_reverse_transaction_nets_account_to_zero(services, factory):
    business_id = factory.business()
    debit, _ = _record(services, business_id, amount=4_000)

    with SessionLocal() as db:
        reversals = services.ledger.reverse_transaction(db, debit.correlation_id, "cancelled")
        db.commit()

    assert len(reversals) == 2
    with SessionLocal() as db:
        assert services.ledger.account_balance(db, business_id, "ESCROW") == 0
        assert services.ledger.account_balance(db, business_id, "BANK") == 0
    assert services.ledger.verify_balances()["balanced"] is True


def test_verify_balances_reports_imbalanced_group(services, factory):
    """A lone leg under a correlation id is flagged."""

    business_id = factory.business()
    _record(services, business_id)
    with SessionLocal() as db:
        services.ledger.append(db, business_id, "ESCROW", "DEBIT", 999, "ZAR", correlation_id="orphan")
        db.commit()

    report = services.ledger.verify_balances()
    assert report["balanced"] is False
    assert report["imbalanced_count"] == 1
    assert report["imbalanced_transactions"][0]["correlation_id"] == "orphan"
    assert report["transactions_checked"] == 2


def test_replay_account_running_balance(services, factory):
    business_id = factory.business()
    _record(services, business_id, amount=1_000)
    _record(services, business_id, amount=2_500)

    replay = services.ledger.replay_account(business_id, "ESCROW")
    assert [row["running_balance"] for row in replay] == [1_000, 3_500]
