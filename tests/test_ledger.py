"""Ledger posting, bonus idempotency and balance-chain reconciliation."""

import pytest
from sqlalchemy import select, update

from storepay.common.errors import InsufficientBalance, ProfileNotFound
from storepay.common.telegram_auth import TelegramIdentity
from storepay.services.ledger.models import DEPOSIT, PURCHASE, Profile, Transaction
from storepay.services.ledger.service import LedgerService


def test_post_entry_chains_balance_after(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    profile = make_profile()

    with session_factory() as db:
        locked = ledger.lock_profile(db, profile.id)
        ledger.post_entry(db, locked, DEPOSIT, 50000, "Пополнение", payment_id="inv_a")
        ledger.post_entry(db, locked, PURCHASE, -30000, "Оплата заказа")
        ledger.post_entry(db, locked, DEPOSIT, 1000, "Пополнение", payment_id="inv_b")
        db.commit()

    entries = list(reversed(ledger.history(profile.id)))
    assert [e.sequence for e in entries] == [1, 2, 3]
    assert [e.balance_after_kopecks for e in entries] == [50000, 20000, 21000]
    report = ledger.verify_chain(profile.id)
    assert report["consistent"] is True
    assert report["stored_balance_kopecks"] == 21000


def test_overdraft_is_refused_and_nothing_is_written(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    profile = make_profile(balance_kopecks=10000)

    with session_factory() as db:
        locked = ledger.lock_profile(db, profile.id)
        with pytest.raises(InsufficientBalance):
            ledger.post_entry(db, locked, PURCHASE, -10001, "Оплата заказа")

    with session_factory() as db:
        assert db.get(Profile, profile.id).balance_kopecks == 10000
        assert len(db.execute(select(Transaction)).scalars().all()) == 1


def test_zero_amount_and_unknown_kind_are_programming_errors(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    profile = make_profile()
    with session_factory() as db:
        locked = ledger.lock_profile(db, profile.id)
        with pytest.raises(ValueError):
            ledger.post_entry(db, locked, DEPOSIT, 0, "ничего")
        with pytest.raises(ValueError):
            ledger.post_entry(db, locked, "gift", 100, "неизвестный тип")


def test_lock_profile_unknown_user(session_factory):
    with session_factory() as db:
        with pytest.raises(ProfileNotFound):
            LedgerService(session_factory).lock_profile(db, "missing")


def test_bonus_is_idempotent_by_key(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    profile = make_profile()

    first, applied = ledger.credit_bonus(profile.id, 15000, "Бонус за отзыв", "review-42")
    again, applied_again = ledger.credit_bonus(profile.id, 15000, "Бонус за отзыв", "review-42")

    assert applied is True
    assert applied_again is False
    assert again.id == first.id
    with session_factory() as db:
        assert db.get(Profile, profile.id).balance_kopecks == 15000


def test_upsert_profile_creates_once_and_refreshes_names(session_factory):
    ledger = LedgerService(session_factory)

    created, was_created = ledger.upsert_profile(TelegramIdentity(telegram_id=77, first_name="Анна"))
    refreshed, was_created_again = ledger.upsert_profile(
        TelegramIdentity(telegram_id=77, first_name="Анна", username="anna")
    )

    assert was_created is True
    assert was_created_again is False
    assert refreshed.id == created.id
    assert ledger.get_profile_by_telegram(77).username == "anna"


def test_reconciliation_flags_drifted_balance(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    healthy = make_profile(balance_kopecks=5000)
    drifted = make_profile(balance_kopecks=5000)

    with session_factory() as db:
        db.execute(update(Profile).where(Profile.id == drifted.id).values(balance_kopecks=9000))
        db.commit()

    report = ledger.reconciliation_report()
    assert report["users_checked"] == 2
    assert report["inconsistent_count"] == 1
    assert report["inconsistent_users"][0]["user_id"] == drifted.id
    assert ledger.verify_chain(healthy.id)["consistent"] is True


def test_reconciliation_reports_sequence_gaps(session_factory, make_profile):
    ledger = LedgerService(session_factory)
    profile = make_profile(balance_kopecks=1000)

    with session_factory() as db:
        db.add(
            Transaction(
                user_id=profile.id,
                sequence=3,
                kind=DEPOSIT,
                amount_kopecks=500,
                balance_after_kopecks=1500,
                description="вставлено в обход ledger",
                payment_id="manual",
            )
        )
        db.execute(update(Profile).where(Profile.id == profile.id).values(balance_kopecks=1500))
        db.commit()

    report = ledger.verify_chain(profile.id)
    assert report["consistent"] is False
    assert report["breaks"][0]["sequence"] == 3
    assert report["breaks"][0]["expected_sequence"] == 2
