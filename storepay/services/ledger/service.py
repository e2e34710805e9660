"""Ledger store: balance mutations and the append-only transaction log.

Every balance change goes through `post_entry`, which must run inside the
caller's transaction with the profile row locked (`lock_profile`). The lock
serializes one user's entries so `sequence` and `balance_after_kopecks` chain
without gaps; the unique constraints on `(user_id, sequence)` and
`(user_id, payment_id)` catch anything that slips past it.
"""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from storepay.common.errors import InsufficientBalance, ProfileNotFound, ValidationFailed
from storepay.common.logging import logger
from storepay.common.telegram_auth import TelegramIdentity
from storepay.services.ledger.models import (
    BONUS,
    TRANSACTION_KINDS,
    Profile,
    Transaction,
)


class LedgerService:
    """Owns profiles' balances and the per-user transaction chain."""

    def __init__(self, session_factory, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    # -- helpers used inside other services' atomic units -------------------

    def lock_profile(self, db, user_id: str) -> Profile:
        """`SELECT ... FOR UPDATE` the profile row and return a fresh copy."""

        profile = db.execute(
            select(Profile)
            .where(Profile.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if profile is None:
            raise ProfileNotFound()
        return profile

    def find_payment_entry(self, db, user_id: str, payment_id: str) -> Transaction | None:
        return db.execute(
            select(Transaction).where(Transaction.user_id == user_id, Transaction.payment_id == payment_id)
        ).scalar_one_or_none()

    def post_entry(
        self,
        db,
        profile: Profile,
        kind: str,
        amount_kopecks: int,
        description: str,
        payment_id: str | None = None,
        order_id: str | None = None,
    ) -> Transaction:
        """Apply a signed amount to a locked profile and append its ledger row."""

        if kind not in TRANSACTION_KINDS:
            raise ValueError(f"unknown transaction kind: {kind}")
        if amount_kopecks == 0:
            raise ValueError("ledger entries must move a non-zero amount")
        new_balance = profile.balance_kopecks + amount_kopecks
        if new_balance < 0:
            raise InsufficientBalance()

        profile.ledger_sequence += 1
        profile.balance_kopecks = new_balance
        entry = Transaction(
            user_id=profile.id,
            sequence=profile.ledger_sequence,
            kind=kind,
            amount_kopecks=amount_kopecks,
            balance_after_kopecks=new_balance,
            description=description,
            payment_id=payment_id,
            order_id=order_id,
        )
        db.add(entry)
        db.flush()
        return entry

    # -- profiles --------------------------------------------------------------

    def upsert_profile(self, identity: TelegramIdentity) -> tuple[Profile, bool]:
        """Create the profile on first verified launch, refresh names afterwards."""

        with self.session_factory() as db:
            profile = self._by_telegram_id(db, identity.telegram_id)
            created = profile is None
            if created:
                profile = Profile(telegram_id=identity.telegram_id, balance_kopecks=0, ledger_sequence=0)
                db.add(profile)
            profile.username = identity.username
            profile.first_name = identity.first_name
            profile.last_name = identity.last_name
            profile.language_code = identity.language_code or "ru"
            try:
                db.commit()
            except IntegrityError:
                # Two first launches raced on the unique telegram_id.
                db.rollback()
                profile = self._by_telegram_id(db, identity.telegram_id)
                created = False
            if created:
                logger.info("profile created user_id=%s telegram_id=%s", profile.id, identity.telegram_id)
            return profile, created

    def get_profile_by_telegram(self, telegram_id: int) -> Profile:
        with self.session_factory() as db:
            profile = self._by_telegram_id(db, telegram_id)
            if profile is None:
                raise ProfileNotFound()
            return profile

    def _by_telegram_id(self, db, telegram_id: int) -> Profile | None:
        return db.execute(select(Profile).where(Profile.telegram_id == telegram_id)).scalar_one_or_none()

    # -- standalone units ------------------------------------------------------

    def credit_bonus(
        self, user_id: str, amount_kopecks: int, description: str, idempotency_key: str
    ) -> tuple[Transaction, bool]:
        """Grant a bonus once per idempotency key. Returns `(entry, applied)`."""

        if amount_kopecks <= 0:
            raise ValidationFailed("Сумма бонуса должна быть положительной")
        payment_id = f"bonus:{idempotency_key}"
        with self.session_factory() as db:
            profile = self.lock_profile(db, user_id)
            existing = self.find_payment_entry(db, user_id, payment_id)
            if existing is not None:
                return existing, False
            entry = self.post_entry(db, profile, BONUS, amount_kopecks, description, payment_id=payment_id)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self.find_payment_entry(db, user_id, payment_id)
                if existing is None:
                    raise
                return existing, False
            logger.info("bonus credited user_id=%s amount_kopecks=%s", user_id, amount_kopecks)
            return entry, True

    def history(self, user_id: str, limit: int = 50) -> list[Transaction]:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(Transaction)
                    .where(Transaction.user_id == user_id)
                    .order_by(Transaction.sequence.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    # -- reconciliation ----------------------------------------------------------

    def verify_chain(self, user_id: str) -> dict:
        """Walk one user's entries in sequence order and report chain breaks."""

        with self.session_factory() as db:
            profile = db.get(Profile, user_id)
            if profile is None:
                raise ProfileNotFound()
            entries = (
                db.execute(select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.sequence))
                .scalars()
                .all()
            )
            return self._check_entries(profile, entries)

    def reconciliation_report(self, limit: int = 1000) -> dict:
        """Verify the chain for up to `limit` users that have ledger entries."""

        with self.session_factory() as db:
            user_ids = (
                db.execute(
                    select(Transaction.user_id)
                    .group_by(Transaction.user_id)
                    .order_by(func.min(Transaction.created_at))
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            broken = []
            for user_id in user_ids:
                profile = db.get(Profile, user_id)
                entries = (
                    db.execute(
                        select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.sequence)
                    )
                    .scalars()
                    .all()
                )
                result = self._check_entries(profile, entries)
                if not result["consistent"]:
                    broken.append(result)
            return {
                "users_checked": len(user_ids),
                "inconsistent_count": len(broken),
                "inconsistent_users": broken,
            }

    @staticmethod
    def _check_entries(profile: Profile, entries: list[Transaction]) -> dict:
        breaks = []
        running = 0
        expected_sequence = 1
        for entry in entries:
            running += entry.amount_kopecks
            if entry.sequence != expected_sequence or entry.balance_after_kopecks != running:
                breaks.append(
                    {
                        "transaction_id": entry.id,
                        "sequence": entry.sequence,
                        "expected_sequence": expected_sequence,
                        "balance_after_kopecks": entry.balance_after_kopecks,
                        "expected_balance_after_kopecks": running,
                    }
                )
                running = entry.balance_after_kopecks
            expected_sequence = entry.sequence + 1
        return {
            "user_id": profile.id,
            "entries": len(entries),
            "ledger_balance_kopecks": running,
            "stored_balance_kopecks": profile.balance_kopecks,
            "consistent": not breaks and running == profile.balance_kopecks,
            "breaks": breaks,
        }
