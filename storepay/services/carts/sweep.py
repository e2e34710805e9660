"""Abandoned-cart reminder sweep.

Selects carts idle for longer than the reminder delay that were not reminded
yet, claims each one and sends one Telegram message. The claim is a
conditional `UPDATE` on the `content_version` read at selection time, so
concurrent sweeps (another replica, a manual trigger) send at most one
reminder per cart contents. A transient send failure releases the claim. A
cart edited while its reminder was in flight is re-armed by the sync and
stays eligible for the new contents.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update

from storepay.common.config import settings
from storepay.common.logging import logger
from storepay.common.metrics import cart_reminders_total
from storepay.common.money import format_rubles
from storepay.common.telegram_bot import TelegramBot
from storepay.services.carts.models import CartSession
from storepay.services.ledger.models import Profile


@dataclass
class SweepReport:
    candidates: int = 0
    sent: int = 0
    blocked: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "candidates": self.candidates,
            "sent": self.sent,
            "blocked": self.blocked,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _line_total(item: dict) -> str:
    try:
        price = Decimal(str(item.get("price", 0)))
        quantity = int(item.get("quantity", 1))
    except (InvalidOperation, TypeError, ValueError):
        return "?₽"
    return f"{(price * quantity).quantize(Decimal('1'))}₽"


def compose_reminder(first_name: str | None, items: list[dict], total_kopecks: int, max_lines: int = 5) -> str:
    """Markdown reminder text listing up to `max_lines` items."""

    lines = []
    for item in items[:max_lines]:
        quantity = item.get("quantity", 1)
        qty = f" × {quantity}" if isinstance(quantity, int) and quantity > 1 else ""
        lines.append(f"• {item.get('productName', 'Товар')}{qty} — {_line_total(item)}")
    more = f"\n_...и ещё {len(items) - max_lines} товар(а)_" if len(items) > max_lines else ""
    return (
        f"🛒 *{first_name or 'Покупатель'}, вы забыли товары в корзине!*\n\n"
        f"{chr(10).join(lines)}{more}\n\n"
        f"💰 *Итого: {format_rubles(total_kopecks)}*\n\n"
        "Товары ждут вас — завершите покупку! 🔥"
    )


class AbandonmentSweep:
    """Periodic reminder job over `cart_sessions`."""

    def __init__(
        self,
        session_factory,
        bot: TelegramBot,
        delay_minutes: int | None = None,
        send_delay_seconds: float | None = None,
        max_lines: int | None = None,
        cart_url: str | None = None,
        service_name: str = "carts",
    ) -> None:
        self.session_factory = session_factory
        self.bot = bot
        self.delay_minutes = settings.reminder_delay_minutes if delay_minutes is None else delay_minutes
        self.send_delay_seconds = (
            settings.reminder_send_delay_seconds if send_delay_seconds is None else send_delay_seconds
        )
        self.max_lines = max_lines or settings.reminder_max_lines
        self.cart_url = cart_url or settings.storefront_cart_url
        self.service_name = service_name
        self._running = asyncio.Lock()

    def candidates(self, now: datetime | None = None) -> list[tuple[CartSession, Profile]]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=self.delay_minutes)
        with self.session_factory() as db:
            rows = db.execute(
                select(CartSession, Profile)
                .join(Profile, Profile.id == CartSession.user_id)
                .where(
                    CartSession.reminder_sent.is_(False),
                    CartSession.updated_at < cutoff,
                    Profile.is_banned.is_(False),
                )
                .order_by(CartSession.updated_at)
            ).all()
            return [(cart, profile) for cart, profile in rows]

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """One pass over eligible carts; overlapping calls in this process run one after another."""

        async with self._running:
            return await self._sweep(now)

    async def _sweep(self, now: datetime | None) -> SweepReport:
        report = SweepReport()
        rows = self.candidates(now)
        report.candidates = len(rows)
        for index, (cart, profile) in enumerate(rows):
            if not cart.items:
                report.skipped += 1
                continue
            if index and self.send_delay_seconds:
                await asyncio.sleep(self.send_delay_seconds)
            try:
                await self._remind(cart, profile, report)
            except Exception as exc:
                # One broken cart must not stop the batch.
                logger.exception("cart reminder failed cart_id=%s", cart.id)
                cart_reminders_total.labels(service=self.service_name, outcome="error").inc()
                report.failed += 1
                report.errors.append(f"{cart.id}: {exc}")
        logger.info(
            "cart sweep finished candidates=%s sent=%s blocked=%s failed=%s skipped=%s",
            report.candidates,
            report.sent,
            report.blocked,
            report.failed,
            report.skipped,
        )
        return report

    async def _remind(self, cart: CartSession, profile: Profile, report: SweepReport) -> None:
        if not self._claim(cart):
            logger.info("cart reminder already claimed or cart changed cart_id=%s", cart.id)
            report.skipped += 1
            return
        text = compose_reminder(profile.first_name, cart.items, cart.total_kopecks, self.max_lines)
        try:
            result = await self.bot.send_message(
                profile.telegram_id,
                text,
                parse_mode="Markdown",
                reply_markup={"inline_keyboard": [[{"text": "🛒 Перейти к корзине", "url": self.cart_url}]]},
            )
        except Exception:
            self._release(cart)
            raise
        if result.ok:
            report.sent += 1
            outcome = "sent"
        elif result.blocked:
            report.blocked += 1
            outcome = "blocked"
        else:
            logger.warning(
                "cart reminder not delivered telegram_id=%s error_code=%s description=%s",
                profile.telegram_id,
                result.error_code,
                result.description,
            )
            self._release(cart)
            report.failed += 1
            outcome = "failed"
        cart_reminders_total.labels(service=self.service_name, outcome=outcome).inc()

    def _claim(self, cart: CartSession) -> bool:
        """Mark the cart reminded for the version read at selection; False if another sweep got there first."""

        with self.session_factory() as db:
            result = db.execute(
                update(CartSession)
                .where(
                    CartSession.id == cart.id,
                    CartSession.content_version == cart.content_version,
                    CartSession.reminder_sent.is_(False),
                )
                .values(reminder_sent=True, reminder_sent_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return result.rowcount == 1

    def _release(self, cart: CartSession) -> None:
        # A cart edited since the claim was already re-armed by the sync.
        with self.session_factory() as db:
            db.execute(
                update(CartSession)
                .where(
                    CartSession.id == cart.id,
                    CartSession.content_version == cart.content_version,
                    CartSession.reminder_sent.is_(True),
                )
                .values(reminder_sent=False, reminder_sent_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or settings.reminder_interval_seconds
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("cart sweep iteration failed")
            await asyncio.sleep(interval)
