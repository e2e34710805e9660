"""Minimal async Telegram Bot API client (`sendMessage` only)."""

from dataclasses import dataclass

import httpx

from storepay.common.config import settings
from storepay.common.logging import logger


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error_code: int | None = None
    description: str = ""

    @property
    def blocked(self) -> bool:
        """The user blocked the bot; retrying will never succeed."""

        return self.error_code == 403

    @property
    def transient(self) -> bool:
        return not self.ok and not self.blocked


class TelegramBot:
    def __init__(self, token: str, api_url: str = "https://api.telegram.org", timeout: float = 10.0, transport=None):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send_message(
        self, chat_id: int, text: str, parse_mode: str | None = None, reply_markup: dict | None = None
    ) -> SendResult:
        body = {"chat_id": chat_id, "text": text}
        if parse_mode:
            body["parse_mode"] = parse_mode
        if reply_markup:
            body["reply_markup"] = reply_markup
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(f"{self.api_url}/bot{self.token}/sendMessage", json=body)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("telegram send failed chat_id=%s error=%s", chat_id, exc)
            return SendResult(ok=False, description=str(exc))
        if not isinstance(data, dict):
            return SendResult(ok=False, error_code=resp.status_code, description="unexpected response")
        if data.get("ok"):
            return SendResult(ok=True)
        return SendResult(
            ok=False,
            error_code=data.get("error_code", resp.status_code),
            description=data.get("description", ""),
        )


def build_bot(transport=None) -> TelegramBot:
    return TelegramBot(settings.telegram_bot_token, settings.telegram_api_url, transport=transport)
