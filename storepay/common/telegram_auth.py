"""Telegram Mini App `initData` verification.

The Mini App launch payload is a query string signed by Telegram:

    secret = HMAC_SHA256(key="WebAppData", msg=bot_token)
    hash   = hex(HMAC_SHA256(key=secret, msg=data_check_string))

where `data_check_string` is every field except `hash`, sorted by key and
joined as `key=value` lines. Verification fails closed: any malformed,
expired, or mismatching payload yields `None`.
"""

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from urllib.parse import parse_qsl

from storepay.common.logging import logger

WEB_APP_DATA_KEY = b"WebAppData"
DEFAULT_MAX_AGE_SECONDS = 3600


@dataclass(frozen=True)
class TelegramIdentity:
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    language_code: str | None = None
    auth_date: int = 0


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(WEB_APP_DATA_KEY, bot_token.encode(), hashlib.sha256).digest()


def data_check_string(fields: dict[str, str]) -> str:
    return "\n".join(f"{key}={value}" for key, value in sorted(fields.items()))


def sign_init_data(fields: dict[str, str], bot_token: str) -> str:
    """Compute the `hash` Telegram would attach to `fields`."""

    return hmac.new(_secret_key(bot_token), data_check_string(fields).encode(), hashlib.sha256).hexdigest()


def verify_init_data(
    init_data: str,
    bot_token: str,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> TelegramIdentity | None:
    """Return the verified identity carried by `init_data`, or `None`."""

    if not init_data or not bot_token:
        return None
    try:
        fields = dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
        received_hash = fields.pop("hash", "")
        if not received_hash:
            return None
        auth_date = int(fields.get("auth_date", ""))
        current = time.time() if now is None else now
        if current - auth_date > max_age_seconds:
            logger.info("init_data rejected reason=expired auth_date=%s", auth_date)
            return None

        expected = sign_init_data(fields, bot_token)
        if not hmac.compare_digest(expected, received_hash.lower()):
            logger.info("init_data rejected reason=signature_mismatch")
            return None

        user = json.loads(fields.get("user") or "{}")
        telegram_id = user.get("id") if isinstance(user, dict) else None
        if not isinstance(telegram_id, int) or isinstance(telegram_id, bool):
            return None
        return TelegramIdentity(
            telegram_id=telegram_id,
            username=user.get("username"),
            first_name=user.get("first_name"),
            last_name=user.get("last_name"),
            language_code=user.get("language_code"),
            auth_date=auth_date,
        )
    except (ValueError, TypeError) as exc:
        # json.JSONDecodeError is a ValueError; parse_qsl raises ValueError in strict mode.
        logger.info("init_data rejected reason=malformed error=%s", exc)
        return None
