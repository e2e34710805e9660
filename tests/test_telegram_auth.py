"""initData verification: valid, tampered, expired and malformed launches."""

import time
from urllib.parse import parse_qsl, urlencode

from conftest import BOT_TOKEN, make_init_data
from storepay.common.telegram_auth import sign_init_data, verify_init_data


def test_valid_init_data_yields_identity():
    identity = verify_init_data(make_init_data(424242, username="shopper"), BOT_TOKEN)

    assert identity is not None
    assert identity.telegram_id == 424242
    assert identity.username == "shopper"
    assert identity.first_name == "Иван"


def test_wrong_bot_token_fails_closed():
    assert verify_init_data(make_init_data(1, bot_token="other:token"), BOT_TOKEN) is None


def test_tampered_user_field_is_rejected():
    fields = dict(parse_qsl(make_init_data(1)))
    fields["user"] = fields["user"].replace('"id":1', '"id":2')

    assert verify_init_data(urlencode(fields), BOT_TOKEN) is None


def test_expired_auth_date_is_rejected():
    stale = int(time.time()) - 3601

    assert verify_init_data(make_init_data(1, auth_date=stale), BOT_TOKEN) is None


def test_fresh_enough_auth_date_is_accepted():
    now = time.time()
    init_data = make_init_data(7, auth_date=int(now) - 3500)

    assert verify_init_data(init_data, BOT_TOKEN, now=now) is not None


def test_missing_hash_and_garbage_never_raise():
    fields = dict(parse_qsl(make_init_data(1)))
    fields.pop("hash")

    assert verify_init_data(urlencode(fields), BOT_TOKEN) is None
    assert verify_init_data("%%%not-a-query", BOT_TOKEN) is None
    assert verify_init_data("", BOT_TOKEN) is None


def test_missing_user_id_is_a_failure():
    fields = {"auth_date": str(int(time.time())), "user": '{"first_name":"Без id"}'}
    fields["hash"] = sign_init_data(fields, BOT_TOKEN)

    assert verify_init_data(urlencode(fields), BOT_TOKEN) is None
