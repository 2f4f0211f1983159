import hashlib
import hmac
import json
from urllib.parse import urlencode

from nacl.signing import SigningKey
from pytoniq_core.boc.address import Address

from auth import check_admin_token, telegram_user, verify_telegram_initdata, verify_ton_proof

from conftest import signed_wallet

BOT_TOKEN = "12345:test-token"


def signed_initdata(fields, token=BOT_TOKEN):
    check = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
    secret = hmac.new(b"WebAppData", token.encode(), hashlib.sha256).digest()
    digest = hmac.new(secret, check.encode(), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": digest})


def test_valid_initdata_returns_fields():
    user = {"id": 42, "first_name": "Ann"}
    init_data = signed_initdata({"auth_date": "1700000000", "user": json.dumps(user)})
    parsed = verify_telegram_initdata(init_data, BOT_TOKEN)
    assert parsed["auth_date"] == "1700000000"
    assert "hash" not in parsed
    assert telegram_user(init_data, BOT_TOKEN) == user


def test_tampered_initdata_rejected():
    init_data = signed_initdata({"auth_date": "1700000000", "user": json.dumps({"id": 42})})
    tampered = init_data.replace("1700000000", "1700000001")
    assert verify_telegram_initdata(tampered, BOT_TOKEN) is None
    assert verify_telegram_initdata(init_data, "other:token") is None


def test_missing_hash_or_token():
    assert verify_telegram_initdata("auth_date=1", BOT_TOKEN) is None
    assert verify_telegram_initdata("", BOT_TOKEN) is None
    assert telegram_user("auth_date=1", "") is None


def test_admin_token():
    assert check_admin_token("secret", "secret")
    assert not check_admin_token("wrong", "secret")
    assert not check_admin_token(None, "secret")
    # no configured token disables admin access
    assert not check_admin_token("", "")


def test_ton_proof_returns_non_bounceable_address():
    wallet = signed_wallet()
    expected = Address(wallet["address"]).to_str(is_user_friendly=True, is_bounceable=False)
    assert verify_ton_proof(wallet) == expected


def test_ton_proof_rejects_foreign_key_and_tampering():
    wallet = signed_wallet()
    wallet["account"]["publicKey"] = SigningKey.generate().verify_key.encode().hex()
    assert verify_ton_proof(wallet) is None

    wallet = signed_wallet()
    wallet["proof"]["payload"] = "other-nonce"
    assert verify_ton_proof(wallet) is None


def test_ton_proof_rejects_malformed_data():
    wallet = signed_wallet()
    wallet["address"] = "not-an-address"
    assert verify_ton_proof(wallet) is None

    wallet = signed_wallet()
    wallet["proof"]["signature"] = "%%%"
    assert verify_ton_proof(wallet) is None
