import base64
import hashlib
import hmac
import json
import logging
from typing import Dict, Optional
from urllib.parse import parse_qsl

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from pytoniq_core.boc.address import Address, AddressError

logger = logging.getLogger(__name__)


def verify_telegram_initdata(init_data: str, bot_token: str) -> Optional[Dict]:
    """Check Telegram WebApp initData. Returns the parsed fields or None."""
    if not init_data or not bot_token:
        return None
    try:
        parsed_data: Dict[str, str] = dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
    except ValueError:
        return None

    hash_value = parsed_data.pop("hash", None)
    if not hash_value:
        return None

    data_check_string = "\n".join(
        f"{k}={v}" for k, v in sorted(parsed_data.items())
    )

    secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    calculated_hash = hmac.new(
        secret_key, data_check_string.encode(), hashlib.sha256
    ).hexdigest()

    if not hmac.compare_digest(calculated_hash, hash_value):
        logger.warning("initData hash mismatch")
        return None
    return parsed_data


def telegram_user(init_data: str, bot_token: str) -> Optional[Dict]:
    """The `user` object from verified initData."""
    parsed = verify_telegram_initdata(init_data, bot_token)
    if not parsed or "user" not in parsed:
        return None
    try:
        return json.loads(parsed["user"])
    except ValueError:
        return None


def check_admin_token(token: Optional[str], admin_token: str) -> bool:
    # пустой ADMIN_TOKEN = админка выключена
    if not admin_token or not token:
        return False
    return hmac.compare_digest(token, admin_token)


# ======================
# TON Connect
# ======================
TON_PROOF_PREFIX = b"ton-proof-item-v2/"
TON_CONNECT_PREFIX = b"ton-connect"


def ton_proof_message(workchain: int, address_hash: bytes, domain: str, timestamp: int, payload: str) -> bytes:
    """Bytes the wallet signs for a ton_proof."""
    domain_bytes = domain.encode()
    message = b"".join([
        TON_PROOF_PREFIX,
        workchain.to_bytes(4, "big", signed=True),
        address_hash,
        len(domain_bytes).to_bytes(4, "little"),
        domain_bytes,
        int(timestamp).to_bytes(8, "little"),
        payload.encode(),
    ])
    signing_message = b"\xff\xff" + TON_CONNECT_PREFIX + hashlib.sha256(message).digest()
    return hashlib.sha256(signing_message).digest()


def verify_ton_proof(wallet_data: Dict) -> Optional[str]:
    """Check a TON Connect proof. Returns the non-bounceable address or None."""
    try:
        address = Address(wallet_data["address"])
        proof = wallet_data["proof"]
        domain = proof["domain"]
        if isinstance(domain, dict):
            domain = domain["value"]
        message = ton_proof_message(address.wc, address.hash_part, domain, proof["timestamp"], proof["payload"])
        verify_key = VerifyKey(bytes.fromhex(wallet_data["account"]["publicKey"]))
        verify_key.verify(message, base64.b64decode(proof["signature"]))
    except BadSignatureError:
        logger.warning("ton_proof signature mismatch for %s", wallet_data.get("address"))
        return None
    except (AddressError, KeyError, TypeError, ValueError, OverflowError) as e:
        logger.warning("Malformed ton_proof: %s", e)
        return None
    return address.to_str(is_user_friendly=True, is_bounceable=False)
