import base64
import os
from datetime import datetime, timezone

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"

import pytest
from nacl.signing import SigningKey
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from auth import ton_proof_message
from content import default_document, parse_config
from database import create_tables
from models import Player, User
from state import DailyState, PlayerState
from store import get_state

# понедельник, 12:00 UTC
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def sessions():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def config():
    return parse_config(default_document(), version=1)


async def make_player(sessions, user_id, referrer_id=None, language="en", **fields):
    """Insert a user with a player document built from PlayerState fields."""
    fields.setdefault("last_login", NOW)
    fields.setdefault("daily", DailyState(last_reset=NOW))
    state = PlayerState(**fields)
    async with sessions() as session:
        async with session.begin():
            session.add(User(id=user_id, name=f"user{user_id}", language=language, referrer_id=referrer_id))
            session.add(Player(id=user_id, data=state.to_document()))
    return state


async def load(sessions, user_id):
    async with sessions() as session:
        return await get_state(session, user_id)


class FixedRandom:
    """random()-only source returning a constant."""

    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value

    def choice(self, seq):
        return seq[0]


def signed_wallet(signing_key=None, address_hash="ab" * 32, domain="game.example", payload="nonce"):
    """walletData of a TON Connect login signed by signing_key."""
    signing_key = signing_key or SigningKey.generate()
    timestamp = int(NOW.timestamp())
    message = ton_proof_message(0, bytes.fromhex(address_hash), domain, timestamp, payload)
    return {
        "address": f"0:{address_hash}",
        "account": {"publicKey": signing_key.verify_key.encode().hex()},
        "proof": {
            "timestamp": timestamp,
            "domain": {"lengthBytes": len(domain), "value": domain},
            "payload": payload,
            "signature": base64.b64encode(signing_key.sign(message).signature).decode(),
        },
    }
