# backend/models.py
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    Float,
    Date,
    DateTime,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

from database import Base

# JSONB на Postgres, обычный JSON на SQLite (тесты)
Document = JSON().with_variant(JSONB(), "postgresql")


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class User(Base):
    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True)  # Telegram ID
    name = Column(String, nullable=True)
    language = Column(String(10), default="en")
    referrer_id = Column(BigInteger, nullable=True, index=True)
    wallet_address = Column(String, unique=True, nullable=True)  # TON, non-bounceable
    country = Column(String(2), nullable=True)
    last_seen = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Player(Base):
    __tablename__ = "players"

    id = Column(BigInteger, primary_key=True)
    data = Column(Document, nullable=False)  # PlayerState document (state.py)


class GameConfigRow(Base):
    __tablename__ = "game_config"

    key = Column(String, primary_key=True)
    value = Column(Document, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class DailyEvent(Base):
    __tablename__ = "daily_events"

    event_date = Column(Date, primary_key=True)
    combo_ids = Column(Document, nullable=True)
    cipher_word = Column(String, nullable=True)
    combo_reward = Column(BigInteger, default=5000000)
    cipher_reward = Column(BigInteger, default=1000000)


class Cell(Base):
    __tablename__ = "cells"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    owner_id = Column(BigInteger, nullable=False)
    invite_code = Column(String(8), unique=True, nullable=False)
    balance = Column(Float, default=0.0)
    ticket_count = Column(Integer, default=0)
    last_profit_update = Column(UTCDateTime, default=utcnow)
    created_at = Column(UTCDateTime, default=utcnow)


class CellMember(Base):
    __tablename__ = "cell_members"

    player_id = Column(BigInteger, primary_key=True)  # игрок состоит максимум в одной ячейке
    cell_id = Column(Integer, ForeignKey("cells.id", ondelete="CASCADE"), index=True, nullable=False)
    joined_at = Column(UTCDateTime, default=utcnow)


class Informant(Base):
    __tablename__ = "informants"

    id = Column(Integer, primary_key=True)
    cell_id = Column(Integer, ForeignKey("cells.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    dossier = Column(Text, nullable=False)
    specialization = Column(String(50), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class CellBattle(Base):
    __tablename__ = "cell_battles"

    id = Column(Integer, primary_key=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    winner_details = Column(Document, nullable=True)
    rewards_distributed = Column(Boolean, default=False, nullable=False)


class CellBattleParticipant(Base):
    __tablename__ = "cell_battle_participants"
    __table_args__ = (UniqueConstraint("battle_id", "cell_id"),)

    id = Column(Integer, primary_key=True)
    battle_id = Column(Integer, ForeignKey("cell_battles.id", ondelete="CASCADE"), index=True, nullable=False)
    cell_id = Column(Integer, ForeignKey("cells.id", ondelete="CASCADE"), nullable=False)
    score = Column(Float, default=0.0, nullable=False)
    joined_at = Column(UTCDateTime, default=utcnow)


class MarketListing(Base):
    __tablename__ = "market_listings"

    id = Column(Integer, primary_key=True)
    skin_id = Column(String, nullable=False, index=True)
    owner_id = Column(BigInteger, nullable=False, index=True)
    price = Column(Float, nullable=False)  # marketCredits
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class PropagationEvent(Base):
    __tablename__ = "propagation_events"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)  # referral / cell_bonus
    target_id = Column(BigInteger, nullable=False)
    status = Column(String, default="pending", index=True)  # pending / failed
    attempts = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class ProcessedPayment(Base):
    __tablename__ = "processed_payments"

    charge_id = Column(String, primary_key=True)
    user_id = Column(BigInteger, nullable=False)
    payload = Column(String, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class SkinSupply(Base):
    __tablename__ = "skin_supply"

    skin_id = Column(String, primary_key=True)
    circulating = Column(Integer, nullable=False, default=0)  # коллекции + активные лоты
