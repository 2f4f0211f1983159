# backend/store.py
# Transaction and row-locking primitives shared by every mutating operation.
#
# Lock order (deadlock avoidance): listing -> battle -> cell -> player -> skin
# supply rows, ascending id inside one entity type. Multi-entity operations must
# take their locks through the helpers below in that order.
import logging
from contextlib import asynccontextmanager

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError

from errors import ConcurrencyConflict, NotFoundError
from models import Cell, MarketListing, Player, SkinSupply, User
from state import PlayerState

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}


def _sqlstate(error):
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


@asynccontextmanager
async def transaction(sessions):
    """Begin, yield the session, commit. Any exception rolls back and re-raises."""
    async with sessions() as session:
        try:
            async with session.begin():
                yield session
        except DBAPIError as e:
            if _sqlstate(e) in CONFLICT_SQLSTATES:
                logger.warning("Transaction rolled back on lock conflict: %s", e.orig)
                raise ConcurrencyConflict("Concurrent update, please retry") from e
            raise


# ======================
# Locks
# ======================
# populate_existing: a row read earlier in the same session is refreshed once locked
async def lock_listing(session, listing_id, active_only=True):
    stmt = select(MarketListing).where(MarketListing.id == listing_id).with_for_update().execution_options(populate_existing=True)
    if active_only:
        stmt = stmt.where(MarketListing.is_active.is_(True))
    return (await session.execute(stmt)).scalar_one_or_none()


async def lock_cell(session, cell_id):
    stmt = select(Cell).where(Cell.id == cell_id).with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def lock_players(session, player_ids):
    """Lock player rows in ascending id order. Returns {id: Player}."""
    ids = sorted(set(player_ids))
    if not ids:
        return {}
    stmt = select(Player).where(Player.id.in_(ids)).order_by(Player.id).with_for_update().execution_options(populate_existing=True)
    rows = (await session.execute(stmt)).scalars().all()
    return {row.id: row for row in rows}


async def lock_player(session, player_id):
    rows = await lock_players(session, [player_id])
    row = rows.get(player_id)
    if row is None:
        raise NotFoundError("Player not found")
    return row


# ======================
# Documents
# ======================
def load_state(row):
    return PlayerState.from_document(row.data)


def save_state(row, state):
    row.data = state.to_document()


@asynccontextmanager
async def locked_player(sessions, player_id):
    """Transaction holding the player row lock; the state is written back on success."""
    async with transaction(sessions) as session:
        row = await lock_player(session, player_id)
        state = load_state(row)
        yield session, state
        save_state(row, state)


async def get_state(session, player_id):
    row = await session.get(Player, player_id)
    return load_state(row) if row else None


async def get_user(session, user_id):
    return await session.get(User, user_id)


async def user_language(session, user_id):
    user = await session.get(User, user_id)
    return (user.language if user else None) or "en"


async def count_skin_holders(session, skin_ids):
    """Circulating units per skin: unlocked sets plus skins sitting on the market."""
    counts = {skin_id: 0 for skin_id in skin_ids}
    if not counts:
        return counts
    rows = await session.execute(select(Player.data))
    for (document,) in rows:
        for skin_id in (document or {}).get("unlockedSkins") or []:
            if skin_id in counts:
                counts[skin_id] += 1
    listed = await session.execute(
        select(MarketListing.skin_id, func.count())
        .where(MarketListing.is_active.is_(True), MarketListing.skin_id.in_(list(counts)))
        .group_by(MarketListing.skin_id)
    )
    for skin_id, count in listed:
        counts[skin_id] += count
    return counts


# ======================
# Skin supply
# ======================
async def _select_supply(session, skin_ids):
    stmt = (
        select(SkinSupply)
        .where(SkinSupply.skin_id.in_(skin_ids))
        .order_by(SkinSupply.skin_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {row.skin_id: row for row in (await session.execute(stmt)).scalars()}


async def lock_skin_supply(session, skin_ids):
    """Lock supply counters in skin id order. Returns {skin_id: SkinSupply}.

    A missing counter is seeded once from the holder count.
    """
    ids = sorted(set(skin_ids))
    if not ids:
        return {}
    rows = await _select_supply(session, ids)
    missing = [skin_id for skin_id in ids if skin_id not in rows]
    if missing:
        counts = await count_skin_holders(session, missing)
        insert = postgresql.insert if session.get_bind().dialect.name == "postgresql" else sqlite.insert
        await session.execute(
            insert(SkinSupply)
            .values([{"skin_id": skin_id, "circulating": counts[skin_id]} for skin_id in missing])
            .on_conflict_do_nothing(index_elements=["skin_id"])
        )
        rows = await _select_supply(session, ids)
    return rows


async def release_skins(session, config, skin_ids):
    """Take skins out of circulation (deleted or wiped collections)."""
    capped = []
    for skin_id in skin_ids:
        skin = config.find_skin(skin_id)
        if skin is not None and skin.max_supply is not None:
            capped.append(skin_id)
    rows = await lock_skin_supply(session, capped)
    for skin_id in capped:
        rows[skin_id].circulating = max(0, rows[skin_id].circulating - 1)
