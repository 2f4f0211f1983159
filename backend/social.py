# backend/social.py
# Referral profit sharing and cells (groups): membership, bank, informants.
import logging
import math
import secrets
import string
from datetime import datetime, timezone

from sqlalchemy import delete, func, select

import constants as C
import ledger
import outbox
from errors import ConcurrencyConflict, InsufficientFundsError, NotFoundError, ValidationError
from models import Cell, CellMember, Informant, Player, User
from state import PlayerState
from store import (
    get_state, load_state, lock_cell, lock_player, lock_players, locked_player,
    save_state, transaction,
)

logger = logging.getLogger(__name__)

INVITE_ALPHABET = string.ascii_uppercase + string.digits


# ======================
# Referrals
# ======================
async def apply_referral_bonus(session, referrer_id):
    """One-time join bonus for the referrer. Missing referrer is ignored."""
    rows = await lock_players(session, [referrer_id])
    row = rows.get(referrer_id)
    if row is None:
        return None
    state = load_state(row)
    ledger.credit(state, C.REFERRAL_BONUS)
    state.referrals += 1
    save_state(row, state)
    return state


async def recalculate_referral_in_session(session, referrer_id, config=None):
    rows = await lock_players(session, [referrer_id])
    row = rows.get(referrer_id)
    if row is None:
        return None
    state = load_state(row)

    referral_ids = select(User.id).where(User.referrer_id == referrer_id)
    documents = await session.execute(select(Player.data).where(Player.id.in_(referral_ids)))
    total_base = 0.0
    for (document,) in documents:
        total_base += PlayerState.from_document(document).profit.own

    state.profit.referral = math.floor(total_base * C.REFERRAL_PROFIT_SHARE)
    save_state(row, state)
    return state


async def recalculate_referral_profit(sessions, referrer_id, config=None):
    """Set the referrer's referral component from its direct referrals' own profit."""
    if not referrer_id:
        return None
    async with transaction(sessions) as session:
        return await recalculate_referral_in_session(session, referrer_id, config)


# ======================
# Cell bonus
# ======================
async def informant_count(session, cell_id):
    if cell_id is None:
        return 0
    result = await session.execute(select(func.count()).select_from(Informant).where(Informant.cell_id == cell_id))
    return result.scalar_one()


def cell_bonus_for(state, informants, config):
    return math.floor(state.profit.own * informants * config.informant_profit_bonus)


async def refresh_cell_bonus(session, state, config):
    """Recompute the cell component of an already locked player."""
    informants = await informant_count(session, state.cell_id)
    state.profit.cell_bonus = cell_bonus_for(state, informants, config)
    return state


async def member_ids(session, cell_id):
    rows = await session.execute(
        select(CellMember.player_id).where(CellMember.cell_id == cell_id).order_by(CellMember.joined_at, CellMember.player_id)
    )
    return [player_id for (player_id,) in rows]


async def recalculate_cell_in_session(session, cell_id, config):
    informants = await informant_count(session, cell_id)
    rows = await lock_players(session, await member_ids(session, cell_id))
    for row in rows.values():
        state = load_state(row)
        state.profit.cell_bonus = cell_bonus_for(state, informants, config)
        save_state(row, state)
    return len(rows)


async def recalculate_cell_bonuses(sessions, cell_id, config):
    async with transaction(sessions) as session:
        return await recalculate_cell_in_session(session, cell_id, config)


PROPAGATION_HANDLERS = {
    outbox.REFERRAL: recalculate_referral_in_session,
    outbox.CELL_BONUS: recalculate_cell_in_session,
}


async def propagate(sessions, config):
    """Best-effort drain after a commit; the caller's result stands either way."""
    try:
        return await outbox.drain(sessions, PROPAGATION_HANDLERS, config)
    except Exception:
        logger.exception("Propagation sweep failed")
        return 0


async def emit_referral_update(session, user_id):
    user = await session.get(User, user_id)
    if user and user.referrer_id:
        outbox.emit(session, outbox.REFERRAL, user.referrer_id)


# ======================
# Cells
# ======================
def accrue_bank(cell, total_profit_per_hour, share, now=None):
    """Pull-based bank accrual since last_profit_update. Returns the credited amount."""
    now = now or datetime.now(timezone.utc)
    last = cell.last_profit_update or now
    elapsed = max(0.0, (now - last).total_seconds())
    earned = total_profit_per_hour * share * elapsed / 3600
    cell.balance = float(cell.balance or 0) + earned
    cell.last_profit_update = now
    return earned


async def _members_profit(session, cell_id):
    rows = await session.execute(
        select(Player.data).join(CellMember, CellMember.player_id == Player.id).where(CellMember.cell_id == cell_id)
    )
    return sum(PlayerState.from_document(document).profit.total for (document,) in rows)


async def _accrue_locked(session, cell, config, now=None):
    total = await _members_profit(session, cell.id)
    return accrue_bank(cell, total, config.cell_bank_profit_share, now)


async def _new_invite_code(session):
    while True:
        code = "".join(secrets.choice(INVITE_ALPHABET) for _ in range(C.INVITE_CODE_LENGTH))
        taken = await session.execute(select(Cell.id).where(Cell.invite_code == code))
        if taken.scalar_one_or_none() is None:
            return code


async def cell_view(session, cell):
    members = await session.execute(
        select(Player.id, Player.data, User.name)
        .join(CellMember, CellMember.player_id == Player.id)
        .outerjoin(User, User.id == Player.id)
        .where(CellMember.cell_id == cell.id)
        .order_by(CellMember.joined_at, Player.id)
    )
    member_list = [
        {"id": player_id, "name": name, "profitPerHour": PlayerState.from_document(document).profit.total}
        for player_id, document, name in members
    ]
    informants = await session.execute(select(Informant).where(Informant.cell_id == cell.id).order_by(Informant.id))
    return {
        "id": cell.id,
        "name": cell.name,
        "ownerId": cell.owner_id,
        "inviteCode": cell.invite_code,
        "balance": cell.balance,
        "ticketCount": cell.ticket_count,
        "members": member_list,
        "totalProfitPerHour": sum(m["profitPerHour"] for m in member_list),
        "informants": [
            {"id": i.id, "name": i.name, "dossier": i.dossier, "specialization": i.specialization}
            for i in informants.scalars()
        ],
    }


async def create_cell(sessions, user_id, name, config, now=None):
    name = (name or "").strip()
    if not name:
        raise ValidationError("Cell name is required.")
    async with locked_player(sessions, user_id) as (session, state):
        if state.cell_id is not None:
            raise ValidationError("You are already in a cell.")
        ledger.debit(state, config.cell_creation_cost)

        cell = Cell(
            name=name,
            owner_id=user_id,
            invite_code=await _new_invite_code(session),
            balance=0.0,
            ticket_count=0,
            last_profit_update=now or datetime.now(timezone.utc),
        )
        session.add(cell)
        await session.flush()
        session.add(CellMember(player_id=user_id, cell_id=cell.id, joined_at=now or datetime.now(timezone.utc)))
        state.cell_id = cell.id
        await refresh_cell_bonus(session, state, config)
        await session.flush()
        view = await cell_view(session, cell)
    logger.info("Cell %s created by %s", cell.id, user_id)
    return state, view


async def join_cell(sessions, user_id, invite_code, config, now=None):
    code = (invite_code or "").strip().upper()
    async with transaction(sessions) as session:
        found = await session.execute(select(Cell.id).where(Cell.invite_code == code))
        cell_id = found.scalar_one_or_none()
        if cell_id is None:
            raise NotFoundError("Cell not found.")
        cell = await lock_cell(session, cell_id)
        if cell is None:
            raise NotFoundError("Cell not found.")
        row = await lock_player(session, user_id)
        state = load_state(row)
        if state.cell_id is not None:
            raise ValidationError("You are already in a cell.")
        if len(await member_ids(session, cell.id)) >= config.cell_max_members:
            raise ValidationError("Cell is full.")

        # bank earns on the old roster up to the moment of joining
        await _accrue_locked(session, cell, config, now)
        session.add(CellMember(player_id=user_id, cell_id=cell.id, joined_at=now or datetime.now(timezone.utc)))
        state.cell_id = cell.id
        await refresh_cell_bonus(session, state, config)
        save_state(row, state)
        await session.flush()
        view = await cell_view(session, cell)
    return state, view


async def leave_cell(sessions, user_id, config, now=None):
    async with transaction(sessions) as session:
        current = await get_state(session, user_id)
        if current is None:
            raise NotFoundError("Player not found")
        if current.cell_id is None:
            raise ValidationError("You are not in a cell.")
        cell = await lock_cell(session, current.cell_id)
        row = await lock_player(session, user_id)
        state = load_state(row)
        if state.cell_id != current.cell_id:
            raise ConcurrencyConflict("Cell membership changed, please retry")

        await detach_member(session, cell, user_id, config, now)
        state.cell_id = None
        state.profit.cell_bonus = 0
        save_state(row, state)
    return state


async def detach_member(session, cell, user_id, config, now=None):
    """Remove a member from a locked cell. An empty cell is disbanded, an
    ownerless one passes to the longest-standing member."""
    if cell is not None:
        await _accrue_locked(session, cell, config, now)
    await session.execute(delete(CellMember).where(CellMember.player_id == user_id))
    if cell is None:
        return
    remaining = await member_ids(session, cell.id)
    if not remaining:
        await session.execute(delete(Informant).where(Informant.cell_id == cell.id))
        await session.delete(cell)
        logger.info("Cell %s disbanded", cell.id)
    elif cell.owner_id == user_id:
        cell.owner_id = remaining[0]


async def get_cell(sessions, cell_id, config, now=None):
    """Cell with its bank brought up to date."""
    async with transaction(sessions) as session:
        cell = await lock_cell(session, cell_id)
        if cell is None:
            raise NotFoundError("Cell not found.")
        await _accrue_locked(session, cell, config, now)
        return await cell_view(session, cell)


async def _member_cell(session, user_id):
    state = await get_state(session, user_id)
    if state is None:
        raise NotFoundError("Player not found")
    if state.cell_id is None:
        raise ValidationError("You are not in a cell.")
    cell = await lock_cell(session, state.cell_id)
    if cell is None:
        raise NotFoundError("Cell not found.")
    return cell


async def buy_battle_ticket(sessions, user_id, config, now=None):
    """Pay one battle ticket out of the cell bank."""
    async with transaction(sessions) as session:
        cell = await _member_cell(session, user_id)
        await _accrue_locked(session, cell, config, now)
        cost = config.cell_battle_ticket_cost
        if cell.balance < cost:
            raise InsufficientFundsError("Not enough funds in the cell bank.")
        cell.balance -= cost
        cell.ticket_count = (cell.ticket_count or 0) + 1
        return await cell_view(session, cell)


async def recruit_informant(sessions, user_id, informant_data, config, now=None):
    """Buy an informant from the cell bank; every member's bonus is recalculated."""
    for field in ("name", "dossier", "specialization"):
        if not (informant_data or {}).get(field):
            raise ValidationError(f"Informant {field} is required.")
    async with transaction(sessions) as session:
        cell = await _member_cell(session, user_id)
        await _accrue_locked(session, cell, config, now)
        cost = config.informant_recruit_cost
        if cell.balance < cost:
            raise InsufficientFundsError("Not enough funds in the cell bank.")
        cell.balance -= cost
        informant = Informant(
            cell_id=cell.id,
            name=informant_data["name"],
            dossier=informant_data["dossier"],
            specialization=informant_data["specialization"],
        )
        session.add(informant)
        outbox.emit(session, outbox.CELL_BONUS, cell.id)
        await session.flush()
        view = await cell_view(session, cell)
    await propagate(sessions, config)
    return view
