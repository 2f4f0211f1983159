# backend/battles.py
# Weekly cell battles: scheduling sweep, tap scoring and one-time settlement.
import logging
import math
from datetime import timedelta, timezone

from sqlalchemy import select, update

import ledger
from clock import utcnow
from errors import NotFoundError, ValidationError
from models import Cell, CellBattle, CellBattleParticipant
from social import member_ids
from store import get_state, load_state, lock_cell, lock_players, save_state, transaction

logger = logging.getLogger(__name__)

MIN_GAP = timedelta(hours=24)


def _active_filter(now):
    return (
        CellBattle.start_time <= now,
        CellBattle.end_time > now,
        CellBattle.rewards_distributed.is_(False),
    )


async def active_battle(session, now=None, lock=False):
    stmt = select(CellBattle).where(*_active_filter(now or utcnow())).order_by(CellBattle.id).limit(1)
    if lock:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


def scheduled_start(schedule, now):
    """Start of this week's battle if today is battle day and the hour has passed.

    dayOfWeek counts from Sunday = 0.
    """
    if schedule.frequency != "weekly":
        return None
    now = now.astimezone(timezone.utc)
    if (now.weekday() + 1) % 7 != schedule.day_of_week:
        return None
    if now.hour < schedule.start_hour_utc:
        return None
    return now.replace(hour=schedule.start_hour_utc, minute=0, second=0, microsecond=0)


def battle_view(battle):
    return {
        "id": battle.id,
        "startTime": battle.start_time,
        "endTime": battle.end_time,
        "winnerDetails": battle.winner_details,
        "rewardsDistributed": battle.rewards_distributed,
    }


# ======================
# Sweep
# ======================
async def tick(sessions, config, now=None):
    """Settle overdue battles, then open the scheduled one. Safe to call repeatedly."""
    now = now or utcnow()
    async with sessions() as session:
        overdue = await session.execute(
            select(CellBattle.id)
            .where(CellBattle.end_time <= now, CellBattle.rewards_distributed.is_(False))
            .order_by(CellBattle.id)
        )
        overdue_ids = [battle_id for (battle_id,) in overdue]

    for battle_id in overdue_ids:
        await settle_battle(sessions, battle_id, config)

    start = scheduled_start(config.battle_schedule, now)
    if start is None:
        return None
    end = start + timedelta(hours=config.battle_schedule.duration_hours)
    if end <= now:
        return None

    async with transaction(sessions) as session:
        if await active_battle(session, now) is not None:
            return None
        last = (await session.execute(
            select(CellBattle).order_by(CellBattle.end_time.desc()).limit(1)
        )).scalar_one_or_none()
        if last is not None and (last.start_time == start or now - last.end_time < MIN_GAP):
            return None
        battle = CellBattle(start_time=start, end_time=end, rewards_distributed=False)
        session.add(battle)
        await session.flush()
        logger.info("Cell battle %s scheduled: %s - %s", battle.id, start, end)
        return battle_view(battle)


async def settle_battle(sessions, battle_id, config):
    """Distribute prizes once. A settled battle is returned untouched."""
    async with transaction(sessions) as session:
        stmt = select(CellBattle).where(CellBattle.id == battle_id).with_for_update()
        battle = (await session.execute(stmt)).scalar_one_or_none()
        if battle is None:
            raise NotFoundError("Battle not found")
        if battle.rewards_distributed:
            return battle_view(battle)

        participants = (await session.execute(
            select(CellBattleParticipant)
            .where(CellBattleParticipant.battle_id == battle_id)
            .order_by(CellBattleParticipant.score.desc(), CellBattleParticipant.cell_id)
        )).scalars().all()

        # cell rows first, then every member row in one ascending pass
        prizes = {}
        rosters = {}
        for cell_id in sorted(p.cell_id for p in participants):
            await lock_cell(session, cell_id)
        for place, participant in enumerate(participants, start=1):
            prizes[participant.cell_id] = config.battle_rewards.for_place(place)
            rosters[participant.cell_id] = await member_ids(session, participant.cell_id)
        rows = await lock_players(session, [pid for roster in rosters.values() for pid in roster])

        for cell_id, roster in rosters.items():
            if not roster:
                continue
            share = math.floor(prizes[cell_id] / len(roster))
            for player_id in roster:
                row = rows.get(player_id)
                if row is None:
                    continue
                state = load_state(row)
                ledger.credit(state, share)
                save_state(row, state)

        battle.winner_details = [
            {"place": place, "cellId": p.cell_id, "score": p.score}
            for place, p in enumerate(participants[:3], start=1)
        ]
        battle.rewards_distributed = True
        logger.info("Cell battle %s settled, %s participants", battle_id, len(participants))
        return battle_view(battle)


# ======================
# Admin overrides
# ======================
async def force_start(sessions, config, now=None):
    now = now or utcnow()
    async with transaction(sessions) as session:
        if await active_battle(session, now) is not None:
            raise ValidationError("A battle is already active.")
        battle = CellBattle(
            start_time=now,
            end_time=now + timedelta(hours=config.battle_schedule.duration_hours),
            rewards_distributed=False,
        )
        session.add(battle)
        await session.flush()
        logger.info("Cell battle %s force-started", battle.id)
        return battle_view(battle)


async def force_end(sessions, config, now=None):
    now = now or utcnow()
    async with transaction(sessions) as session:
        battle = await active_battle(session, now, lock=True)
        if battle is None:
            raise ValidationError("No active battle to end.")
        battle.end_time = now
        battle_id = battle.id
    logger.info("Cell battle %s force-ended", battle_id)
    return await settle_battle(sessions, battle_id, config)


# ======================
# Participation
# ======================
async def join_active_battle(sessions, user_id, now=None):
    """Enter the player's cell into the running battle for one ticket."""
    now = now or utcnow()
    async with transaction(sessions) as session:
        battle = await active_battle(session, now, lock=True)
        if battle is None:
            raise ValidationError("No active battle.")
        state = await get_state(session, user_id)
        if state is None:
            raise NotFoundError("Player not found")
        if state.cell_id is None:
            raise ValidationError("You are not in a cell.")
        cell = await lock_cell(session, state.cell_id)
        if cell is None:
            raise NotFoundError("Cell not found.")

        joined = await session.execute(
            select(CellBattleParticipant.id)
            .where(CellBattleParticipant.battle_id == battle.id, CellBattleParticipant.cell_id == cell.id)
        )
        if joined.scalar_one_or_none() is not None:
            raise ValidationError("Your cell is already in this battle.")
        if (cell.ticket_count or 0) < 1:
            raise ValidationError("Your cell has no battle tickets.")

        cell.ticket_count -= 1
        session.add(CellBattleParticipant(battle_id=battle.id, cell_id=cell.id, score=0.0, joined_at=now))
        logger.info("Cell %s joined battle %s", cell.id, battle.id)
        return {"battleId": battle.id, "cellId": cell.id, "ticketCount": cell.ticket_count}


async def add_taps(session, cell_id, taps, now=None):
    """Add taps to the cell's score in the running battle, inside the caller's transaction."""
    active_ids = select(CellBattle.id).where(*_active_filter(now or utcnow()))
    result = await session.execute(
        update(CellBattleParticipant)
        .where(CellBattleParticipant.cell_id == cell_id, CellBattleParticipant.battle_id.in_(active_ids))
        .values(score=CellBattleParticipant.score + taps)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def get_battle_status(sessions, cell_id=None, now=None):
    now = now or utcnow()
    async with sessions() as session:
        battle = await active_battle(session, now)
        if battle is None:
            return {"isActive": False}
        status = {
            "isActive": True,
            "battleId": battle.id,
            "startTime": battle.start_time,
            "endTime": battle.end_time,
            "timeRemaining": max(0, int((battle.end_time - now).total_seconds())),
            "isParticipant": False,
            "myScore": 0,
        }
        if cell_id is not None:
            participant = (await session.execute(
                select(CellBattleParticipant)
                .where(CellBattleParticipant.battle_id == battle.id, CellBattleParticipant.cell_id == cell_id)
            )).scalar_one_or_none()
            if participant is not None:
                status["isParticipant"] = True
                status["myScore"] = participant.score
        return status


async def get_battle_leaderboard(sessions, battle_id=None, now=None):
    """Scores of the given battle, else the running one, else the latest."""
    async with sessions() as session:
        if battle_id is None:
            battle = await active_battle(session, now)
            if battle is None:
                battle = (await session.execute(
                    select(CellBattle).order_by(CellBattle.start_time.desc()).limit(1)
                )).scalar_one_or_none()
            if battle is None:
                return []
            battle_id = battle.id
        rows = await session.execute(
            select(CellBattleParticipant.cell_id, Cell.name, CellBattleParticipant.score)
            .join(Cell, Cell.id == CellBattleParticipant.cell_id)
            .where(CellBattleParticipant.battle_id == battle_id)
            .order_by(CellBattleParticipant.score.desc(), CellBattleParticipant.cell_id)
        )
        return [{"cellId": cell_id, "name": name, "score": score} for cell_id, name, score in rows]
