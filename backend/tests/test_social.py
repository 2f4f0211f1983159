import math
from datetime import timedelta

import pytest
from sqlalchemy import select

import outbox
import social
from errors import InsufficientFundsError, NotFoundError, ValidationError
from models import Cell, CellMember, Informant, PropagationEvent
from state import ProfitBreakdown

from conftest import NOW, load, make_player

INFORMANT = {"name": "Petro", "dossier": "Knows every checkpoint.", "specialization": "logistics"}


def test_bank_accrual_over_one_hour():
    cell = Cell(balance=0.0, last_profit_update=NOW)
    earned = social.accrue_bank(cell, 1000, 0.05, NOW + timedelta(seconds=3600))
    assert earned == 50
    assert cell.balance == 50
    assert cell.last_profit_update == NOW + timedelta(seconds=3600)


async def test_referral_recalculation_is_idempotent(sessions, config):
    await make_player(sessions, 1)
    await make_player(sessions, 2, referrer_id=1, profit=ProfitBreakdown(base=1005, tasks=20, referral=300))
    await make_player(sessions, 3, referrer_id=1, profit=ProfitBreakdown(base=10, cell_bonus=40))

    first = await social.recalculate_referral_profit(sessions, 1)
    second = await social.recalculate_referral_profit(sessions, 1)

    # referral and cell components of the referrals do not count
    assert first.profit.referral == math.floor((1005 + 20 + 10) * 0.10)
    assert second.profit.referral == first.profit.referral
    assert (await load(sessions, 1)).profit.total == first.profit.referral


async def test_referral_bonus_ignores_missing_referrer(sessions):
    async with sessions() as session:
        async with session.begin():
            assert await social.apply_referral_bonus(session, 404) is None


async def test_create_join_and_leave_cell(sessions, config):
    await make_player(sessions, 1, balance=200_000)
    await make_player(sessions, 2)

    owner, cell = await social.create_cell(sessions, 1, "Smugglers", config, now=NOW)
    assert owner.balance == 100_000
    assert owner.cell_id == cell["id"]
    assert len(cell["inviteCode"]) == 6

    member, view = await social.join_cell(sessions, 2, cell["inviteCode"].lower(), config, now=NOW)
    assert member.cell_id == cell["id"]
    assert [m["id"] for m in view["members"]] == [1, 2]

    with pytest.raises(ValidationError):
        await social.join_cell(sessions, 2, cell["inviteCode"], config, now=NOW)

    # owner leaves, ownership passes on
    await social.leave_cell(sessions, 1, config, now=NOW)
    async with sessions() as session:
        remaining = await session.get(Cell, cell["id"])
        assert remaining.owner_id == 2

    # last member leaves, cell is disbanded
    state = await social.leave_cell(sessions, 2, config, now=NOW)
    assert state.cell_id is None
    async with sessions() as session:
        assert await session.get(Cell, cell["id"]) is None
        assert (await session.execute(select(CellMember))).first() is None


async def test_create_cell_requires_funds(sessions, config):
    await make_player(sessions, 1, balance=10)
    with pytest.raises(InsufficientFundsError):
        await social.create_cell(sessions, 1, "Broke", config, now=NOW)
    assert (await load(sessions, 1)).cell_id is None


async def test_join_unknown_or_full_cell(sessions, config):
    await make_player(sessions, 1, balance=200_000)
    await make_player(sessions, 2)
    with pytest.raises(NotFoundError):
        await social.join_cell(sessions, 2, "ZZZZZZ", config, now=NOW)

    _, cell = await social.create_cell(sessions, 1, "Tiny", config, now=NOW)
    tiny = config.model_copy(update={"cell_max_members": 1})
    with pytest.raises(ValidationError):
        await social.join_cell(sessions, 2, cell["inviteCode"], tiny, now=NOW)


async def test_leave_without_cell(sessions, config):
    await make_player(sessions, 1)
    with pytest.raises(ValidationError):
        await social.leave_cell(sessions, 1, config)


async def test_informant_raises_member_bonus(sessions, config):
    await make_player(sessions, 1, balance=200_000, profit=ProfitBreakdown(base=5000))
    await make_player(sessions, 2, profit=ProfitBreakdown(base=300, tasks=100))
    _, cell = await social.create_cell(sessions, 1, "Network", config, now=NOW)
    await social.join_cell(sessions, 2, cell["inviteCode"], config, now=NOW)

    with pytest.raises(InsufficientFundsError):
        await social.recruit_informant(sessions, 1, INFORMANT, config, now=NOW)

    async with sessions() as session:
        async with session.begin():
            row = await session.get(Cell, cell["id"])
            row.balance = 1_500_000
            row.last_profit_update = NOW

    view = await social.recruit_informant(sessions, 2, INFORMANT, config, now=NOW)

    assert view["balance"] == 500_000
    assert [i["name"] for i in view["informants"]] == ["Petro"]
    owner = await load(sessions, 1)
    member = await load(sessions, 2)
    assert owner.profit.cell_bonus == math.floor(5000 * 1 * 0.01)
    assert member.profit.cell_bonus == math.floor(400 * 1 * 0.01)
    assert member.profit.total == 400 + 4


async def test_get_cell_accrues_bank(sessions, config):
    await make_player(sessions, 1, balance=200_000, profit=ProfitBreakdown(base=1000))
    _, cell = await social.create_cell(sessions, 1, "Bank", config, now=NOW)

    view = await social.get_cell(sessions, cell["id"], config, now=NOW + timedelta(hours=1))

    assert view["balance"] == pytest.approx(1000 * config.cell_bank_profit_share)
    assert view["totalProfitPerHour"] == 1000


async def test_battle_ticket_paid_from_bank(sessions, config):
    await make_player(sessions, 1, balance=200_000)
    _, cell = await social.create_cell(sessions, 1, "Tickets", config, now=NOW)
    async with sessions() as session:
        async with session.begin():
            (await session.get(Cell, cell["id"])).balance = config.cell_battle_ticket_cost

    view = await social.buy_battle_ticket(sessions, 1, config, now=NOW)
    assert view["ticketCount"] == 1
    assert view["balance"] == 0


async def test_recruit_requires_dossier(sessions, config):
    with pytest.raises(ValidationError):
        await social.recruit_informant(sessions, 1, {"name": "x"}, config)


async def test_failed_propagation_is_retried_then_marked(sessions, config):
    async def broken(session, target_id, config):
        raise RuntimeError("boom")

    async with sessions() as session:
        async with session.begin():
            outbox.emit(session, outbox.REFERRAL, 1)

    assert await outbox.drain(sessions, {outbox.REFERRAL: broken}, config, max_attempts=2) == 0
    async with sessions() as session:
        event = (await session.execute(select(PropagationEvent))).scalar_one()
        assert event.status == "pending"
        assert event.attempts == 1
        assert event.last_error == "boom"

    await outbox.drain(sessions, {outbox.REFERRAL: broken}, config, max_attempts=2)
    async with sessions() as session:
        event = (await session.execute(select(PropagationEvent))).scalar_one()
        assert event.status == "failed"


async def test_propagate_applies_pending_events(sessions, config):
    await make_player(sessions, 1)
    await make_player(sessions, 2, referrer_id=1, profit=ProfitBreakdown(base=500))
    async with sessions() as session:
        async with session.begin():
            outbox.emit(session, outbox.REFERRAL, 1)

    assert await social.propagate(sessions, config) == 1
    assert (await load(sessions, 1)).profit.referral == 50
    async with sessions() as session:
        assert (await session.execute(select(PropagationEvent))).scalars().all() == []
