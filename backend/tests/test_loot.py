import math

import pytest

import constants as C
import loot
import progression
from content import BlackMarketCard, CoinSkin
from errors import InsufficientFundsError, ValidationError
from market import list_skin
from models import SkinSupply
from state import PlayerState

from conftest import NOW, FixedRandom, load, make_player


def _items(*chances):
    return [BlackMarketCard(id=f"c{i}", box_type="coin", profit_per_hour=1, chance=c) for i, c in enumerate(chances)]


def test_draw_falls_through_to_last_item():
    pool = _items(50, 20, 30)
    assert loot.draw(pool, FixedRandom(0.99)).id == "c2"


def test_draw_walks_cumulative_weights():
    pool = _items(50, 20, 30)
    assert loot.draw(pool, FixedRandom(0.0)).id == "c0"
    assert loot.draw(pool, FixedRandom(0.5)).id == "c0"
    assert loot.draw(pool, FixedRandom(0.55)).id == "c1"
    assert loot.draw([], FixedRandom(0.5)) is None


def test_pool_skips_owned_and_exhausted_skins(config):
    coin_pool = loot.build_pool(config, "coin", owned_skins=[C.DEFAULT_COIN_SKIN_ID])
    assert [item.id for item in coin_pool] == ["bm_card1", "skin_btc"]

    coin_pool = loot.build_pool(config, "coin", owned_skins=["skin_btc"])
    assert [item.id for item in coin_pool] == ["bm_card1"]

    star_pool = loot.build_pool(config, "star", circulating={"skin_diamond": 99})
    assert [item.id for item in star_pool] == ["bm_card2", "skin_diamond"]
    star_pool = loot.build_pool(config, "star", circulating={"skin_diamond": 100})
    assert [item.id for item in star_pool] == ["bm_card2"]


def test_resolve_card_and_skin():
    state = PlayerState(upgrades={"bm_card1": 2}, last_login=NOW)
    card = BlackMarketCard(id="bm_card1", box_type="coin", profit_per_hour=5000, chance=50)

    gain = loot.resolve(state, card)

    assert gain == math.floor(5000 * 1.07 ** 2)
    assert state.upgrades["bm_card1"] == 3
    assert state.profit.base == gain

    skin = CoinSkin(id="skin_btc", box_type="coin", chance=10)
    loot.resolve(state, skin)
    loot.resolve(state, skin)
    assert state.unlocked_skins == [C.DEFAULT_COIN_SKIN_ID, "skin_btc"]


async def test_open_coin_lootbox(sessions, config):
    await make_player(sessions, 1, balance=60_000)

    state, won = await loot.open_lootbox(sessions, 1, "coin", config, rng=FixedRandom(0.99), now=NOW)

    assert won["type"] == "skin"
    assert won["item"]["id"] == "skin_btc"
    assert state.balance == 10_000
    assert "skin_btc" in (await load(sessions, 1)).unlocked_skins


async def test_open_lootbox_card_applies_suspicion(sessions, config):
    await make_player(sessions, 1, balance=60_000)

    state, won = await loot.open_lootbox(sessions, 1, "coin", config, rng=FixedRandom(0.0), now=NOW)

    assert won["type"] == "card"
    assert state.upgrades == {"bm_card1": 1}
    assert state.profit.base == 5000
    assert state.suspicion == 8


async def test_star_box_only_through_payment(sessions, config):
    await make_player(sessions, 1, balance=1_000_000)
    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 1, "star", config)
    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 1, "gold", config)


async def test_coin_box_needs_balance(sessions, config):
    await make_player(sessions, 1, balance=100)
    with pytest.raises(InsufficientFundsError):
        await loot.open_lootbox(sessions, 1, "coin", config, now=NOW)


async def test_empty_pool_keeps_the_charge(sessions, config):
    empty = config.model_copy(update={"black_market_cards": [], "coin_skins": []})
    await make_player(sessions, 1, balance=60_000)

    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 1, "coin", empty, now=NOW)

    assert (await load(sessions, 1)).balance == 10_000


async def test_listed_skins_count_towards_supply(sessions, config):
    capped = config.model_copy(update={"coin_skins": [
        CoinSkin(id="skin_rare", box_type="coin", chance=100, max_supply=1),
    ], "black_market_cards": []})
    await make_player(sessions, 1, unlocked_skins=[C.DEFAULT_COIN_SKIN_ID, "skin_rare"])
    await list_skin(sessions, 1, "skin_rare", 10, capped)
    await make_player(sessions, 2, balance=60_000)

    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 2, "coin", capped, now=NOW)


def _rare_only(config, max_supply):
    return config.model_copy(update={"coin_skins": [
        CoinSkin(id="skin_rare", box_type="coin", chance=100, max_supply=max_supply),
    ], "black_market_cards": []})


async def _circulating(sessions, skin_id):
    async with sessions() as session:
        row = await session.get(SkinSupply, skin_id)
        return row.circulating if row else None


async def test_supply_counter_gates_the_draw(sessions, config):
    capped = _rare_only(config, 1)
    async with sessions() as session:
        async with session.begin():
            session.add(SkinSupply(skin_id="skin_rare", circulating=1))
    await make_player(sessions, 1, balance=60_000)

    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 1, "coin", capped, now=NOW)
    assert "skin_rare" not in (await load(sessions, 1)).unlocked_skins


async def test_capped_skin_win_and_release(sessions, config):
    capped = _rare_only(config, 1)
    await make_player(sessions, 1, balance=60_000)
    await make_player(sessions, 2, balance=120_000)

    _, won = await loot.open_lootbox(sessions, 1, "coin", capped, rng=FixedRandom(0.5), now=NOW)
    assert won["item"]["id"] == "skin_rare"
    assert await _circulating(sessions, "skin_rare") == 1
    with pytest.raises(ValidationError):
        await loot.open_lootbox(sessions, 2, "coin", capped, now=NOW)

    await progression.delete_player(sessions, 1, capped)
    assert await _circulating(sessions, "skin_rare") == 0

    _, won = await loot.open_lootbox(sessions, 2, "coin", capped, rng=FixedRandom(0.5), now=NOW)
    assert won["item"]["id"] == "skin_rare"
    assert await _circulating(sessions, "skin_rare") == 1


async def test_reset_progress_releases_skins(sessions, config):
    capped = _rare_only(config, 5)
    await make_player(sessions, 1, unlocked_skins=[C.DEFAULT_COIN_SKIN_ID, "skin_rare"])
    await make_player(sessions, 2, unlocked_skins=[C.DEFAULT_COIN_SKIN_ID, "skin_rare"])

    await progression.admin_reset_progress(sessions, 1, capped, now=NOW)

    assert await _circulating(sessions, "skin_rare") == 1
    assert (await load(sessions, 1)).unlocked_skins == [C.DEFAULT_COIN_SKIN_ID]
