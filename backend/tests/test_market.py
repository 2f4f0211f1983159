import pytest

import constants as C
import market
from errors import InsufficientFundsError, NotFoundError, ValidationError

from conftest import load, make_player

SKINS = [C.DEFAULT_COIN_SKIN_ID, "skin_btc"]


async def test_purchase_moves_skin_and_credits(sessions, config):
    await make_player(sessions, 1, unlocked_skins=list(SKINS), current_skin_id="skin_btc")
    await make_player(sessions, 2, market_credits=100)

    seller, listing = await market.list_skin(sessions, 1, "skin_btc", 40, config)
    assert "skin_btc" not in seller.unlocked_skins
    assert seller.current_skin_id == C.DEFAULT_COIN_SKIN_ID

    buyer = await market.purchase_listing(sessions, 2, listing["id"], config)

    assert "skin_btc" in buyer.unlocked_skins
    assert buyer.market_credits == 60
    assert buyer.last_purchase_result["type"] == "lootbox"
    assert buyer.last_purchase_result["item"]["id"] == "skin_btc"
    seller = await load(sessions, 1)
    assert "skin_btc" not in seller.unlocked_skins
    assert seller.market_credits == 40
    assert await market.get_listings(sessions) == []
    with pytest.raises(NotFoundError):
        await market.purchase_listing(sessions, 2, listing["id"], config)


async def test_buyer_cannot_be_seller(sessions, config):
    await make_player(sessions, 1, unlocked_skins=list(SKINS), market_credits=100)
    _, listing = await market.list_skin(sessions, 1, "skin_btc", 40, config)
    with pytest.raises(ValidationError):
        await market.purchase_listing(sessions, 1, listing["id"], config)


async def test_purchase_needs_credits(sessions, config):
    await make_player(sessions, 1, unlocked_skins=list(SKINS))
    await make_player(sessions, 2, market_credits=10)
    _, listing = await market.list_skin(sessions, 1, "skin_btc", 40, config)

    with pytest.raises(InsufficientFundsError):
        await market.purchase_listing(sessions, 2, listing["id"], config)

    assert (await load(sessions, 2)).market_credits == 10
    assert (await load(sessions, 1)).market_credits == 0
    assert len(await market.get_listings(sessions)) == 1


@pytest.mark.parametrize("skin_id,price", [
    (C.DEFAULT_COIN_SKIN_ID, 10),
    ("skin_btc", 0),
    ("skin_btc", "cheap"),
    ("skin_btc", "inf"),
    ("skin_btc", float("nan")),
    ("skin_diamond", 10),
])
async def test_list_skin_validation(sessions, config, skin_id, price):
    await make_player(sessions, 1, unlocked_skins=list(SKINS))
    with pytest.raises(ValidationError):
        await market.list_skin(sessions, 1, skin_id, price, config)


async def test_cancel_returns_skin(sessions, config):
    await make_player(sessions, 1, unlocked_skins=list(SKINS))
    await make_player(sessions, 2)
    _, listing = await market.list_skin(sessions, 1, "skin_btc", 40, config)

    with pytest.raises(ValidationError):
        await market.cancel_listing(sessions, 2, listing["id"])

    state = await market.cancel_listing(sessions, 1, listing["id"])
    assert "skin_btc" in state.unlocked_skins
    assert await market.get_listings(sessions) == []
