# backend/loot.py
# Lootboxes: weighted draw over black-market cards and coin skins of a box type.
import logging
import random

import ledger
import social
from errors import ValidationError
from store import lock_skin_supply, locked_player, user_language

logger = logging.getLogger(__name__)

BOX_TYPES = ("coin", "star")


def build_pool(config, box_type, owned_skins=(), circulating=None):
    """Cards of the box type plus skins the player lacks that are still in supply."""
    circulating = circulating or {}
    pool = [card for card in config.black_market_cards if card.box_type == box_type]
    for skin in config.coin_skins:
        if skin.box_type != box_type or skin.id in owned_skins:
            continue
        if skin.max_supply is not None and circulating.get(skin.id, 0) >= skin.max_supply:
            continue
        pool.append(skin)
    return pool


def draw(pool, rng=None):
    """Cumulative-weight pick. Rounding leftovers land on the last item."""
    if not pool:
        return None
    total = sum(item.chance or 0 for item in pool)
    roll = (rng or random).random() * total
    for item in pool:
        roll -= item.chance or 0
        if roll <= 0:
            return item
    return pool[-1]


def is_card(item):
    return hasattr(item, "profit_per_hour")


def resolve(state, item):
    """Apply a won item to the state. Returns the profit gained (0 for skins)."""
    if is_card(item):
        level = state.upgrades.get(item.id, 0)
        gain = ledger.upgrade_profit_gain(item.profit_per_hour, level)
        state.upgrades[item.id] = level + 1
        state.profit.base += gain
        return gain
    state.unlock_skin(item.id)
    return 0


def won_item_view(item):
    return {
        "type": "card" if is_card(item) else "skin",
        "item": item.model_dump(mode="json", by_alias=True),
    }


def purchase_result(item):
    """lastPurchaseResult of a paid box, picked up by the client after payment."""
    return {"type": "lootbox", "item": item.model_dump(mode="json", by_alias=True)}


async def open_box_locked(session, state, user_id, box_type, config, rng=None, now=None):
    """Draw and resolve on an already locked player. Returns the won item or None."""
    skin_ids = [skin.id for skin in config.coin_skins if skin.box_type == box_type and skin.max_supply is not None]
    supply = await lock_skin_supply(session, skin_ids)
    circulating = {skin_id: row.circulating for skin_id, row in supply.items()}
    pool = build_pool(config, box_type, state.unlocked_skins, circulating)
    item = draw(pool, rng)
    if item is None:
        logger.warning("Empty %s lootbox pool for user %s", box_type, user_id)
        return None
    if not is_card(item) and item.id in supply:
        supply[item.id].circulating += 1

    if resolve(state, item):
        await social.refresh_cell_bonus(session, state, config)
        await social.emit_referral_update(session, user_id)
    language = await user_language(session, user_id)
    ledger.apply_suspicion(state, item.suspicion_modifier, language, rng, now)
    return item


async def open_lootbox(sessions, user_id, box_type, config, paid_with_stars=False, rng=None, now=None):
    """Open a box. Star boxes open only from the payment callback.

    The coin price stays charged when nothing can be won.
    """
    if box_type not in BOX_TYPES:
        raise ValidationError("Invalid box type")
    if box_type == "star" and not paid_with_stars:
        raise ValidationError("Star lootboxes are paid through Telegram")

    async with locked_player(sessions, user_id) as (session, state):
        if box_type == "coin":
            ledger.debit(state, config.lootbox_cost_coins)
        item = await open_box_locked(session, state, user_id, box_type, config, rng, now)
        if item is not None and paid_with_stars:
            state.last_purchase_result = purchase_result(item)

    if item is None:
        raise ValidationError("No items available in this lootbox")
    await social.propagate(sessions, config)
    return state, won_item_view(item)
