# backend/ledger.py
# Balance, reward and suspicion rules applied to an in-memory PlayerState.
# The caller holds the row lock; nothing here touches the database.
import logging
import math
import random
from datetime import datetime, timezone

import constants as C
from errors import InsufficientFundsError, ValidationError
from state import PenaltyEntry

logger = logging.getLogger(__name__)


# ======================
# Curves
# ======================
def upgrade_price(base_price, level):
    return math.floor(base_price * C.UPGRADE_PRICE_GROWTH ** level)


def upgrade_profit_gain(base_profit, level):
    return math.floor(base_profit * C.UPGRADE_PROFIT_GROWTH ** level)


def boost_level(state, boost_id):
    return {
        "boost_tap_guru": state.tap_guru_level,
        "boost_energy_limit": state.energy_limit_level,
        "boost_suspicion_limit": state.suspicion_limit_level,
    }.get(boost_id, 0)


def boost_cost(boost, state):
    growth = C.BOOST_COST_GROWTH.get(boost.id)
    if growth is None:
        return boost.cost_coins
    return math.floor(boost.cost_coins * growth ** boost_level(state, boost.id))


def max_energy(energy_limit_level):
    return min(C.MAX_ENERGY_CAP, C.INITIAL_MAX_ENERGY * 2 ** energy_limit_level)


def max_suspicion(suspicion_limit_level):
    return C.BASE_MAX_SUSPICION + suspicion_limit_level * C.SUSPICION_PER_LIMIT_LEVEL


def tap_value(state):
    return max(1, math.floor(state.coins_per_tap * C.TAP_GURU_GROWTH ** state.tap_guru_level))


# ======================
# Balance
# ======================
def credit(state, amount):
    state.balance = float(state.balance or 0) + amount
    return state


def debit(state, amount):
    if amount < 0:
        raise ValidationError("Amount must be positive.")
    if (state.balance or 0) < amount:
        raise InsufficientFundsError("Not enough coins")
    state.balance -= amount
    return state


def debit_credits(state, amount):
    if (state.market_credits or 0) < amount:
        raise InsufficientFundsError("Not enough market credits")
    state.market_credits -= amount
    return state


def apply_reward(state, reward):
    """Coins go to the balance, profit to the tasks component.

    Any other reward type is ignored.
    """
    if reward is None:
        return state
    if reward.type == "coins":
        credit(state, reward.amount)
    elif reward.type == "profit":
        state.profit.tasks += reward.amount
    return state


def apply_suspicion(state, modifier, locale="en", rng=None, now=None):
    if not modifier:
        return state

    current = float(state.suspicion or 0) + float(modifier)
    ceiling = max_suspicion(state.suspicion_limit_level)

    if current >= ceiling:
        state.balance = float(state.balance or 0) * (1 - C.PENALTY_CONFISCATION_RATE)
        current = ceiling / 2
        messages = C.PENALTY_MESSAGES.get(locale) or C.PENALTY_MESSAGES["en"]
        state.penalty_log.append(PenaltyEntry(
            timestamp=now or datetime.now(timezone.utc),
            message=(rng or random).choice(messages),
        ))
        logger.info("Suspicion ceiling %s reached, 25%% of balance confiscated", ceiling)

    state.suspicion = max(0, min(ceiling, current))
    return state


# ======================
# Purchases
# ======================
def purchase_upgrade(state, upgrade):
    """Charge the current level price, raise the level and add its profit."""
    level = state.upgrades.get(upgrade.id, 0)
    price = upgrade_price(upgrade.base_price, level)
    debit(state, price)
    state.upgrades[upgrade.id] = level + 1
    state.profit.base += upgrade_profit_gain(upgrade.profit_per_hour, level)
    return price


def purchase_boost(state, boost):
    limit = boost.purchase_limit
    bought_today = state.daily.boost_purchases.get(boost.id, 0)
    if limit is not None and bought_today >= limit:
        raise ValidationError("Daily limit for this boost has been reached.")

    cost = boost_cost(boost, state)
    debit(state, cost)

    if boost.id == "boost_full_energy":
        state.energy = max_energy(state.energy_limit_level)
    elif boost.id == "boost_tap_guru":
        state.tap_guru_level += 1
    elif boost.id == "boost_energy_limit":
        state.energy_limit_level += 1
    elif boost.id == "boost_suspicion_limit":
        state.suspicion_limit_level += 1

    if limit is not None:
        state.daily.boost_purchases[boost.id] = bought_today + 1
    return cost
