import math
import random

import pytest

import constants as C
import ledger
from content import Boost, Reward, Upgrade
from errors import InsufficientFundsError, ValidationError
from state import PlayerState

from conftest import NOW


@pytest.mark.parametrize("modifier", [0, None])
def test_suspicion_noop_for_empty_modifier(modifier):
    state = PlayerState(balance=1234, suspicion=40, last_login=NOW)
    before = state.to_document()
    ledger.apply_suspicion(state, modifier)
    assert state.to_document() == before


def test_suspicion_stays_in_bounds():
    rnd = random.Random(7)
    state = PlayerState(balance=10_000, last_login=NOW)
    for _ in range(500):
        ledger.apply_suspicion(state, rnd.uniform(-40, 60), rng=rnd, now=NOW)
        assert 0 <= state.suspicion <= ledger.max_suspicion(state.suspicion_limit_level)


def test_crossing_ceiling_confiscates_once():
    state = PlayerState(balance=1000, suspicion=95, last_login=NOW)
    ledger.apply_suspicion(state, 10, locale="ru", rng=random.Random(1), now=NOW)
    assert state.balance == 750
    assert state.suspicion == 50
    assert len(state.penalty_log) == 1
    assert state.penalty_log[0].type == "confiscation_25_percent"
    assert state.penalty_log[0].message in C.PENALTY_MESSAGES["ru"]


def test_penalty_message_falls_back_to_english():
    state = PlayerState(balance=100, suspicion=99, last_login=NOW)
    ledger.apply_suspicion(state, 5, locale="de", rng=random.Random(1), now=NOW)
    assert state.penalty_log[0].message in C.PENALTY_MESSAGES["en"]


def test_suspicion_limit_raises_ceiling():
    state = PlayerState(balance=100, suspicion=100, suspicion_limit_level=2, last_login=NOW)
    ledger.apply_suspicion(state, 10)
    assert state.suspicion == 110
    assert state.balance == 100
    assert state.penalty_log == []


def test_negative_modifier_clamps_to_zero():
    state = PlayerState(suspicion=3, last_login=NOW)
    ledger.apply_suspicion(state, -10)
    assert state.suspicion == 0


def test_upgrade_purchase_follows_curves():
    upgrade = Upgrade(id="u", price=1000, profit_per_hour=100)
    state = PlayerState(balance=10_000, upgrades={"u": 3}, last_login=NOW)

    price = ledger.purchase_upgrade(state, upgrade)

    assert price == math.floor(1000 * 1.15 ** 3)
    assert state.balance == 10_000 - price
    assert state.upgrades["u"] == 4
    assert state.profit.base == math.floor(100 * 1.07 ** 3)
    assert state.profit_per_hour == state.profit.base


def test_upgrade_without_price_uses_profit_times_ten():
    card = Upgrade(id="card", profit_per_hour=500)
    assert ledger.upgrade_price(card.base_price, 0) == 5000


def test_debit_insufficient_leaves_state():
    state = PlayerState(balance=50, last_login=NOW)
    with pytest.raises(InsufficientFundsError):
        ledger.purchase_upgrade(state, Upgrade(id="u", price=100, profit_per_hour=10))
    assert state.balance == 50
    assert state.upgrades == {}
    assert state.profit.base == 0


def test_profit_reward_goes_to_tasks_component():
    state = PlayerState(last_login=NOW)
    state.profit.base = 100
    ledger.apply_reward(state, Reward(type="profit", amount=50))
    assert state.profit.tasks == 50
    assert state.profit.total == 150
    ledger.apply_reward(state, Reward(type="coins", amount=7))
    assert state.balance == 7
    ledger.apply_reward(state, Reward(type="mystery", amount=1))
    assert state.balance == 7 and state.profit.total == 150


def test_boost_costs_grow_with_level():
    boost = Boost(id="boost_tap_guru", cost_coins=1000)
    state = PlayerState(balance=100_000, tap_guru_level=2, last_login=NOW)
    assert ledger.boost_cost(boost, state) == math.floor(1000 * 1.5 ** 2)
    ledger.purchase_boost(state, boost)
    assert state.tap_guru_level == 3


def test_boost_daily_limit():
    boost = Boost(id="boost_full_energy", cost_coins=0)
    state = PlayerState(energy=0, last_login=NOW)
    for _ in range(C.BOOST_PURCHASE_LIMITS["boost_full_energy"]):
        ledger.purchase_boost(state, boost)
    assert state.energy == C.INITIAL_MAX_ENERGY
    with pytest.raises(ValidationError):
        ledger.purchase_boost(state, boost)


def test_max_energy_is_capped():
    assert ledger.max_energy(0) == C.INITIAL_MAX_ENERGY
    assert ledger.max_energy(3) == 8000
    assert ledger.max_energy(20) == C.MAX_ENERGY_CAP


def test_profit_total_serialized_not_stored():
    state = PlayerState(last_login=NOW)
    state.profit.base = 10
    state.profit.referral = 5
    document = state.to_document()
    assert document["profitPerHour"] == 15
    assert document["profit"]["cellBonus"] == 0
    # the derived total is recomputed on load
    document["profitPerHour"] = 999
    assert PlayerState.from_document(document).profit.total == 15
