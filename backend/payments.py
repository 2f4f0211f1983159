# backend/payments.py
# Telegram Stars: invoice payloads "<kind>-<userId>-<itemId>" and the handling
# of successful_payment updates.
import logging

from sqlalchemy.exc import IntegrityError

import loot
import social
from errors import NotFoundError, ValidationError
from market import purchase_listing_locked
from models import ProcessedPayment
from store import get_state, load_state, lock_player, save_state, transaction

logger = logging.getLogger(__name__)

TASK = "task"
LOOTBOX = "lootbox"
MARKET_PURCHASE = "market_purchase"
BOOST_RESET = "boost_reset"
KINDS = (TASK, LOOTBOX, MARKET_PURCHASE, BOOST_RESET)


def make_payload(kind, user_id, item_id):
    return f"{kind}-{user_id}-{item_id}"


def parse_payload(payload):
    """Split a payload into (kind, user_id, item_id); item ids may contain dashes."""
    parts = str(payload or "").split("-", 2)
    if len(parts) != 3 or not all(parts):
        raise ValidationError(f"Invalid payload structure: {payload}")
    kind, user_id, item_id = parts
    if kind not in KINDS:
        raise ValidationError(f"Unknown payload type: {kind}")
    try:
        user_id = int(user_id)
    except ValueError:
        raise ValidationError(f"Invalid payload structure: {payload}")
    return kind, user_id, item_id


# ======================
# Invoices
# ======================
async def build_invoice(sessions, user_id, kind, item_id, config):
    """Title, description, payload and Stars price for createInvoiceLink."""
    async with sessions() as session:
        state = await get_state(session, user_id)
    if state is None:
        raise NotFoundError("Player not found.")

    if kind == TASK:
        task = config.find_special_task(item_id)
        if task is None:
            raise NotFoundError("Task not found.")
        if item_id in state.purchased_special_task_ids:
            raise ValidationError("Task already purchased.")
        if task.price_stars <= 0:
            raise ValidationError("This task is not for sale.")
        names = getattr(task, "name", None) or {}
        title = names.get("en") or "Special Task"
        description = "Unlock this special task."
        price = task.price_stars
    elif kind == LOOTBOX:
        if item_id != "star":
            raise ValidationError("Invalid lootbox type")
        title = "Star Container"
        description = "A container with rare items."
        price = config.lootbox_cost_stars
        if price <= 0:
            raise ValidationError("Lootbox not for sale.")
    elif kind == BOOST_RESET:
        if config.find_boost(item_id) is None:
            raise NotFoundError("Boost not found")
        title = "Boost limit reset"
        description = "Reset today's purchase limit for this boost."
        price = config.boost_limit_reset_cost_stars
    else:
        raise ValidationError("Invalid payload type.")

    return {
        "title": title,
        "description": description,
        "payload": make_payload(kind, user_id, item_id),
        "currency": "XTR",
        "prices": [{"label": title, "amount": int(price)}],
    }


# ======================
# successful_payment
# ======================
async def _already_processed(session, charge_id):
    return charge_id is not None and await session.get(ProcessedPayment, charge_id) is not None


async def _apply(session, kind, user_id, item_id, config, rng):
    if kind == MARKET_PURCHASE:
        try:
            listing_id = int(item_id)
        except ValueError:
            raise ValidationError(f"Invalid listing id: {item_id}")
        return await purchase_listing_locked(session, user_id, listing_id, config, prepaid=True)

    row = await lock_player(session, user_id)
    state = load_state(row)

    if kind == TASK:
        task = config.find_special_task(item_id)
        if task is None:
            raise NotFoundError(f"Task {item_id} not found in config")
        if item_id in state.purchased_special_task_ids:
            logger.warning("Player %s tried to re-purchase task %s.", user_id, item_id)
            return state
        state.purchased_special_task_ids.append(item_id)
        state.last_purchase_result = {"type": "task", "item": task.model_dump(mode="json", by_alias=True)}
    elif kind == LOOTBOX:
        item = await loot.open_box_locked(session, state, user_id, item_id, config, rng)
        if item is None:
            raise ValidationError("No items available in this lootbox")
        state.last_purchase_result = loot.purchase_result(item)
    elif kind == BOOST_RESET:
        state.daily.boost_purchases[item_id] = 0

    save_state(row, state)
    return state


async def process_successful_payment(sessions, payload, config, charge_id=None, rng=None):
    """Apply a paid payload once. Redelivery of a recorded charge id is a no-op."""
    kind, user_id, item_id = parse_payload(payload)
    try:
        async with transaction(sessions) as session:
            if await _already_processed(session, charge_id):
                logger.warning("Payment %s already processed, skipping", charge_id)
                return None
            if charge_id is not None:
                session.add(ProcessedPayment(charge_id=charge_id, user_id=user_id, payload=payload))
            state = await _apply(session, kind, user_id, item_id, config, rng)
    except IntegrityError:
        if charge_id is None:
            raise
        # the same charge committed concurrently
        logger.warning("Payment %s already processed, skipping", charge_id)
        return None

    logger.info("Successfully processed payment for payload: %s", payload)
    await social.propagate(sessions, config)
    return state
