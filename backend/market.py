# backend/market.py
# Player-to-player skin market. A listed skin leaves the seller's collection
# until the listing is sold or cancelled.
import logging
import math

from sqlalchemy import select

import ledger
from constants import DEFAULT_COIN_SKIN_ID
from errors import NotFoundError, ValidationError
from models import MarketListing, User
from store import load_state, lock_listing, lock_player, lock_players, locked_player, save_state, transaction

logger = logging.getLogger(__name__)


def listing_view(listing, owner_name=None):
    return {
        "id": listing.id,
        "skinId": listing.skin_id,
        "ownerId": listing.owner_id,
        "ownerName": owner_name,
        "price": listing.price,
        "isActive": listing.is_active,
        "createdAt": listing.created_at,
    }


def _parse_price(price):
    try:
        price = float(price)
    except (TypeError, ValueError):
        raise ValidationError("Invalid price.")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("Invalid price.")
    return price


async def list_skin(sessions, user_id, skin_id, price, config):
    price = _parse_price(price)
    if skin_id == DEFAULT_COIN_SKIN_ID:
        raise ValidationError("Cannot sell the default skin.")
    if config.find_skin(skin_id) is None:
        raise NotFoundError("Skin not found")

    async with locked_player(sessions, user_id) as (session, state):
        if not state.owns_skin(skin_id):
            raise ValidationError("You do not own this skin.")
        state.remove_skin(skin_id)
        listing = MarketListing(skin_id=skin_id, owner_id=user_id, price=price, is_active=True)
        session.add(listing)
        await session.flush()
        view = listing_view(listing)
    logger.info("User %s listed %s for %s", user_id, skin_id, price)
    return state, view


async def cancel_listing(sessions, user_id, listing_id):
    """Withdraw an active listing; the skin goes back to its owner."""
    async with transaction(sessions) as session:
        listing = await lock_listing(session, listing_id)
        if listing is None:
            raise NotFoundError("Listing not found or already sold.")
        if listing.owner_id != user_id:
            raise ValidationError("This is not your listing.")
        row = await lock_player(session, user_id)
        state = load_state(row)
        state.unlock_skin(listing.skin_id)
        listing.is_active = False
        save_state(row, state)
    return state


async def get_listings(sessions):
    async with sessions() as session:
        rows = await session.execute(
            select(MarketListing, User.name)
            .outerjoin(User, User.id == MarketListing.owner_id)
            .where(MarketListing.is_active.is_(True))
            .order_by(MarketListing.created_at.desc(), MarketListing.id.desc())
        )
        return [listing_view(listing, name) for listing, name in rows]


async def purchase_listing_locked(session, buyer_id, listing_id, config, prepaid=False):
    listing = await lock_listing(session, listing_id)
    if listing is None:
        raise NotFoundError("Listing not found or already sold.")
    seller_id = listing.owner_id
    if buyer_id == seller_id:
        raise ValidationError("Cannot buy your own item.")

    rows = await lock_players(session, [buyer_id, seller_id])
    if buyer_id not in rows or seller_id not in rows:
        raise NotFoundError("Buyer or seller not found.")
    buyer = load_state(rows[buyer_id])
    seller = load_state(rows[seller_id])
    if buyer.owns_skin(listing.skin_id):
        raise ValidationError("You already own this skin.")

    if not prepaid:
        ledger.debit_credits(buyer, listing.price)
    seller.market_credits = float(seller.market_credits or 0) + listing.price
    buyer.unlock_skin(listing.skin_id)

    skin = config.find_skin(listing.skin_id)
    if skin is not None:
        buyer.last_purchase_result = {"type": "lootbox", "item": skin.model_dump(mode="json", by_alias=True)}
    listing.is_active = False

    save_state(rows[buyer_id], buyer)
    save_state(rows[seller_id], seller)
    logger.info("Listing %s sold to %s for %s", listing_id, buyer_id, listing.price)
    return buyer


async def purchase_listing(sessions, buyer_id, listing_id, config, prepaid=False):
    """Buy a listed skin. Paid in market credits unless already paid through Telegram."""
    async with transaction(sessions) as session:
        return await purchase_listing_locked(session, buyer_id, listing_id, config, prepaid)
