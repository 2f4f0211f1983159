# backend/progression.py
# Player actions: login/registration, daily cycle, tap sync, purchases, tasks,
# daily combo/cipher, glitch codes and the admin player tools.
import logging
import math

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

import battles
import constants as C
import ledger
import outbox
import social
from auth import verify_ton_proof
from clock import game_date, utcnow
from content import daily_event_view, get_daily_event, league_for
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import CellMember, MarketListing, Player, User
from state import DailyState, PlayerState
from store import (
    get_state, load_state, lock_cell, lock_player, locked_player, release_skins,
    save_state, transaction, user_language,
)

logger = logging.getLogger(__name__)

WALLET_TAKEN = "This wallet is already connected to another account."


# ======================
# Daily cycle
# ======================
def needs_daily_reset(state, now=None):
    return game_date(state.daily.last_reset) != game_date(now)


def reset_daily(state, now=None):
    state.daily = DailyState(last_reset=now or utcnow())
    return state


def ensure_daily_reset(state, now=None):
    """Reset daily progress once per calendar day. Returns True if it happened."""
    if not needs_daily_reset(state, now):
        return False
    reset_daily(state, now)
    return True


def accrue_passive_income(state, now=None):
    now = now or utcnow()
    seconds = math.floor((now - state.last_login).total_seconds())
    earned = 0.0
    if seconds > 1:
        earned = state.profit.total / 3600 * seconds
        ledger.credit(state, earned)
    state.last_login = now
    return earned


def _parse_referrer(start_param, user_id):
    try:
        referrer_id = int(str(start_param).strip())
    except (TypeError, ValueError):
        return None
    return referrer_id if referrer_id != user_id else None


def _user_view(user):
    return {
        "id": user.id,
        "name": user.name,
        "language": user.language,
        "referrerId": user.referrer_id,
        "country": user.country,
    }


# ======================
# Login / sync
# ======================
async def login(sessions, tg_user, config, start_param=None, country=None, now=None):
    """Register on first sight, then apply the daily reset and offline income."""
    if not tg_user or not tg_user.get("id"):
        raise ValidationError("Invalid Telegram user data.")
    now = now or utcnow()
    try:
        user_id = int(tg_user["id"])
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Invalid Telegram user data.")

    async with transaction(sessions) as session:
        user = await session.get(User, user_id)
        referrer_id = None
        if user is None:
            referrer_id = _parse_referrer(start_param, user_id)
            if referrer_id and await session.get(User, referrer_id) is None:
                referrer_id = None
            name = f"{tg_user.get('first_name') or ''} {tg_user.get('last_name') or ''}".strip()
            user = User(
                id=user_id,
                name=name or tg_user.get("username"),
                language=tg_user.get("language_code") or "en",
                referrer_id=referrer_id,
                created_at=now,
            )
            session.add(user)

        row = await session.get(Player, user_id, with_for_update=True)
        if row is None:
            state = PlayerState(last_login=now, daily=DailyState(last_reset=now))
            session.add(Player(id=user_id, data=state.to_document()))
        else:
            state = load_state(row)
            if ensure_daily_reset(state, now):
                logger.info("Performing daily reset for user %s", user_id)
            earned = accrue_passive_income(state, now)
            if earned:
                logger.info("User %s earned %.2f offline profit", user_id, earned)
            save_state(row, state)

        user.last_seen = now
        if country:
            user.country = country

        if referrer_id:
            await session.flush()
            await social.apply_referral_bonus(session, referrer_id)
            outbox.emit(session, outbox.REFERRAL, referrer_id)

        event = await get_daily_event(session, game_date(now))
        result = {"user": _user_view(user), "player": state, "dailyEvent": daily_event_view(event, reveal_cipher=False)}

    await social.propagate(sessions, config)
    return result


async def sync_taps(sessions, user_id, taps, config, energy=None, now=None):
    """Credit taps since the last sync and run the tap-rate check."""
    try:
        taps = int(taps or 0)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Invalid tap count.")
    if taps < 0:
        raise ValidationError("Invalid tap count.")
    if energy is not None:
        try:
            energy = float(energy)
        except (TypeError, ValueError):
            raise ValidationError("Invalid energy value.")
        if not math.isfinite(energy):
            raise ValidationError("Invalid energy value.")
    now = now or utcnow()

    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)

        elapsed = (now - state.last_login).total_seconds()
        if elapsed > 0.5 and taps > 0:
            tps = taps / elapsed
            if tps > C.CHEAT_DETECTION_THRESHOLD_TPS:
                state.cheat.strikes += 1
                state.cheat.log.append({
                    "tps": tps, "taps": taps, "timeDiff": elapsed, "timestamp": now.isoformat(),
                })
                if state.cheat.strikes >= C.CHEAT_DETECTION_STRIKES_TO_FLAG:
                    state.cheat.is_cheater = True
                logger.warning("High TPS detected for user %s: %.2f", user_id, tps)

        accrue_passive_income(state, now)
        ledger.credit(state, taps * ledger.tap_value(state))
        state.daily.taps += taps
        if energy is not None:
            state.energy = max(0, min(ledger.max_energy(state.energy_limit_level), energy))
        state.force_sync = False

        if state.cell_id and taps > 0:
            await battles.add_taps(session, state.cell_id, taps, now)
    return state


async def sync_after_payment(sessions, user_id):
    """Hand the last payment result to the client exactly once."""
    async with locked_player(sessions, user_id) as (session, state):
        result = state.last_purchase_result
        state.last_purchase_result = None
    return state, result


# ======================
# Purchases
# ======================
def _discover_final_glitch(state, upgrade_id, config):
    event = config.final_glitch_event()
    if not event or not event.trigger or event.trigger.type != "upgrade_purchased":
        return
    if event.trigger.params.get("upgradeId") == upgrade_id and event.code not in state.glitch.discovered:
        state.glitch.discovered.append(event.code)


async def buy_upgrade(sessions, user_id, upgrade_id, config, now=None, rng=None):
    upgrade = config.find_upgrade(upgrade_id)
    if upgrade is None:
        raise NotFoundError("Upgrade not found")
    now = now or utcnow()

    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        ledger.purchase_upgrade(state, upgrade)
        if upgrade_id not in state.daily.upgrades:
            state.daily.upgrades.append(upgrade_id)
        _discover_final_glitch(state, upgrade_id, config)
        await social.refresh_cell_bonus(session, state, config)
        language = await user_language(session, user_id)
        ledger.apply_suspicion(state, upgrade.suspicion_modifier, language, rng, now)
        await social.emit_referral_update(session, user_id)

    await social.propagate(sessions, config)
    return state


async def buy_boost(sessions, user_id, boost_id, config, now=None, rng=None):
    boost = config.find_boost(boost_id)
    if boost is None:
        raise NotFoundError("Boost not found")
    now = now or utcnow()

    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        ledger.purchase_boost(state, boost)
        language = await user_language(session, user_id)
        ledger.apply_suspicion(state, boost.suspicion_modifier, language, rng, now)
    return state


# ======================
# Tasks
# ======================
def _check_secret_code(task, code):
    if task.type == "video_code" and task.secret_code:
        if task.secret_code.lower() != (code or "").lower():
            raise ValidationError("Incorrect secret code.")


async def _reward_task(session, state, user_id, task, config, rng, now):
    ledger.apply_reward(state, task.reward)
    if task.reward.type == "profit":
        await social.refresh_cell_bonus(session, state, config)
        await social.emit_referral_update(session, user_id)
    language = await user_language(session, user_id)
    ledger.apply_suspicion(state, task.suspicion_modifier, language, rng, now)


async def claim_daily_task(sessions, user_id, task_id, config, code=None, now=None, rng=None):
    task = config.find_task(task_id)
    if task is None:
        raise NotFoundError("Task not found")
    now = now or utcnow()

    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        if task.type == "taps":
            completed = state.daily.completed_task_ids
        else:
            completed = state.completed_special_task_ids
        if task_id in completed:
            raise ValidationError("Task already completed.")
        if task.type == "taps" and state.daily.taps < (task.required_taps or 0):
            raise ValidationError("Not enough taps to claim this task.")
        _check_secret_code(task, code)

        completed.append(task_id)
        await _reward_task(session, state, user_id, task, config, rng, now)

    await social.propagate(sessions, config)
    return state, task.reward


async def unlock_special_task(sessions, user_id, task_id, config, paid=False):
    """Unlock a special task; paid ones only arrive through the payment callback."""
    task = config.find_special_task(task_id)
    if task is None:
        raise NotFoundError("Task not found")
    if task.price_stars > 0 and not paid:
        raise ValidationError("This task is not free")

    async with locked_player(sessions, user_id) as (session, state):
        if task_id not in state.purchased_special_task_ids:
            state.purchased_special_task_ids.append(task_id)
            state.last_purchase_result = {"type": "task", "item": task.model_dump(mode="json", by_alias=True)}
    return state


async def complete_special_task(sessions, user_id, task_id, config, code=None, now=None, rng=None):
    task = config.find_special_task(task_id)
    if task is None:
        raise NotFoundError("Task not found")
    now = now or utcnow()

    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        if task.price_stars > 0 and task_id not in state.purchased_special_task_ids:
            raise ValidationError("Task not purchased")
        if task_id in state.completed_special_task_ids:
            raise ValidationError("Task already completed.")
        _check_secret_code(task, code)

        state.completed_special_task_ids.append(task_id)
        await _reward_task(session, state, user_id, task, config, rng, now)

    await social.propagate(sessions, config)
    return state, task.reward


# ======================
# Daily combo / cipher
# ======================
async def claim_combo(sessions, user_id, config, now=None):
    now = now or utcnow()
    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        if state.daily.claimed_combo:
            raise ValidationError("Combo already claimed for today.")
        event = await get_daily_event(session, game_date(now))
        if not event or not event.combo_ids or len(event.combo_ids) != 3:
            raise ValidationError("No active combo today.")
        if not all(upgrade_id in state.daily.upgrades for upgrade_id in event.combo_ids):
            raise ValidationError("You haven't purchased all the combo cards yet.")

        reward = event.combo_reward or C.COMBO_REWARD_DEFAULT
        ledger.credit(state, reward)
        state.daily.claimed_combo = True
    return state, reward


async def claim_cipher(sessions, user_id, cipher, config, now=None):
    now = now or utcnow()
    async with locked_player(sessions, user_id) as (session, state):
        ensure_daily_reset(state, now)
        if state.daily.claimed_cipher:
            raise ValidationError("Cipher already claimed for today.")
        event = await get_daily_event(session, game_date(now))
        if not event or not event.cipher_word:
            raise ValidationError("No active cipher today.")
        if event.cipher_word.upper() != str(cipher or "").upper():
            raise ValidationError("Incorrect cipher word.")

        reward = event.cipher_reward or C.CIPHER_REWARD_DEFAULT
        ledger.credit(state, reward)
        state.daily.claimed_cipher = True
    return state, reward


# ======================
# Glitch codes
# ======================
def _trigger_met(trigger, state):
    if trigger is None:
        return True
    params = trigger.params or {}
    if trigger.type == "upgrade_purchased":
        return state.upgrades.get(params.get("upgradeId"), 0) > 0
    if trigger.type == "balance_equals":
        return state.balance >= float(params.get("amount") or 0)
    # meta_tap, login_at_time: observed by the client
    return True


async def discover_glitch_code(sessions, user_id, code, config):
    event = config.find_glitch_event(code)
    if event is None:
        raise ValidationError("Invalid code.")
    async with locked_player(sessions, user_id) as (session, state):
        if event.code not in state.glitch.discovered:
            if not _trigger_met(event.trigger, state):
                raise ValidationError("Code has not been discovered yet.")
            state.glitch.discovered.append(event.code)
    return state


async def claim_glitch_code(sessions, user_id, code, config):
    event = config.find_glitch_event(code)
    if event is None:
        raise ValidationError("Invalid code.")
    upper = event.code.upper()

    async with locked_player(sessions, user_id) as (session, state):
        if upper in {c.upper() for c in state.glitch.claimed}:
            raise ValidationError("Code already claimed.")
        if upper not in {c.upper() for c in state.glitch.discovered}:
            raise ValidationError("Code has not been discovered yet.")
        ledger.apply_reward(state, event.reward)
        state.glitch.claimed.append(event.code)
        if event.reward.type == "profit":
            await social.refresh_cell_bonus(session, state, config)
            await social.emit_referral_update(session, user_id)

    await social.propagate(sessions, config)
    return state, event.reward


async def mark_glitch_shown(sessions, user_id, code):
    async with locked_player(sessions, user_id) as (session, state):
        if code not in state.glitch.shown:
            state.glitch.shown.append(code)
    return state


# ======================
# Profile
# ======================
async def set_skin(sessions, user_id, skin_id):
    async with locked_player(sessions, user_id) as (session, state):
        if not state.owns_skin(skin_id):
            raise ValidationError("Skin not unlocked")
        state.current_skin_id = skin_id
    return state


async def connect_wallet(sessions, user_id, wallet_data):
    """Bind a TON wallet after its ton_proof checks out. One account per wallet."""
    if (
        not isinstance(wallet_data, dict)
        or not wallet_data.get("address")
        or not wallet_data.get("proof")
        or not (wallet_data.get("account") or {}).get("publicKey")
    ):
        raise ValidationError("Invalid wallet data provided")
    address = verify_ton_proof(wallet_data)
    if address is None:
        raise ForbiddenError("Signature verification failed")

    try:
        async with transaction(sessions) as session:
            row = await lock_player(session, user_id)
            taken = await session.execute(
                select(User.id).where(User.wallet_address == address, User.id != user_id)
            )
            if taken.first() is not None:
                raise ConflictError(WALLET_TAKEN)
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            user.wallet_address = address
            state = load_state(row)
            state.ton_wallet_address = address
            save_state(row, state)
    except IntegrityError:
        # тот же кошелёк привязали параллельно
        raise ConflictError(WALLET_TAKEN)
    logger.info("User %s connected wallet %s", user_id, address)
    return state


async def set_language(sessions, user_id, language):
    async with transaction(sessions) as session:
        user = await session.get(User, user_id, with_for_update=True)
        if user is None:
            raise NotFoundError("User not found")
        user.language = language
    return _user_view(user)


async def get_leaderboard(sessions, config, limit=C.LEADERBOARD_SIZE):
    async with sessions() as session:
        rows = await session.execute(select(Player.id, Player.data, User.name).outerjoin(User, User.id == Player.id))
        players = []
        for player_id, document, name in rows:
            profit = PlayerState.from_document(document).profit.total
            players.append({"id": player_id, "name": name, "profitPerHour": profit})
    players.sort(key=lambda p: p["profitPerHour"], reverse=True)
    top = players[:limit]
    for entry in top:
        league = league_for(entry["profitPerHour"], config)
        entry["leagueId"] = league.id if league else None
    return {"topPlayers": top, "totalPlayers": len(players)}


# ======================
# Admin
# ======================
async def admin_adjust_balance(sessions, user_id, amount):
    async with locked_player(sessions, user_id) as (session, state):
        ledger.credit(state, float(amount))
    logger.info("Admin adjusted balance of %s by %s", user_id, amount)
    return state


async def admin_reset_daily(sessions, user_id, now=None):
    async with locked_player(sessions, user_id) as (session, state):
        reset_daily(state, now)
    return state


async def admin_reset_progress(sessions, user_id, config, now=None):
    """Wipe game progress; cell membership and the referral counter survive."""
    now = now or utcnow()
    async with transaction(sessions) as session:
        row = await lock_player(session, user_id)
        old = load_state(row)
        state = PlayerState(
            last_login=now,
            daily=DailyState(last_reset=now),
            cell_id=old.cell_id,
            referrals=old.referrals,
            ton_wallet_address=old.ton_wallet_address,
            force_sync=True,
        )
        await release_skins(session, config, old.unlocked_skins)
        save_state(row, state)
        await social.emit_referral_update(session, user_id)
    await social.propagate(sessions, config)
    logger.info("Admin reset progress of %s", user_id)
    return state


async def delete_player(sessions, user_id, config):
    """Remove the player with its user row, cell membership and active listings."""
    async with transaction(sessions) as session:
        current = await get_state(session, user_id)
        if current is None:
            raise NotFoundError("Player not found")
        cell = await lock_cell(session, current.cell_id) if current.cell_id else None
        row = await lock_player(session, user_id)

        if current.cell_id:
            await social.detach_member(session, cell, user_id, config)
        listed = await session.execute(
            select(MarketListing.skin_id)
            .where(MarketListing.owner_id == user_id, MarketListing.is_active.is_(True))
        )
        await release_skins(session, config, load_state(row).unlocked_skins + [skin_id for (skin_id,) in listed])
        await session.execute(
            update(MarketListing)
            .where(MarketListing.owner_id == user_id, MarketListing.is_active.is_(True))
            .values(is_active=False)
        )
        await social.emit_referral_update(session, user_id)
        await session.execute(update(User).where(User.referrer_id == user_id).values(referrer_id=None))
        await session.delete(row)
        user = await session.get(User, user_id)
        if user is not None:
            await session.delete(user)
    await social.propagate(sessions, config)
    logger.info("Player %s deleted", user_id)


async def get_player_details(sessions, user_id):
    async with sessions() as session:
        state = await get_state(session, user_id)
        user = await session.get(User, user_id)
        membership = await session.get(CellMember, user_id)
    if state is None or user is None:
        raise NotFoundError("Player not found")
    return {**state.to_document(), **_user_view(user), "cellMemberSince": membership.joined_at if membership else None}


async def list_players(sessions):
    async with sessions() as session:
        rows = await session.execute(select(Player.id, Player.data, User.name, User.language).outerjoin(User, User.id == Player.id))
        players = []
        for player_id, document, name, language in rows:
            state = PlayerState.from_document(document)
            players.append({
                "id": player_id,
                "name": name,
                "language": language,
                "balance": state.balance,
                "profitPerHour": state.profit.total,
                "referrals": state.referrals,
                "tonWalletAddress": state.ton_wallet_address,
            })
    return sorted(players, key=lambda p: p["balance"], reverse=True)


async def list_cheaters(sessions):
    async with sessions() as session:
        rows = await session.execute(select(Player.id, Player.data, User.name).outerjoin(User, User.id == Player.id))
        return [
            {"id": player_id, "name": name}
            for player_id, document, name in rows
            if PlayerState.from_document(document).cheat.is_cheater
        ]
