# backend/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date

from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup, LabeledPrice, WebAppInfo
from telegram.ext import Application, CommandHandler, CallbackContext, MessageHandler, PreCheckoutQueryHandler, filters

# === Наши модули ===
import battles
import loot
import market
import models  # noqa: F401  регистрирует таблицы в Base.metadata
import payments
import progression
import social
from auth import check_admin_token, telegram_user
from content import daily_event_view, get_daily_event, load_config, save_config, save_daily_event, seed_config
from database import AsyncSessionLocal, create_tables
from errors import (
    ConcurrencyConflict, ConflictError, ForbiddenError, GameError, InsufficientFundsError,
    NotFoundError, ValidationError,
)
from settings import ADMIN_TOKEN, BATTLE_SWEEP_INTERVAL, BOT_TOKEN, FRONTEND_URL, PORT, WEBHOOK_URL

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

sessions = AsyncSessionLocal

# ======================
# Telegram bot
# ======================
application = None
if BOT_TOKEN:
    application = Application.builder().token(BOT_TOKEN).build()


async def start(update: Update, context: CallbackContext):
    web_url = FRONTEND_URL or f"{(WEBHOOK_URL or '').rsplit('/', 1)[0]}/"
    keyboard = [[InlineKeyboardButton("Play", web_app=WebAppInfo(url=web_url))]]
    await update.message.reply_text("Tap, build your network, stay under the radar.", reply_markup=InlineKeyboardMarkup(keyboard))


async def pre_checkout(update: Update, context: CallbackContext):
    query = update.pre_checkout_query
    logger.info("Received pre-checkout query for payload: %s", query.invoice_payload)
    try:
        payments.parse_payload(query.invoice_payload)
    except ValidationError:
        await query.answer(ok=False, error_message="Invalid payload.")
        return
    await query.answer(ok=True)


async def successful_payment(update: Update, context: CallbackContext):
    payment = update.message.successful_payment
    logger.info("Received successful payment for payload: %s", payment.invoice_payload)
    config = await load_config(sessions)
    try:
        await payments.process_successful_payment(
            sessions, payment.invoice_payload, config, charge_id=payment.telegram_payment_charge_id,
        )
    except GameError:
        logger.exception("Failed to process successful payment for payload %s", payment.invoice_payload)


if application:
    application.add_handler(CommandHandler("start", start))
    application.add_handler(PreCheckoutQueryHandler(pre_checkout))
    application.add_handler(MessageHandler(filters.SUCCESSFUL_PAYMENT, successful_payment))


# ======================
# Periodic sweep
# ======================
async def sweep_loop():
    while True:
        try:
            config = await load_config(sessions)
            await battles.tick(sessions, config)
            await social.propagate(sessions, config)
        except Exception:
            logger.exception("Periodic sweep failed")
        await asyncio.sleep(BATTLE_SWEEP_INTERVAL)


# ======================
# Lifespan
# ======================
@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    await seed_config(sessions)

    if application:
        await application.initialize()
        if WEBHOOK_URL:
            await application.bot.delete_webhook(drop_pending_updates=True)
            await application.bot.set_webhook(url=WEBHOOK_URL)

    sweeper = asyncio.create_task(sweep_loop())
    yield
    sweeper.cancel()

    if application:
        await application.shutdown()

app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    ValidationError: 400,
    InsufficientFundsError: 402,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConcurrencyConflict: 409,
    ConflictError: 409,
}


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"error": str(exc)})


# ======================
# Dependencies
# ======================
async def get_config():
    return await load_config(sessions)


async def current_user_id(request: Request) -> int:
    """Player id from signed initData; without a bot token the X-User-Id header is trusted."""
    if BOT_TOKEN:
        tg_user = telegram_user(request.headers.get("X-Telegram-WebApp-InitData", ""), BOT_TOKEN)
        if not tg_user or not tg_user.get("id"):
            raise HTTPException(status_code=403, detail="Auth failed")
        return int(tg_user["id"])
    try:
        return int(request.headers.get("X-User-Id", ""))
    except ValueError:
        raise HTTPException(status_code=403, detail="Auth failed")


async def require_admin(request: Request):
    if not check_admin_token(request.headers.get("X-Admin-Token"), ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="Unauthorized")


def player_json(state):
    return state.to_document()


# ======================
# Webhook
# ======================
@app.post("/api/telegram-webhook")
async def webhook(request: Request):
    if not application:
        return {"status": "ok", "note": "no-telegram"}
    update_json = await request.json()
    update = Update.de_json(update_json, application.bot)
    if update:
        await application.process_update(update)
    return {"status": "ok"}


# ======================
# API: login / sync
# ======================
@app.post("/api/login")
async def login(request: Request, config=Depends(get_config)):
    payload = await request.json()
    tg_user = payload.get("tgUser")
    if BOT_TOKEN:
        tg_user = telegram_user(request.headers.get("X-Telegram-WebApp-InitData", ""), BOT_TOKEN)
        if not tg_user:
            raise HTTPException(status_code=403, detail="Auth failed")
    result = await progression.login(
        sessions, tg_user, config,
        start_param=payload.get("startParam"),
        country=request.headers.get("CF-IPCountry"),
    )
    return {
        "user": result["user"],
        "player": player_json(result["player"]),
        "config": {**config.to_document(), "dailyEvent": result["dailyEvent"]},
    }


@app.post("/api/sync")
async def sync(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    state = await progression.sync_taps(sessions, user_id, payload.get("taps", 0), config, energy=payload.get("energy"))
    return {"player": player_json(state)}


@app.post("/api/sync-after-payment")
async def sync_after_payment(user_id: int = Depends(current_user_id)):
    state, result = await progression.sync_after_payment(sessions, user_id)
    return {"player": player_json(state), "wonItem": result}


# ======================
# API: actions
# ======================
ACTIONS = {
    "buy-upgrade": lambda uid, body, config: progression.buy_upgrade(sessions, uid, body.get("upgradeId"), config),
    "buy-boost": lambda uid, body, config: progression.buy_boost(sessions, uid, body.get("boostId"), config),
    "claim-task": lambda uid, body, config: progression.claim_daily_task(sessions, uid, body.get("taskId"), config, code=body.get("code")),
    "unlock-free-task": lambda uid, body, config: progression.unlock_special_task(sessions, uid, body.get("taskId"), config),
    "complete-task": lambda uid, body, config: progression.complete_special_task(sessions, uid, body.get("taskId"), config, code=body.get("code")),
    "claim-combo": lambda uid, body, config: progression.claim_combo(sessions, uid, config),
    "claim-cipher": lambda uid, body, config: progression.claim_cipher(sessions, uid, body.get("cipher"), config),
    "open-lootbox": lambda uid, body, config: loot.open_lootbox(sessions, uid, body.get("boxType"), config),
    "set-skin": lambda uid, body, config: progression.set_skin(sessions, uid, body.get("skinId")),
    "discover-glitch": lambda uid, body, config: progression.discover_glitch_code(sessions, uid, body.get("code"), config),
    "claim-glitch-code": lambda uid, body, config: progression.claim_glitch_code(sessions, uid, body.get("code"), config),
    "mark-glitch-shown": lambda uid, body, config: progression.mark_glitch_shown(sessions, uid, body.get("code")),
}


@app.post("/api/action/{action}")
async def game_action(action: str, request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    handler = ACTIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail="Action not found")
    body = await request.json()
    result = await handler(user_id, body, config)

    if isinstance(result, tuple):
        state, extra = result
        key = "wonItem" if action == "open-lootbox" else "reward"
        if hasattr(extra, "model_dump"):
            extra = extra.model_dump(mode="json", by_alias=True)
        return {"player": player_json(state), key: extra}
    return {"player": player_json(result)}


@app.post("/api/create-star-invoice")
async def create_star_invoice(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    if not application:
        raise HTTPException(status_code=500, detail="Bot Token is not configured.")
    payload = await request.json()
    invoice = await payments.build_invoice(sessions, user_id, payload.get("payloadType"), payload.get("itemId"), config)
    link = await application.bot.create_invoice_link(
        title=invoice["title"],
        description=invoice["description"],
        payload=invoice["payload"],
        provider_token="",  # пусто для Telegram Stars
        currency=invoice["currency"],
        prices=[LabeledPrice(p["label"], p["amount"]) for p in invoice["prices"]],
    )
    return {"ok": True, "invoiceLink": link}


@app.post("/api/user/connect-wallet")
async def connect_wallet(request: Request, user_id: int = Depends(current_user_id)):
    payload = await request.json()
    state = await progression.connect_wallet(sessions, user_id, payload.get("walletData"))
    return {"player": player_json(state)}


@app.post("/api/user/language")
async def set_language(request: Request, user_id: int = Depends(current_user_id)):
    payload = await request.json()
    return {"user": await progression.set_language(sessions, user_id, payload.get("language") or "en")}


@app.get("/api/leaderboard")
async def leaderboard(config=Depends(get_config)):
    return await progression.get_leaderboard(sessions, config)


# ======================
# API: cells
# ======================
@app.post("/api/cell/create")
async def create_cell(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    state, cell = await social.create_cell(sessions, user_id, payload.get("name"), config)
    return {"player": player_json(state), "cell": cell}


@app.post("/api/cell/join")
async def join_cell(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    state, cell = await social.join_cell(sessions, user_id, payload.get("inviteCode"), config)
    return {"player": player_json(state), "cell": cell}


@app.post("/api/cell/leave")
async def leave_cell(user_id: int = Depends(current_user_id), config=Depends(get_config)):
    state = await social.leave_cell(sessions, user_id, config)
    return {"player": player_json(state)}


@app.get("/api/cell/my-cell")
async def my_cell(user_id: int = Depends(current_user_id), config=Depends(get_config)):
    async with sessions() as session:
        membership = await session.get(models.CellMember, user_id)
    if membership is None:
        return {"cell": None}
    return {"cell": await social.get_cell(sessions, membership.cell_id, config)}


@app.post("/api/cell/buy-ticket")
async def buy_ticket(user_id: int = Depends(current_user_id), config=Depends(get_config)):
    return {"cell": await social.buy_battle_ticket(sessions, user_id, config)}


@app.post("/api/informant/recruit")
async def recruit_informant(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    return {"cell": await social.recruit_informant(sessions, user_id, payload.get("informant"), config)}


# ======================
# API: battles
# ======================
@app.get("/api/battle/status")
async def battle_status(user_id: int = Depends(current_user_id)):
    async with sessions() as session:
        membership = await session.get(models.CellMember, user_id)
    return await battles.get_battle_status(sessions, membership.cell_id if membership else None)


@app.post("/api/battle/join")
async def battle_join(user_id: int = Depends(current_user_id)):
    return await battles.join_active_battle(sessions, user_id)


@app.get("/api/battle/leaderboard")
async def battle_leaderboard():
    return await battles.get_battle_leaderboard(sessions)


# ======================
# API: market
# ======================
@app.get("/api/market/listings")
async def market_listings():
    return await market.get_listings(sessions)


@app.post("/api/market/list")
async def market_list(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    state, listing = await market.list_skin(sessions, user_id, payload.get("skinId"), payload.get("price"), config)
    return {"player": player_json(state), "listing": listing}


@app.post("/api/market/cancel")
async def market_cancel(request: Request, user_id: int = Depends(current_user_id)):
    payload = await request.json()
    state = await market.cancel_listing(sessions, user_id, payload.get("listingId"))
    return {"player": player_json(state)}


@app.post("/api/market/purchase")
async def market_purchase(request: Request, user_id: int = Depends(current_user_id), config=Depends(get_config)):
    payload = await request.json()
    state = await market.purchase_listing(sessions, user_id, payload.get("listingId"), config)
    return {"player": player_json(state)}


# ======================
# Admin
# ======================
@app.get("/admin/api/config", dependencies=[Depends(require_admin)])
async def admin_get_config(config=Depends(get_config)):
    return {"version": config.version, "config": config.to_document()}


@app.post("/admin/api/config", dependencies=[Depends(require_admin)])
async def admin_save_config(request: Request):
    payload = await request.json()
    config = await save_config(sessions, payload.get("config") or {}, payload.get("version"))
    return {"version": config.version}


@app.get("/admin/api/players", dependencies=[Depends(require_admin)])
async def admin_players():
    return await progression.list_players(sessions)


@app.get("/admin/api/cheaters", dependencies=[Depends(require_admin)])
async def admin_cheaters():
    return await progression.list_cheaters(sessions)


@app.get("/admin/api/player/{player_id}/details", dependencies=[Depends(require_admin)])
async def admin_player_details(player_id: int):
    return await progression.get_player_details(sessions, player_id)


@app.delete("/admin/api/player/{player_id}", dependencies=[Depends(require_admin)])
async def admin_delete_player(player_id: int, config=Depends(get_config)):
    await progression.delete_player(sessions, player_id, config)
    return {"status": "deleted"}


@app.post("/admin/api/player/{player_id}/update-balance", dependencies=[Depends(require_admin)])
async def admin_update_balance(player_id: int, request: Request):
    payload = await request.json()
    try:
        amount = float(payload.get("amount"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid amount")
    state = await progression.admin_adjust_balance(sessions, player_id, amount)
    return {"player": player_json(state)}


@app.post("/admin/api/player/{player_id}/reset-daily", dependencies=[Depends(require_admin)])
async def admin_reset_daily(player_id: int):
    state = await progression.admin_reset_daily(sessions, player_id)
    return {"player": player_json(state)}


@app.post("/admin/api/player/{player_id}/reset-progress", dependencies=[Depends(require_admin)])
async def admin_reset_progress(player_id: int, config=Depends(get_config)):
    state = await progression.admin_reset_progress(sessions, player_id, config)
    return {"player": player_json(state)}


@app.get("/admin/api/daily-events/{event_date}", dependencies=[Depends(require_admin)])
async def admin_get_daily_event(event_date: date):
    async with sessions() as session:
        return daily_event_view(await get_daily_event(session, event_date))


@app.post("/admin/api/daily-events", dependencies=[Depends(require_admin)])
async def admin_save_daily_event(request: Request):
    payload = await request.json()
    try:
        event_date = date.fromisoformat(payload.get("date") or "")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date")
    event = await save_daily_event(
        sessions, event_date, payload.get("comboIds") or [], payload.get("cipherWord"),
        payload.get("comboReward"), payload.get("cipherReward"),
    )
    return daily_event_view(event)


@app.post("/admin/api/battle/force-start", dependencies=[Depends(require_admin)])
async def admin_force_start(config=Depends(get_config)):
    return await battles.force_start(sessions, config)


@app.post("/admin/api/battle/force-end", dependencies=[Depends(require_admin)])
async def admin_force_end(config=Depends(get_config)):
    return await battles.force_end(sessions, config)


@app.get("/admin/api/battle/status", dependencies=[Depends(require_admin)])
async def admin_battle_status():
    return {"status": await battles.get_battle_status(sessions), "leaderboard": await battles.get_battle_leaderboard(sessions)}


# ======================
# Health
# ======================
@app.get("/health")
async def health():
    return {"status": "ok", "message": "clicker backend ready"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=PORT)
