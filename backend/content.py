# backend/content.py
# Versioned game content: schema of the config document, its store and the
# daily combo/cipher events. Operations receive a GameConfig snapshot and never
# read the table on their own.
import copy
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select

import constants as C
from errors import ConcurrencyConflict, ValidationError
from models import DailyEvent, GameConfigRow

logger = logging.getLogger(__name__)

CONFIG_KEY = "default"


class ContentModel(BaseModel):
    # admin can attach arbitrary presentation fields (names, icons, urls)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Reward(ContentModel):
    type: str
    amount: float = 0


class Upgrade(ContentModel):
    id: str
    price: Optional[float] = None
    profit_per_hour: float = 0
    category: Optional[str] = None
    suspicion_modifier: Optional[float] = 0

    @property
    def base_price(self) -> float:
        if self.price:
            return self.price
        return self.profit_per_hour * 10


class BlackMarketCard(Upgrade):
    box_type: str
    chance: float = 0


class CoinSkin(ContentModel):
    id: str
    profit_boost_percent: float = 0
    box_type: str = "direct"
    chance: float = 0
    suspicion_modifier: Optional[float] = 0
    max_supply: Optional[int] = None


class Task(ContentModel):
    id: str
    type: str
    reward: Reward
    required_taps: int = 0
    secret_code: Optional[str] = None
    suspicion_modifier: Optional[float] = 0
    price_stars: int = 0
    is_one_time: bool = False


class Boost(ContentModel):
    id: str
    cost_coins: float = 0
    suspicion_modifier: Optional[float] = 0
    daily_limit: Optional[int] = None

    @property
    def purchase_limit(self) -> Optional[int]:
        if self.daily_limit is not None:
            return self.daily_limit
        return C.BOOST_PURCHASE_LIMITS.get(self.id)


class GlitchTrigger(ContentModel):
    type: str
    params: Dict[str, Any] = Field(default_factory=dict)


class GlitchEvent(ContentModel):
    id: str
    code: str
    reward: Reward
    trigger: Optional[GlitchTrigger] = None
    is_final: bool = False


class League(ContentModel):
    id: str
    min_profit_per_hour: float = 0


class BattleSchedule(ContentModel):
    frequency: str = "weekly"
    day_of_week: int = 1
    start_hour_utc: int = Field(12, alias="startHourUTC")
    duration_hours: int = 24


class BattleRewards(ContentModel):
    first_place: float = 0
    second_place: float = 0
    third_place: float = 0
    participant: float = 0

    def for_place(self, place: int) -> float:
        return {1: self.first_place, 2: self.second_place, 3: self.third_place}.get(place, self.participant)


class GameConfig(ContentModel):
    version: int = 0
    upgrades: List[Upgrade] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    special_tasks: List[Task] = Field(default_factory=list)
    boosts: List[Boost] = Field(default_factory=list)
    black_market_cards: List[BlackMarketCard] = Field(default_factory=list)
    coin_skins: List[CoinSkin] = Field(default_factory=list)
    glitch_events: List[GlitchEvent] = Field(default_factory=list)
    leagues: List[League] = Field(default_factory=list)
    battle_schedule: BattleSchedule = Field(default_factory=lambda: BattleSchedule(**C.BATTLE_SCHEDULE_DEFAULT))
    battle_rewards: BattleRewards = Field(default_factory=lambda: BattleRewards(**C.BATTLE_REWARDS_DEFAULT))
    cell_creation_cost: float = C.CELL_CREATION_COST
    cell_max_members: int = C.CELL_MAX_MEMBERS
    informant_recruit_cost: float = C.INFORMANT_RECRUIT_COST
    lootbox_cost_coins: float = C.LOOTBOX_COST_COINS
    lootbox_cost_stars: int = C.LOOTBOX_COST_STARS
    cell_battle_ticket_cost: float = C.CELL_BATTLE_TICKET_COST
    informant_profit_bonus: float = C.CELL_ECONOMY_DEFAULTS["informantProfitBonus"]
    cell_bank_profit_share: float = C.CELL_ECONOMY_DEFAULTS["cellBankProfitShare"]
    boost_limit_reset_cost_stars: int = C.BOOST_LIMIT_RESET_COST_STARS

    def find_upgrade(self, upgrade_id: str) -> Optional[Upgrade]:
        for item in [*self.upgrades, *self.black_market_cards]:
            if item.id == upgrade_id:
                return item
        return None

    def find_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def find_special_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.special_tasks if t.id == task_id), None)

    def find_boost(self, boost_id: str) -> Optional[Boost]:
        return next((b for b in self.boosts if b.id == boost_id), None)

    def find_skin(self, skin_id: str) -> Optional[CoinSkin]:
        return next((s for s in self.coin_skins if s.id == skin_id), None)

    def find_glitch_event(self, code: str) -> Optional[GlitchEvent]:
        code = str(code).upper()
        return next((e for e in self.glitch_events if str(e.code).upper() == code), None)

    def final_glitch_event(self) -> Optional[GlitchEvent]:
        return next((e for e in self.glitch_events if e.is_final), None)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"version"})


def default_document() -> Dict[str, Any]:
    return copy.deepcopy({
        "upgrades": C.INITIAL_UPGRADES,
        "tasks": C.INITIAL_TASKS,
        "specialTasks": C.INITIAL_SPECIAL_TASKS,
        "boosts": C.INITIAL_BOOSTS,
        "blackMarketCards": C.INITIAL_BLACK_MARKET_CARDS,
        "coinSkins": C.INITIAL_COIN_SKINS,
        "glitchEvents": C.INITIAL_GLITCH_EVENTS,
        "leagues": C.INITIAL_LEAGUES,
        "battleSchedule": C.BATTLE_SCHEDULE_DEFAULT,
        "battleRewards": C.BATTLE_REWARDS_DEFAULT,
        "cellCreationCost": C.CELL_CREATION_COST,
        "cellMaxMembers": C.CELL_MAX_MEMBERS,
        "informantRecruitCost": C.INFORMANT_RECRUIT_COST,
        "lootboxCostCoins": C.LOOTBOX_COST_COINS,
        "lootboxCostStars": C.LOOTBOX_COST_STARS,
        "cellBattleTicketCost": C.CELL_BATTLE_TICKET_COST,
        "informantProfitBonus": C.CELL_ECONOMY_DEFAULTS["informantProfitBonus"],
        "cellBankProfitShare": C.CELL_ECONOMY_DEFAULTS["cellBankProfitShare"],
        "boostLimitResetCostStars": C.BOOST_LIMIT_RESET_COST_STARS,
    })


def merge_defaults(document: Dict[str, Any]) -> bool:
    """Add default items missing by id and scalar keys missing entirely.

    Existing values are never overwritten. Returns True when the document changed.
    """
    changed = False
    for key, value in default_document().items():
        if isinstance(value, list):
            items = document.get(key)
            if not isinstance(items, list):
                document[key] = items = []
                changed = True
            known = {item.get("id") for item in items if isinstance(item, dict)}
            for item in value:
                if item["id"] not in known:
                    items.append(dict(item))
                    changed = True
        elif key not in document:
            document[key] = value
            changed = True
    return changed


def parse_config(document: Dict[str, Any], version: int = 0) -> GameConfig:
    try:
        return GameConfig.model_validate({**document, "version": version})
    except ValueError as e:
        raise ValidationError(f"Invalid game config: {e}") from e


# ======================
# Store
# ======================
async def load_config(sessions) -> GameConfig:
    async with sessions() as session:
        row = await session.get(GameConfigRow, CONFIG_KEY)
    if row is None:
        return parse_config(default_document())
    return parse_config(row.value, row.version)


async def seed_config(sessions) -> GameConfig:
    async with sessions() as session:
        async with session.begin():
            row = await session.get(GameConfigRow, CONFIG_KEY, with_for_update=True)
            if row is None:
                row = GameConfigRow(key=CONFIG_KEY, value=default_document(), version=1)
                session.add(row)
                logger.info("Initial game config seeded to the database.")
            else:
                document = copy.deepcopy(row.value)
                if merge_defaults(document):
                    row.value = document
                    row.version += 1
                    logger.info("Game config migrated to version %s", row.version)
            document, version = row.value, row.version
    return parse_config(document, version)


async def save_config(sessions, document: Dict[str, Any], expected_version: Optional[int] = None) -> GameConfig:
    """Replace the content document; bumps the version.

    With expected_version set, a concurrent edit by another admin is rejected.
    """
    parse_config(document)
    async with sessions() as session:
        async with session.begin():
            row = await session.get(GameConfigRow, CONFIG_KEY, with_for_update=True)
            if row is None:
                row = GameConfigRow(key=CONFIG_KEY, value=document, version=1)
                session.add(row)
            else:
                if expected_version is not None and row.version != expected_version:
                    raise ConcurrencyConflict(
                        f"Config was modified (version {row.version}, expected {expected_version})"
                    )
                row.value = document
                row.version += 1
            version = row.version
    logger.info("Game config saved, version %s", version)
    return parse_config(document, version)


def league_for(profit_per_hour: float, config: GameConfig) -> Optional[League]:
    leagues = sorted(config.leagues, key=lambda l: l.min_profit_per_hour, reverse=True)
    for league in leagues:
        if profit_per_hour >= league.min_profit_per_hour:
            return league
    return None


# ======================
# Daily events
# ======================
async def get_daily_event(session, event_date: date) -> Optional[DailyEvent]:
    return await session.get(DailyEvent, event_date)


async def save_daily_event(sessions, event_date: date, combo_ids: List[str], cipher_word: str,
                           combo_reward: Optional[int] = None, cipher_reward: Optional[int] = None) -> DailyEvent:
    if combo_ids and len(combo_ids) != 3:
        raise ValidationError("Combo must contain exactly 3 upgrades.")
    async with sessions() as session:
        async with session.begin():
            event = await session.get(DailyEvent, event_date, with_for_update=True)
            if event is None:
                event = DailyEvent(event_date=event_date)
                session.add(event)
            event.combo_ids = list(combo_ids or [])
            event.cipher_word = cipher_word
            event.combo_reward = combo_reward or C.COMBO_REWARD_DEFAULT
            event.cipher_reward = cipher_reward or C.CIPHER_REWARD_DEFAULT
    return event


def daily_event_view(event: Optional[DailyEvent], reveal_cipher: bool = True) -> Optional[Dict[str, Any]]:
    if event is None:
        return None
    view = {
        "comboIds": event.combo_ids,
        "comboReward": event.combo_reward,
        "cipherReward": event.cipher_reward,
    }
    # players only see the reward, the word itself is the puzzle
    if reveal_cipher:
        view["cipherWord"] = event.cipher_word
    return view
