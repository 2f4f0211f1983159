# backend/state.py
# Typed player aggregate stored as the players.data JSON document.
# Field aliases keep the camelCase names the game client reads.
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from constants import DEFAULT_COIN_SKIN_ID, INITIAL_MAX_ENERGY


def _utcnow():
    return datetime.now(timezone.utc)


class StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, validate_assignment=False)


class ProfitBreakdown(StateModel):
    """Hourly profit split by source. The total is never stored on its own."""

    base: float = 0  # upgrades and black-market cards
    referral: float = 0
    cell_bonus: float = 0
    tasks: float = 0

    @computed_field
    @property
    def total(self) -> float:
        return self.base + self.referral + self.cell_bonus + self.tasks

    @property
    def own(self) -> float:
        """Profit the player earns without referral and cell contributions."""
        return self.base + self.tasks


class DailyState(StateModel):
    last_reset: datetime = Field(default_factory=_utcnow)
    taps: int = 0
    completed_task_ids: List[str] = Field(default_factory=list)
    claimed_combo: bool = False
    claimed_cipher: bool = False
    upgrades: List[str] = Field(default_factory=list)
    boost_purchases: Dict[str, int] = Field(default_factory=dict)


class CheatState(StateModel):
    strikes: int = 0
    log: List[Dict[str, Any]] = Field(default_factory=list)
    is_cheater: bool = False


class GlitchState(StateModel):
    discovered: List[str] = Field(default_factory=list)
    claimed: List[str] = Field(default_factory=list)
    shown: List[str] = Field(default_factory=list)


class PenaltyEntry(StateModel):
    type: str = "confiscation_25_percent"
    timestamp: datetime
    message: str


class PlayerState(StateModel):
    balance: float = 0
    energy: float = INITIAL_MAX_ENERGY
    coins_per_tap: int = 1
    profit: ProfitBreakdown = Field(default_factory=ProfitBreakdown)
    suspicion: float = 0
    penalty_log: List[PenaltyEntry] = Field(default_factory=list)

    upgrades: Dict[str, int] = Field(default_factory=dict)
    tap_guru_level: int = 0
    energy_limit_level: int = 0
    suspicion_limit_level: int = 0

    referrals: int = 0
    cell_id: Optional[int] = None

    unlocked_skins: List[str] = Field(default_factory=lambda: [DEFAULT_COIN_SKIN_ID])
    current_skin_id: str = DEFAULT_COIN_SKIN_ID

    daily: DailyState = Field(default_factory=DailyState)
    purchased_special_task_ids: List[str] = Field(default_factory=list)
    completed_special_task_ids: List[str] = Field(default_factory=list)

    cheat: CheatState = Field(default_factory=CheatState)
    glitch: GlitchState = Field(default_factory=GlitchState)

    market_credits: float = 0
    ton_wallet_address: str = ""

    last_login: datetime = Field(default_factory=_utcnow)
    last_purchase_result: Optional[Dict[str, Any]] = None
    force_sync: bool = False

    @computed_field(alias="profitPerHour")
    @property
    def profit_per_hour(self) -> float:
        return self.profit.total

    # ---- skin set ----
    def owns_skin(self, skin_id: str) -> bool:
        return skin_id in self.unlocked_skins

    def unlock_skin(self, skin_id: str) -> None:
        if skin_id not in self.unlocked_skins:
            self.unlocked_skins.append(skin_id)

    def remove_skin(self, skin_id: str) -> None:
        if skin_id in self.unlocked_skins:
            self.unlocked_skins.remove(skin_id)
        if self.current_skin_id == skin_id:
            self.current_skin_id = DEFAULT_COIN_SKIN_ID

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> "PlayerState":
        return cls.model_validate(document or {})
