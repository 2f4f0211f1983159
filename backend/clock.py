from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from settings import GAME_TIMEZONE

TZ = ZoneInfo(GAME_TIMEZONE)


def utcnow():
    return datetime.now(timezone.utc)


def game_date(moment=None):
    """Calendar date of a moment in the game's reference timezone."""
    moment = moment or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(TZ).date()
