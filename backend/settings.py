import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./clicker.db")
BOT_TOKEN = os.getenv("BOT_TOKEN")
WEBHOOK_URL = os.getenv("WEBHOOK_URL")
FRONTEND_URL = os.getenv("FRONTEND_URL", "")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# Календарные сутки считаются в этой зоне (daily reset, combo/cipher)
GAME_TIMEZONE = os.getenv("GAME_TIMEZONE", "UTC")

BATTLE_SWEEP_INTERVAL = int(os.getenv("BATTLE_SWEEP_INTERVAL", 60))
PROPAGATION_MAX_ATTEMPTS = int(os.getenv("PROPAGATION_MAX_ATTEMPTS", 5))
PORT = int(os.getenv("PORT", 10000))
