# backend/constants.py
# Default game content and fixed mechanics. The content lists are only seeds:
# the live values come from the game_config document (see content.py).

DEFAULT_COIN_SKIN_ID = "default_coin"

# ======================
# Mechanics
# ======================
REFERRAL_BONUS = 5000
REFERRAL_PROFIT_SHARE = 0.10
INITIAL_MAX_ENERGY = 1000
MAX_ENERGY_CAP = 64000

UPGRADE_PRICE_GROWTH = 1.15
UPGRADE_PROFIT_GROWTH = 1.07
BOOST_COST_GROWTH = {
    "boost_tap_guru": 1.5,
    "boost_energy_limit": 1.8,
    "boost_suspicion_limit": 2.0,
}
TAP_GURU_GROWTH = 1.1

BASE_MAX_SUSPICION = 100
SUSPICION_PER_LIMIT_LEVEL = 10
PENALTY_CONFISCATION_RATE = 0.25

LOOTBOX_COST_COINS = 50000
LOOTBOX_COST_STARS = 5
CELL_CREATION_COST = 100000
CELL_MAX_MEMBERS = 10
INFORMANT_RECRUIT_COST = 1000000
CELL_BATTLE_TICKET_COST = 1000000
INVITE_CODE_LENGTH = 6

COMBO_REWARD_DEFAULT = 5000000
CIPHER_REWARD_DEFAULT = 1000000

BOOST_PURCHASE_LIMITS = {
    "boost_full_energy": 6,
    "boost_turbo_mode": 3,
}
BOOST_LIMIT_RESET_COST_STARS = 2

CHEAT_DETECTION_THRESHOLD_TPS = 19
CHEAT_DETECTION_STRIKES_TO_FLAG = 1

CELL_ECONOMY_DEFAULTS = {
    "informantProfitBonus": 0.01,
    "cellBankProfitShare": 0.10,
}

BATTLE_REWARDS_DEFAULT = {
    "firstPlace": 10000000,
    "secondPlace": 5000000,
    "thirdPlace": 2000000,
    "participant": 100000,
}

BATTLE_SCHEDULE_DEFAULT = {
    "frequency": "weekly",
    "dayOfWeek": 1,  # 0 = Sunday
    "startHourUTC": 12,
    "durationHours": 24,
}

LEADERBOARD_SIZE = 100

# ======================
# Default content
# ======================
INITIAL_LEAGUES = [
    {"id": "league4", "name": {"en": "European Baron", "ua": "Європейський Барон", "ru": "Европейский Барон"}, "minProfitPerHour": 100000},
    {"id": "league3", "name": {"en": "Across the Tisza", "ua": "Переплив Тису", "ru": "Переплыл Тиссу"}, "minProfitPerHour": 10000},
    {"id": "league2", "name": {"en": "Grandma's Village", "ua": "В селі у бабці", "ru": "В деревне у бабушки"}, "minProfitPerHour": 1000},
    {"id": "league1", "name": {"en": "In The City", "ua": "В місті", "ru": "В городе"}, "minProfitPerHour": 0},
]

INITIAL_UPGRADES = [
    {"id": "doc1", "name": {"en": "Student ID"}, "price": 100, "profitPerHour": 10, "category": "Documents", "suspicionModifier": -5},
    {"id": "doc2", "name": {"en": "Disability Certificate"}, "price": 1500, "profitPerHour": 80, "category": "Documents", "suspicionModifier": -10},
    {"id": "doc3", "name": {"en": "White Ticket"}, "price": 10000, "profitPerHour": 500, "category": "Documents", "suspicionModifier": 5},
    {"id": "leg1", "name": {"en": "Lawyer Consultation"}, "price": 500, "profitPerHour": 25, "category": "Legal", "suspicionModifier": 0},
    {"id": "leg2", "name": {"en": "Open a Fake Company"}, "price": 5000, "profitPerHour": 200, "category": "Legal", "suspicionModifier": 15},
    {"id": "life1", "name": {"en": "Hide in the Village"}, "price": 2000, "profitPerHour": 100, "category": "Lifestyle", "suspicionModifier": -2},
    {"id": "life2", "name": {"en": "Rent a Bunker"}, "price": 25000, "profitPerHour": 1100, "category": "Lifestyle", "suspicionModifier": 10},
    {"id": "spec1", "name": {"en": "Border Crossing"}, "price": 100000, "profitPerHour": 4000, "category": "Special", "suspicionModifier": 25},
    {"id": "spec2", "name": {"en": "New Identity"}, "price": 500000, "profitPerHour": 20000, "category": "Special", "suspicionModifier": 50},
]

INITIAL_TASKS = [
    {"id": "task1", "name": {"en": "Tap 500 times"}, "type": "taps", "reward": {"type": "coins", "amount": 1000}, "requiredTaps": 500, "suspicionModifier": 0},
    {"id": "task2", "name": {"en": "Daily Check-in"}, "type": "taps", "reward": {"type": "coins", "amount": 500}, "requiredTaps": 1, "suspicionModifier": -1},
    {"id": "task3", "name": {"en": "Join Telegram"}, "type": "telegram_join", "reward": {"type": "profit", "amount": 100}, "url": "https://t.me/durov", "suspicionModifier": 0},
]

INITIAL_SPECIAL_TASKS = [
    {"id": "special1", "name": {"en": "Join Our Channel"}, "type": "telegram_join", "url": "https://t.me/durov", "reward": {"type": "coins", "amount": 100000}, "priceStars": 5, "isOneTime": True, "suspicionModifier": 0},
    {"id": "special2", "name": {"en": "Watch Review"}, "type": "video_watch", "url": "https://youtube.com", "reward": {"type": "coins", "amount": 50000}, "priceStars": 0, "isOneTime": True, "suspicionModifier": 0},
]

INITIAL_BOOSTS = [
    {"id": "boost_full_energy", "name": {"en": "Full Energy"}, "costCoins": 2000, "suspicionModifier": 0},
    {"id": "boost_turbo_mode", "name": {"en": "Turbo Mode"}, "costCoins": 2000, "suspicionModifier": 2},
    {"id": "boost_tap_guru", "name": {"en": "Guru Tapper"}, "costCoins": 1000, "suspicionModifier": 1},
    {"id": "boost_energy_limit", "name": {"en": "Energy Limit"}, "costCoins": 1000, "suspicionModifier": 0},
    {"id": "boost_suspicion_limit", "name": {"en": "Suspicion Limit"}, "costCoins": 10000, "suspicionModifier": 0},
]

INITIAL_BLACK_MARKET_CARDS = [
    {"id": "bm_card1", "name": {"en": "Shadow Courier"}, "profitPerHour": 5000, "boxType": "coin", "chance": 50, "price": 50000, "suspicionModifier": 8},
    {"id": "bm_card2", "name": {"en": "Offshore Account"}, "profitPerHour": 25000, "boxType": "star", "chance": 20, "price": 250000, "suspicionModifier": 20},
]

INITIAL_COIN_SKINS = [
    {"id": DEFAULT_COIN_SKIN_ID, "name": {"en": "Default Coin"}, "profitBoostPercent": 0, "boxType": "direct", "chance": 100, "suspicionModifier": 0},
    {"id": "skin_btc", "name": {"en": "BTC"}, "profitBoostPercent": 1, "boxType": "coin", "chance": 10, "suspicionModifier": 0},
    {"id": "skin_diamond", "name": {"en": "Diamond"}, "profitBoostPercent": 5, "boxType": "star", "chance": 5, "suspicionModifier": 0, "maxSupply": 100},
]

INITIAL_GLITCH_EVENTS = [
    {"id": "glitch_final", "code": "TISZA", "message": {"en": "The border is open."}, "reward": {"type": "coins", "amount": 1000000}, "trigger": {"type": "upgrade_purchased", "params": {"upgradeId": "spec2"}}, "isFinal": True},
]

PENALTY_MESSAGES = {
    "en": [
        "They're coming for the traitor. Escape is a crime against eternal order.",
        "Your anomaly has been noted. A correction unit is en route.",
        "Divergence from the norm is treason. Your assets are now property of the State.",
        "The System has flagged your profile for immediate audit. Do not resist.",
    ],
    "ua": [
        "За зрадником виїхали. Втеча — злочин проти вічного порядку.",
        "Вашу аномалію помічено. Коригувальний загін вже в дорозі.",
        "Відхилення від норми — це зрада. Ваші активи тепер є власністю Держави.",
        "Система позначила ваш профіль для негайної перевірки. Не чиніть опір.",
    ],
    "ru": [
        "За предателем выехали. Побег — преступление против вечного порядка.",
        "Ваша аномалия была замечена. Корректирующий отряд уже в пути.",
        "Отклонение от нормы — это измена. Ваши активы теперь являются собственностью Государства.",
        "Система пометила ваш профиль для немедленной проверки. Не сопротивляйтесь.",
    ],
}
