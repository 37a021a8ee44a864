import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Application environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"

# Database settings (unset -> in-memory state, lost on restart)
DATABASE_URL = os.getenv("DATABASE_URL", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Application settings
APP_NAME = "Party Crisis API"
APP_VERSION = "1.0.0"

# Admin access (X-Admin-Token header)
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

# Redis settings (rate limiting); empty -> in-memory limiter
REDIS_URL = os.getenv("REDIS_URL", "")

# Scheduler: disable to drive the game externally (tests, replicas)
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

# Party Crisis game settings
BETTING_DURATION = int(os.getenv("BETTING_DURATION", "60"))  # seconds
KILLER_DURATION = int(os.getenv("KILLER_DURATION", "15"))  # walk + strike + retreat
SETTLING_DURATION = int(os.getenv("SETTLING_DURATION", "6"))  # result display
MIN_BET = os.getenv("MIN_BET", "1")
MAX_BET = os.getenv("MAX_BET", "500")
PLATFORM_FEE = os.getenv("PLATFORM_FEE", "0.10")
ROOM_COUNT = 8
TARGET_OVERRIDE_WINDOW = int(os.getenv("TARGET_OVERRIDE_WINDOW", "2"))  # last N seconds of betting
GAME_RETENTION_SECONDS = int(os.getenv("GAME_RETENTION_SECONDS", "600"))
HISTORY_LIMIT = 20
STATUS_HISTORY_LIMIT = 10

# Synthetic liquidity ("bots")
ROOM_BET_MIN = int(os.getenv("ROOM_BET_MIN", "4200"))  # per-room target band
ROOM_BET_MAX = int(os.getenv("ROOM_BET_MAX", "5800"))
BOT_BET_MIN = int(os.getenv("BOT_BET_MIN", "50"))
BOT_BET_MAX = int(os.getenv("BOT_BET_MAX", "600"))
BOT_COUNT_MAX = int(os.getenv("BOT_COUNT_MAX", "90"))

# Deposits / withdrawals
MIN_DEPOSIT = os.getenv("MIN_DEPOSIT", "1")
MIN_WITHDRAW = os.getenv("MIN_WITHDRAW", "1")

# Withdrawal risk controls
WITHDRAW_COOLDOWN_SECONDS = int(os.getenv("WITHDRAW_COOLDOWN_SECONDS", "300"))
DAILY_WITHDRAW_AMOUNT_LIMIT = os.getenv("DAILY_WITHDRAW_AMOUNT_LIMIT", "10000")
WITHDRAW_REVIEW_RATIO = os.getenv("WITHDRAW_REVIEW_RATIO", "4")
LARGE_WITHDRAW_THRESHOLD = os.getenv("LARGE_WITHDRAW_THRESHOLD", "5000")
FAILED_WITHDRAW_LIMIT = int(os.getenv("FAILED_WITHDRAW_LIMIT", "5"))
WITHDRAW_LOCK_TIMEOUT_SECONDS = float(os.getenv("WITHDRAW_LOCK_TIMEOUT_SECONDS", "30"))
WITHDRAW_LOCK_WAIT_SECONDS = float(os.getenv("WITHDRAW_LOCK_WAIT_SECONDS", "5"))
BET_LOCK_TIMEOUT_SECONDS = float(os.getenv("BET_LOCK_TIMEOUT_SECONDS", "10"))
RECONCILIATION_GRACE_SECONDS = int(os.getenv("RECONCILIATION_GRACE_SECONDS", "120"))

# Rate limits (requests per minute per client IP)
WITHDRAW_RATE_LIMIT_PER_MINUTE = int(os.getenv("WITHDRAW_RATE_LIMIT_PER_MINUTE", "3"))
GENERAL_RATE_LIMIT_PER_MINUTE = int(os.getenv("GENERAL_RATE_LIMIT_PER_MINUTE", "30"))

# Chain settings (deposit verification over JSON-RPC)
RPC_URL = os.getenv("RPC_URL", "https://rpc.berachain.com")
DP_TOKEN = os.getenv("DP_TOKEN", "0xf7C464c7832e59855aa245Ecc7677f54B3460e7d")
PLATFORM_RECEIVER = os.getenv("GAME_PLATFORM_RECEIVER", "")
REQUIRED_CONFIRMATIONS = int(os.getenv("REQUIRED_CONFIRMATIONS", "3"))
TOKEN_DECIMALS = int(os.getenv("TOKEN_DECIMALS", "18"))
RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "10"))

# Outbound transfers are signed by a separate custody service
TRANSFER_SERVICE_URL = os.getenv("TRANSFER_SERVICE_URL", "")
TRANSFER_SERVICE_TOKEN = os.getenv("TRANSFER_SERVICE_TOKEN", "")
TRANSFER_TIMEOUT_SECONDS = float(os.getenv("TRANSFER_TIMEOUT_SECONDS", "60"))
