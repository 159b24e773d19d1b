import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./giftvault.db")

# 'sql' | 'memory'
INVENTORY_BACKEND = os.getenv("INVENTORY_BACKEND", "sql").lower()
# 'memory' | 'redis'
RATELIMIT_BACKEND = os.getenv("RATELIMIT_BACKEND", "memory").lower()

# postgres pool; the gate defaults to the pool size (1 for sqlite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
# Fernet key (urlsafe base64, 32 bytes). Derived from SECRET_KEY when unset.
ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

ORDER_TTL_MINUTES = int(os.getenv("ORDER_TTL_MINUTES", "30"))
FULFILLMENT_CLAIM_TTL_SECONDS = float(
    os.getenv("FULFILLMENT_CLAIM_TTL_SECONDS", "60")
)
FULFILLMENT_CLAIM_WAIT_SECONDS = float(
    os.getenv("FULFILLMENT_CLAIM_WAIT_SECONDS", "5")
)

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
WEBHOOK_FAILURE_THRESHOLD = int(os.getenv("WEBHOOK_FAILURE_THRESHOLD", "5"))
WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3"))
WEBHOOK_RETRY_BASE_SECONDS = float(
    os.getenv("WEBHOOK_RETRY_BASE_SECONDS", "2")
)
WEBHOOK_LOG_RETENTION_DAYS = int(os.getenv("WEBHOOK_LOG_RETENTION_DAYS", "90"))
WEBHOOK_USER_AGENT = "GiftVault-Webhooks/1.0"

API_RATE_LIMIT_PER_MINUTE = int(os.getenv("API_RATE_LIMIT_PER_MINUTE", "100"))
INVITATION_LIMIT_PER_HOUR = int(os.getenv("INVITATION_LIMIT_PER_HOUR", "10"))
RESEND_LIMIT_PER_HOUR = int(os.getenv("RESEND_LIMIT_PER_HOUR", "3"))

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))

# seconds between background sweeps; 0 turns the loop off
MAINTENANCE_INTERVAL_SECONDS = float(
    os.getenv("MAINTENANCE_INTERVAL_SECONDS", "60")
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
JSON_LOGS = os.getenv("JSON_LOGS", "1") not in ("0", "false", "False", "")
