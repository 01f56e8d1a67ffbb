"""
Configuration module for the Reliance Engine.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from pathlib import Path
from typing import Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("RELIANCE_ENV", "dev")  # dev|stage|prod

# Bearer tokens (unset => authenticated routes refuse every request)
API_AUTH_TOKEN = os.getenv("API_AUTH_TOKEN", "")
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")

# Paths
DATA_DIR = os.getenv("DATA_DIR", "data")
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "jsonl")  # jsonl|sqlite|s3_object_lock
LEDGER_PATH = os.getenv("LEDGER_PATH", os.path.join(DATA_DIR, "audit_ledger.jsonl"))
EVIDENCE_DB_PATH = os.getenv("EVIDENCE_DB_PATH", os.path.join(DATA_DIR, "reliance.db"))
WAL_PATH = os.getenv("WAL_PATH", os.path.join(DATA_DIR, "outbox.wal"))
TRUST_STORE_PATH = os.getenv("TRUST_STORE_PATH", "trust/trust_store.json")

# Shared store
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "2.0"))

# Counterparty under reliance
COUNTERPARTY_ID = os.getenv("COUNTERPARTY_ID", "BANK-001")
COUNTERPARTY_LIVENESS_URL = os.getenv(
    "COUNTERPARTY_LIVENESS_URL", "https://localhost:3001/v1/heartbeat-response"
)
COUNTERPARTY_KID = os.getenv("COUNTERPARTY_KID", "counterparty-01")
COUNTERPARTY_VERIFY_TLS = os.getenv("COUNTERPARTY_VERIFY_TLS", "1").lower() in ("1", "true", "yes")

# Kill switch (the counterparty must answer within 30s; 29s leaves headroom)
LIVENESS_INTERVAL_SECONDS = int(os.getenv("LIVENESS_INTERVAL_SECONDS", "60"))
LIVENESS_TIMEOUT_SECONDS = float(os.getenv("LIVENESS_TIMEOUT_SECONDS", "29"))
LIVENESS_MAX_ATTEMPTS = int(os.getenv("LIVENESS_MAX_ATTEMPTS", "3"))
LIVENESS_RETRY_DELAY_SECONDS = float(os.getenv("LIVENESS_RETRY_DELAY_SECONDS", "10"))
GRACE_PERIOD_SECONDS = int(os.getenv("GRACE_PERIOD_SECONDS", str(4 * 60 * 60)))

# Downstream administrator notifications
ADMIN_WEBHOOK_URL = os.getenv("ADMIN_WEBHOOK_URL", "http://localhost:4000/v1/admin-ingest")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))
QUEUE_POLL_SECONDS = int(os.getenv("QUEUE_POLL_SECONDS", "15"))
QUEUE_WORKERS = int(os.getenv("QUEUE_WORKERS", "4"))
FUND_ID = os.getenv("FUND_ID", "FUND_DEMO_01")

# S3 Object Lock ledger sink
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "reliance/audit-ledger/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "2555"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# HTTP server
BIND_HOST = os.getenv("BIND_HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")
LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None

_DEV_WEBHOOK_SECRET = "shared-secret-key-demo-123"


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that all required configuration files exist.
    Returns dict of name -> exists.
    """
    paths = {
        "trust_store": TRUST_STORE_PATH,
        "data_dir": DATA_DIR,
    }
    return {name: Path(path).exists() for name, path in paths.items()}


def webhook_secret() -> str:
    """
    Resolve the HMAC secret shared with the administrator.

    The demo secret is only ever used in dev; any other environment
    must configure WEBHOOK_SECRET explicitly.
    """
    if WEBHOOK_SECRET:
        return WEBHOOK_SECRET
    if ENV == "dev":
        return _DEV_WEBHOOK_SECRET
    raise RuntimeError("WEBHOOK_SECRET must be set outside dev")


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("RELIANCE_DEBUG", "").lower() in ("1", "true", "yes")
