from __future__ import annotations
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)

# ---- database ----
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'ledger.sqlite3'}")

# ---- tenant tokens (issued by the auth service, only verified here) ----
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_SUPER_SECRET")
JWT_ALG = os.getenv("JWT_ALG", "HS256")

# ---- cron trigger ----
CRON_SECRET_TOKEN = os.getenv("CRON_SECRET_TOKEN")  # unset -> trigger refuses to run

# ---- batch runs ----
STUCK_RUN_MINUTES = _int_env("STUCK_RUN_MINUTES", 15)       # claim lease
RUN_TIMEOUT_MINUTES = _int_env("RUN_TIMEOUT_MINUTES", 120)  # hard cap on a processing run
ITEMS_PER_EXECUTION = _int_env("ITEMS_PER_EXECUTION", 15)
MAX_ITEM_RETRIES = _int_env("MAX_ITEM_RETRIES", 2)

# ---- ledger ----
MAX_BALANCE_ATTEMPTS = _int_env("MAX_BALANCE_ATTEMPTS", 5)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
