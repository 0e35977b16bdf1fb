import os
from pathlib import Path

from dispatch_engine.config import DispatchSettings

BASE_DIR = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("DISPATCH_DB_PATH", str(BASE_DIR / "dispatch.db")))
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
AUDIT_LOG_LIMIT = int(os.getenv("AUDIT_LOG_LIMIT", "300"))
RECENT_POSITION_MINUTES = float(os.getenv("RECENT_POSITION_MINUTES", "120"))
DISPATCH = DispatchSettings.from_env()

DB_PATH.parent.mkdir(parents=True, exist_ok=True)
