from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


REPO_ROOT = _repo_root()

APP_DB_PATH = Path(os.getenv("TEMPLO_APP_DB_PATH", str(REPO_ROOT / "backend" / "data" / "app.sqlite")))

SESSION_TTL_S = int(os.getenv("TEMPLO_SESSION_TTL_S", str(60 * 60 * 24 * 7)))  # 7 days

LOG_LEVEL = os.getenv("TEMPLO_LOG_LEVEL", "INFO").upper()

CORS_ORIGINS = [o.strip() for o in os.getenv("TEMPLO_CORS_ORIGINS", "*").split(",") if o.strip()]
