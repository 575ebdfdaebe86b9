"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

from swipeq.infrastructure.env import ensure_env_loaded, get_optional_env

ensure_env_loaded()

# Project paths
SWIPEQ_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("SWIPEQ_DATA_DIR", str(SWIPEQ_ROOT / "data")))

# Logging
LOG_LEVEL = os.getenv("SWIPEQ_LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO"))

# Remote automation worker
WORKER_API_URL = os.getenv("SWIPEQ_API_URL", "http://localhost:3001")
WORKER_API_TOKEN = get_optional_env("SWIPEQ_API_TOKEN") or None

# Local key-value persistence
STATE_DB_PATH = Path(os.getenv("SWIPEQ_STATE_DB", str(DATA_DIR / "swipeq_state.db")))
