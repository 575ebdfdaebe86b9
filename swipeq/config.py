"""Centralized configuration for the swipe queue.

Re-exports everything from swipeq.infrastructure.settings, then adds typed
constants for batching, retry, caching and the worker API. Environment
overrides use safe defaults so a session starts without extra configuration.
"""

from __future__ import annotations

import os

from swipeq.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Batching ---
DEBOUNCE_MS: int = int(os.getenv("SWIPEQ_DEBOUNCE_MS", "120000"))
MAX_BATCH_SIZE: int = int(os.getenv("SWIPEQ_MAX_BATCH_SIZE", "25"))
MAX_BATCH_AGE_SECONDS: float = float(os.getenv("SWIPEQ_MAX_BATCH_AGE_SECONDS", "600"))
MAX_JOB_RETRIES: int = int(os.getenv("SWIPEQ_MAX_JOB_RETRIES", "3"))

# --- Snapshot cache ---
SNAPSHOT_CACHE_CAPACITY: int = int(os.getenv("SWIPEQ_SNAPSHOT_CAPACITY", "500"))
SNAPSHOT_MAX_AGE_DAYS: int = 30

# --- Worker API ---
API_TIMEOUT_SECONDS: float = float(os.getenv("SWIPEQ_API_TIMEOUT", "30"))
API_RETRY_MAX_ATTEMPTS: int = int(os.getenv("SWIPEQ_API_RETRY_MAX", "3"))
API_RETRY_BASE_DELAY: float = 1.0
API_RETRY_MAX_DELAY: float = 10.0
API_RETRY_JITTER: float = 0.25
API_LIST_LIMIT: int = 100

# --- Automation defaults (direct_urls mode) ---
AUTOMATION_SCHEDULE_TIME: str = "09:00"
AUTOMATION_MAX_APPLICATIONS_PER_DAY: int = 50

# --- Sync ---
SYNC_ENTRY_DELAY_SECONDS: float = 0.5
SETTLEMENT_MEMORY_SIZE: int = 1000

# --- Local database ---
DB_CONNECT_TIMEOUT: float = float(os.getenv("SWIPEQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_RETRY_MAX: int = int(os.getenv("SWIPEQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = 0.1
DB_RETRY_MAX_DELAY: float = 2.0
