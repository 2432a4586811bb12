"""Centralized configuration for the TrackQ categorization core.

Re-exports everything from trackq.infrastructure.settings, then adds typed
constants for the database, categorization thresholds, offline cache, insight
engine and maintenance jobs.  Environment variable overrides use safe
defaults so the service starts without extra env configuration.
"""

from __future__ import annotations

import os

from trackq.infrastructure.settings import *  # noqa: F401, F403

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("TRACKQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("TRACKQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("TRACKQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("TRACKQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("TRACKQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("TRACKQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("TRACKQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("TRACKQ_DB_RETRY_JITTER", "0.1"))

# --- Categorization ---
REVIEW_CONFIDENCE_THRESHOLD: float = float(os.getenv("TRACKQ_REVIEW_THRESHOLD", "0.7"))
OFFLINE_CONFIDENCE_DISCOUNT: float = float(os.getenv("TRACKQ_OFFLINE_DISCOUNT", "0.8"))
NEW_PROJECT_CONFIDENCE: float = 0.8
MIGRATED_PROJECT_CONFIDENCE: float = 0.5
CORRECTION_PATTERN_MIN_LENGTH: int = 5
PROMPT_MAX_PROJECTS: int = 20

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("TRACKQ_LLM_TIMEOUT", "30"))
LLM_MAX_ATTEMPTS: int = int(os.getenv("TRACKQ_LLM_MAX_ATTEMPTS", "1"))

# --- Offline cache ---
CACHE_RETENTION_DAYS: int = int(os.getenv("TRACKQ_CACHE_RETENTION_DAYS", "30"))
CACHE_MAX_ENTRIES: int = int(os.getenv("TRACKQ_CACHE_MAX_ENTRIES", "1000"))
CACHE_PRUNE_RATIO: float = 0.8

# --- Insights ---
INSIGHT_WINDOW_DAYS: int = 7
INSIGHT_HIGH_CONFIDENCE: float = 0.8

# --- Maintenance ---
RECALCULATE_SESSION_LIMIT: int = 500
STATS_SESSION_LIMIT: int = 1000
PROJECT_ARCHIVE_DAYS: int = 30

# --- Period analysis ---
ANALYSIS_MAX_TOKENS: int = int(os.getenv("TRACKQ_ANALYSIS_MAX_TOKENS", "4096"))
FOLLOW_UP_MAX_TOKENS: int = int(os.getenv("TRACKQ_FOLLOW_UP_MAX_TOKENS", "2048"))
ANALYSIS_SESSION_LIMIT: int = 100
ANALYSIS_FEEDBACK_LIMIT: int = 10
ANALYSIS_FEEDBACK_IN_PROMPT: int = 5
