"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
TRACKQ_ROOT = Path(__file__).parent.parent
DATA_DIR = TRACKQ_ROOT / "data"

# Environment
ENV = os.getenv("TRACKQ_ENV", "development")
DEBUG = ENV == "development"
LOG_LEVEL = os.getenv("TRACKQ_LOG_LEVEL", "INFO")

# Remote classifier (Anthropic Messages API)
CLASSIFIER_API_URL = os.getenv("TRACKQ_CLASSIFIER_URL", "https://api.anthropic.com/v1/messages")
CLASSIFIER_MODEL = os.getenv("TRACKQ_CLASSIFIER_MODEL", "claude-sonnet-4-20250514")
CLASSIFIER_API_VERSION = "2023-06-01"
CLASSIFIER_MAX_TOKENS = int(os.getenv("TRACKQ_CLASSIFIER_MAX_TOKENS", "1024"))

# Secret lookup
API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"

# Capture
CAPTURE_INTERVAL_SECONDS = float(os.getenv("TRACKQ_CAPTURE_INTERVAL", "30"))
