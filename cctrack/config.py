"""cctrack Backend Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default

# Project root (one level up from cctrack/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Session log tree written by the assistant (one directory per project)
CLAUDE_DIR = Path.home() / ".claude"
PROJECTS_DIR = Path(os.getenv("CCTRACK_PROJECTS_DIR", str(CLAUDE_DIR / "projects"))).expanduser()
LOG_EXTENSION = os.getenv("CCTRACK_LOG_EXTENSION", ".jsonl")

# Database
DB_PATH = Path(os.getenv("CCTRACK_DB_PATH", str(PROJECT_ROOT / "data" / "cctrack.db")))

# Watcher tuning
WATCHER_ENABLED = _env_bool("CCTRACK_WATCHER_ENABLED", True)
WATCH_DEPTH = _env_int("CCTRACK_WATCH_DEPTH", 2)
STABILITY_THRESHOLD_MS = _env_int("CCTRACK_STABILITY_THRESHOLD_MS", 2000)
POLL_INTERVAL_MS = _env_int("CCTRACK_POLL_INTERVAL_MS", 500)
PROCESSING_COOLDOWN_SECONDS = _env_float("CCTRACK_PROCESSING_COOLDOWN_SECONDS", 5.0)

# Startup import (first-run population)
STARTUP_IMPORT = _env_bool("CCTRACK_STARTUP_IMPORT", True)

# Optional network hop from a standalone watcher to the serving process
API_URL = os.getenv("CCTRACK_API_URL", "http://localhost:5000")
HTTP_TIMEOUT_SECONDS = _env_float("CCTRACK_HTTP_TIMEOUT_SECONDS", 5.0)

# Observability
OTEL_ENABLED = _env_bool("CCTRACK_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CCTRACK_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CCTRACK_OTEL_SERVICE_NAME", "cctrack-backend")
PROM_PORT = _env_int("CCTRACK_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("CCTRACK_HOST", "0.0.0.0")
PORT = _env_int("CCTRACK_PORT", 5000)

# CORS
FRONTEND_ORIGIN = os.getenv("CCTRACK_FRONTEND_ORIGIN", "http://localhost:3000")
