"""ccarbon configuration."""
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


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value or not value.strip():
        return default
    return Path(value.strip()).expanduser()


# Project root (one level up from ccarbon/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Claude CLI log locations
CLAUDE_DIR = _env_path("CCARBON_CLAUDE_DIR", Path.home() / ".claude")
PROJECTS_DIR = _env_path("CCARBON_PROJECTS_DIR", CLAUDE_DIR / "projects")
HISTORY_PATH = _env_path("CCARBON_HISTORY_PATH", CLAUDE_DIR / "history.jsonl")
HISTORY_ENABLED = _env_bool("CCARBON_HISTORY_ENABLED", True)

# Database
DB_PATH = _env_path("CCARBON_DB_PATH", PROJECT_ROOT / "data" / "ccarbon.db")

# Watching
RESCAN_INTERVAL_SECONDS = _env_float("CCARBON_RESCAN_INTERVAL_SECONDS", 30.0)
WATCH_DEBOUNCE_MS = _env_int("CCARBON_WATCH_DEBOUNCE_MS", 400)
EVENT_QUEUE_SIZE = _env_int("CCARBON_EVENT_QUEUE_SIZE", 1000)

# Sessions created before any real usage is seen get this declared model
DEFAULT_MODEL = os.getenv("CCARBON_DEFAULT_MODEL", "sonnet")

# Telemetry
OTEL_ENABLED = _env_bool("CCARBON_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CCARBON_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CCARBON_OTEL_SERVICE_NAME", "ccarbon")
PROM_PORT = _env_int("CCARBON_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("CCARBON_HOST", "127.0.0.1")
PORT = _env_int("CCARBON_PORT", 8000)
