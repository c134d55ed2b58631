"""Kibitz configuration."""
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


# Directories
KIBITZ_HOME = _env_path("KIBITZ_HOME", Path.home() / ".kibitz")
SETTINGS_PATH = KIBITZ_HOME / "settings.json"
CLAUDE_HOME = _env_path("CLAUDE_HOME", Path.home() / ".claude")
CODEX_HOME = _env_path("CODEX_HOME", Path.home() / ".codex")
CLAUDE_PROJECTS_DIR = CLAUDE_HOME / "projects"
CODEX_SESSIONS_DIR = CODEX_HOME / "sessions"
CODEX_GLOBAL_STATE_PATH = CODEX_HOME / ".codex-global-state.json"

# Session registry
SCAN_INTERVAL_SECONDS = _env_float("KIBITZ_SCAN_INTERVAL_SECONDS", 15.0)
ACTIVITY_WINDOW_SECONDS = _env_float("KIBITZ_ACTIVITY_WINDOW_SECONDS", 300.0)
HEAD_PROBE_BYTES = _env_int("KIBITZ_HEAD_PROBE_BYTES", 64 * 1024)
SELF_LOOP_PROBE_LINES = _env_int("KIBITZ_SELF_LOOP_PROBE_LINES", 40)

# Commentary batching
MIN_BATCH_SIZE = _env_int("KIBITZ_MIN_BATCH_SIZE", 5)
MAX_BATCH_SIZE = _env_int("KIBITZ_MAX_BATCH_SIZE", 40)
GENERATION_TIMEOUT_SECONDS = _env_float("KIBITZ_GENERATION_TIMEOUT_SECONDS", 90.0)
COMMENTARY_HISTORY = _env_int("KIBITZ_COMMENTARY_HISTORY", 3)
RECENT_ENTRIES = _env_int("KIBITZ_RECENT_ENTRIES", 50)
GENERATION_MAX_TOKENS = _env_int("KIBITZ_GENERATION_MAX_TOKENS", 400)

# Dispatch
DISPATCH_TIMEOUT_SECONDS = _env_float("KIBITZ_DISPATCH_TIMEOUT_SECONDS", 20.0)
DISPATCH_POLL_SECONDS = _env_float("KIBITZ_DISPATCH_POLL_SECONDS", 0.12)
DISPATCH_STATUS_TRAIL = _env_int("KIBITZ_DISPATCH_STATUS_TRAIL", 20)

# Observability
OTEL_ENABLED = _env_bool("KIBITZ_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("KIBITZ_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("KIBITZ_OTEL_SERVICE_NAME", "kibitz")
PROM_PORT = _env_int("KIBITZ_PROM_PORT", 0)

# Server settings
HOST = os.getenv("KIBITZ_HOST", "127.0.0.1")
PORT = _env_int("KIBITZ_PORT", 8765)

# CORS
FRONTEND_ORIGIN = os.getenv("KIBITZ_FRONTEND_ORIGIN", "http://localhost:3000")

# Text backend catalogue: (id, label, provider)
MODELS: list[tuple[str, str, str]] = [
    ("claude-opus-4-6", "Claude Opus", "anthropic"),
    ("claude-sonnet-4-6", "Claude Sonnet", "anthropic"),
    ("claude-haiku-4-5-20251001", "Claude Haiku", "anthropic"),
    ("gpt-4o", "GPT-4o", "openai"),
    ("gpt-4o-mini", "GPT-4o mini", "openai"),
]
DEFAULT_MODEL = "claude-opus-4-6"
