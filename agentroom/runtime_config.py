"""Runtime paths and tunables.

Everything is resolved once from the environment so local runs, tests, and
deployed servers share one source of truth without hardcoded machine paths.
"""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir

APP_NAME = "AgentRoom"
APP_ROOT = Path(__file__).resolve().parent.parent


def _default_home() -> Path:
    return Path(user_data_dir(APP_NAME, appauthor=False))


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


AGENTROOM_HOME = Path(
    os.environ.get("AGENTROOM_HOME", str(_default_home()))
).expanduser().resolve()
DB_PATH = Path(
    os.environ.get("AGENTROOM_DB_PATH", str(AGENTROOM_HOME / "data" / "agentroom.db"))
).expanduser().resolve()
LOGS_DIR = Path(
    os.environ.get("AGENTROOM_LOGS_DIR", str(AGENTROOM_HOME / "logs"))
).expanduser().resolve()

# Model-serving boundary (any OpenAI-compatible chat completions server).
MODEL_NAME = (os.environ.get("AGENTROOM_MODEL") or "gpt-4o-mini").strip()
MODEL_BASE_URL = (
    os.environ.get("AGENTROOM_MODEL_BASE_URL")
    or os.environ.get("OPENAI_BASE_URL")
    or "https://api.openai.com/v1"
).strip().rstrip("/")
STREAM_CONNECT_TIMEOUT = _env_float("AGENTROOM_STREAM_CONNECT_TIMEOUT", 15.0)
STREAM_READ_TIMEOUT = _env_float("AGENTROOM_STREAM_READ_TIMEOUT", 120.0)
MAX_TOOL_STEPS = _env_int("AGENTROOM_MAX_TOOL_STEPS", 5)
HISTORY_LIMIT = _env_int("AGENTROOM_HISTORY_LIMIT", 30)


def get_model_api_key() -> str:
    # Read lazily so tests and key rotation don't need a restart.
    return (os.environ.get("OPENAI_API_KEY") or "").strip()


def ensure_runtime_dirs() -> None:
    AGENTROOM_HOME.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Fixed protocol constants.
MAX_DELEGATION_DEPTH = 5
PLACEHOLDER_TEXT = "Thinking..."
TOOL_SNIPPET_CHARS = 200
