import os
from typing import List, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[Config] Ignoring non-integer {name}={raw!r}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"[Config] Ignoring non-numeric {name}={raw!r}; using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Model backend: "local" (single OpenAI-compatible endpoint) or "cloud" (rotating keys)
MODEL_BACKEND = os.getenv("MODEL_BACKEND", "cloud").strip().lower()
MODEL_TIMEOUT_S = _env_float("MODEL_TIMEOUT_S", 60.0)

MAX_CLOUD_KEYS = 12
CLOUD_MODEL = os.getenv("CLOUD_MODEL", "gpt-4o-mini")
CLOUD_BASE_URL: Optional[str] = os.getenv("CLOUD_BASE_URL") or None
CLOUD_MAX_TOKENS = _env_int("CLOUD_MAX_TOKENS", 1024)
CLOUD_TEMPERATURE = _env_float("CLOUD_TEMPERATURE", 0.2)

LOCAL_BASE_URL = os.getenv("LOCAL_BASE_URL", "http://localhost:11434/v1")
LOCAL_API_KEY = os.getenv("LOCAL_API_KEY", "ollama")
LOCAL_MODEL = os.getenv("LOCAL_MODEL", "gpt-oss:20b")
LOCAL_MAX_TOKENS = _env_int("LOCAL_MAX_TOKENS", 1024)
LOCAL_TEMPERATURE = _env_float("LOCAL_TEMPERATURE", 0.3)
LOCAL_CONTEXT_LENGTH = _env_int("LOCAL_CONTEXT_LENGTH", 8192)

# Content governor
MAX_CONTENT_LENGTH = _env_int("MAX_CONTENT_LENGTH", 6000)
MAX_TOKENS_PER_REQUEST = _env_int("MAX_TOKENS_PER_REQUEST", 3500)
ENABLE_CONTENT_CHUNKING = _env_bool("ENABLE_CONTENT_CHUNKING", False)

# Web agent
WEB_AGENT_MAX_ITERATIONS = _env_int("WEB_AGENT_MAX_ITERATIONS", 8)
COMPLETION_CONFIDENCE = _env_float("COMPLETION_CONFIDENCE", 0.8)
BROWSER_HEADLESS = _env_bool("BROWSER_HEADLESS", True)
NAVIGATION_TIMEOUT_MS = _env_int("NAVIGATION_TIMEOUT_MS", 60000)
ACTION_TIMEOUT_MS = _env_int("ACTION_TIMEOUT_MS", 10000)
SETTLE_WAIT_MS = _env_int("SETTLE_WAIT_MS", 2000)
BOT_WALL_EXTRA_WAIT_MS = _env_int("BOT_WALL_EXTRA_WAIT_MS", 5000)

# Dispatcher
MAX_ROUTING_DEPTH = _env_int("MAX_ROUTING_DEPTH", 5)
RECENT_TASKS_LIMIT = _env_int("RECENT_TASKS_LIMIT", 5)

# Element filtering
INTERACTIVE_SELECTORS = [
    "input",
    "textarea",
    "select",
    "button",
    "[role='button']",
    "a[href]",
    "[role='link']",
]


def load_cloud_keys(env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Collect CLOUD_API_KEY_1..N in order, skipping unset slots."""
    source = os.environ if env is None else env
    keys: List[str] = []
    for i in range(1, MAX_CLOUD_KEYS + 1):
        key = (source.get(f"CLOUD_API_KEY_{i}") or "").strip()
        if key:
            keys.append(key)
    return keys
