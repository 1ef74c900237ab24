"""Static configuration for hintbot.

All user-editable settings (LLM engines, cache ages, template catalog,
logging) live in a single JSON file for quick edits without touching Python.
Secrets stay in the environment (.env).
"""

import json
import os

from dotenv import load_dotenv

from core.config import CacheConfig, PipelineConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Where to store the SQLite database.
DB_PATH = os.path.join(os.path.dirname(__file__), "hintbot.db")

CONFIG_PATH = os.getenv("HINTBOT_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _project_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


load_dotenv()
_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# LLM proxy: the URL is a deployment detail, so it comes from the environment.
_llm = _CONFIG.get("llm", {})
LLM_SERVER_URL = os.getenv("LLM_SERVER_URL", _llm.get("server_url", "http://localhost:8081"))
DEFAULT_ENGINE = _llm.get("default_engine", "gemini")
ENGINES = [str(name) for name in _llm.get("engines", [DEFAULT_ENGINE])]
LLM_TIMEOUT_SECONDS = float(_llm.get("timeout_seconds", 180))
LLM_CONNECT_TIMEOUT_SECONDS = float(_llm.get("connect_timeout_seconds", 10))

# Cache staleness horizons and the startup purge horizon.
_cache = _CONFIG.get("cache", {})
CACHE = CacheConfig(
    parse_max_age_days=int(_cache.get("parse_max_age_days", 30)),
    hint_max_age_days=int(_cache.get("hint_max_age_days", 90)),
)
PURGE_AFTER_DAYS = int(_cache.get("purge_after_days", 180))

# Template catalog is loaded once at startup.
_templates = _CONFIG.get("templates", {})
TEMPLATES_DIR = _project_path(_templates.get("directory", "templates"))
TEMPLATES_SUBJECT = _templates.get("subject", "math")

_pipeline = _CONFIG.get("pipeline", {})
PIPELINE = PipelineConfig(
    default_engine=DEFAULT_ENGINE,
    locale=_pipeline.get("locale", "ru_RU"),
    max_hint_level=int(_pipeline.get("max_hint_level", 3)),
    max_detect_tasks=int(_pipeline.get("max_detect_tasks", 3)),
)

# Chats that receive "report a problem" summaries.
ADMIN_CHAT_IDS = [int(chat_id) for chat_id in _CONFIG.get("reports", {}).get("admin_chat_ids", [])]

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
