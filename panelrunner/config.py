# panelrunner/config.py
"""Environment-driven runtime settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Optional

from dotenv import load_dotenv

if Path(".env").is_file():
    load_dotenv()


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_json_map(name: str) -> Dict[str, str]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return {str(k): str(v) for k, v in value.items()} if isinstance(value, dict) else {}


class Settings(SimpleNamespace):
    """Simple attribute container used throughout the codebase."""


def load_settings() -> Settings:
    storage = Path(_env_str("PANEL_STORAGE_DIR", str(Path(__file__).parent / "storage")))
    partition_by = (_env_str("PANEL_PARTITION_BY", "team_game") or "team_game").lower()
    if partition_by not in {"team_game", "team"}:
        partition_by = "team_game"

    return Settings(
        storage_dir=storage,
        database_url=_env_str("PANEL_DATABASE_URL", f"sqlite:///{storage / 'panelrunner.db'}"),
        headless=_env_bool("PANEL_HEADLESS", True),
        step_timeout_ms=_env_int("PANEL_STEP_TIMEOUT_MS", 5000),
        result_timeout_ms=_env_int("PANEL_RESULT_TIMEOUT_MS", 3000),
        job_timeout_secs=_env_float("PANEL_JOB_TIMEOUT_SECS", 60.0),
        cleanup_timeout_secs=_env_float("PANEL_CLEANUP_TIMEOUT_SECS", 10.0),
        screenshot_interval_secs=_env_int("PANEL_SCREENSHOT_INTERVAL_MS", 500) / 1000.0,
        session_ttl_hours=_env_float("PANEL_SESSION_TTL_HOURS", 24.0),
        partition_by=partition_by,
        keep_completed=_env_int("PANEL_KEEP_COMPLETED", 100),
        keep_failed=_env_int("PANEL_KEEP_FAILED", 50),
        keep_cancelled=_env_int("PANEL_KEEP_CANCELLED", 50),
        game_urls=_env_json_map("PANEL_GAME_URLS"),
    )


CONFIG = load_settings()

__all__ = ["CONFIG", "Settings", "load_settings"]
