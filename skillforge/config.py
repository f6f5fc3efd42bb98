import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SKILLFORGE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    database_path: str = "skillforge.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Activity log reads and retention
    activity_list_default: int = Field(default=100, ge=1)
    activity_list_max: int = Field(default=500, ge=1)
    activity_retention_days: Optional[int] = Field(default=None, ge=1)

    # Plan writes: conditional on revision, retried on conflict
    optimistic_concurrency: bool = True
    plan_write_retries: int = Field(default=3, ge=0)

    repair_page_size: int = Field(default=200, ge=1)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "activity_list_default": os.getenv("ACTIVITY_LIST_DEFAULT"),
        "activity_list_max": os.getenv("ACTIVITY_LIST_MAX"),
        "activity_retention_days": os.getenv("ACTIVITY_RETENTION_DAYS"),
        "optimistic_concurrency": os.getenv("OPTIMISTIC_CONCURRENCY"),
        "plan_write_retries": os.getenv("PLAN_WRITE_RETRIES"),
        "repair_page_size": os.getenv("REPAIR_PAGE_SIZE"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in (
        "port",
        "activity_list_default",
        "activity_list_max",
        "activity_retention_days",
        "plan_write_retries",
        "repair_page_size",
    ):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "optimistic_concurrency" in cleaned:
        cleaned["optimistic_concurrency"] = str(cleaned["optimistic_concurrency"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
