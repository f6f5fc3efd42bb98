import json

from skillforge.config import load_settings, save_settings
from tests.fakes import make_settings


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "from-config.db"}))
    monkeypatch.setenv("DATABASE_PATH", "from-env.db")
    monkeypatch.delenv("SKILLFORGE_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "from-config.db"


def test_env_override_when_skillforge_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"database_path": "from-config.db"}))
    monkeypatch.setenv("DATABASE_PATH", "from-env.db")
    monkeypatch.setenv("SKILLFORGE_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "from-env.db"


def test_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("ACTIVITY_RETENTION_DAYS", "90")
    monkeypatch.setenv("OPTIMISTIC_CONCURRENCY", "off")
    monkeypatch.setenv("PLAN_WRITE_RETRIES", "5")
    settings = load_settings(config_path=tmp_path / "absent.json")
    assert settings.activity_retention_days == 90
    assert settings.optimistic_concurrency is False
    assert settings.plan_write_retries == 5


def test_save_settings_round_trip(tmp_path, monkeypatch):
    for key in ("DATABASE_PATH", "ACTIVITY_RETENTION_DAYS", "OPTIMISTIC_CONCURRENCY", "PLAN_WRITE_RETRIES"):
        monkeypatch.delenv(key, raising=False)
    config_path = tmp_path / "config.json"
    settings = make_settings(tmp_path, activity_retention_days=30, repair_page_size=50)
    save_settings(settings, config_path=config_path)
    loaded = load_settings(config_path=config_path)
    assert loaded == settings


def test_corrupt_config_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_PATH", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path=config_path)
    assert settings.database_path == "skillforge.db"
