"""
Tests for approval_config settings loading.
"""

from pathlib import Path

import pytest

from approval_config import CONFIG_ENV_VAR, DATABASE_URL_ENV_VAR, get_settings
from approval_config.settings import EngineSettings, parse_settings

CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(DATABASE_URL_ENV_VAR, raising=False)


class TestGetSettings:
    def test_defaults_without_file(self):
        settings = get_settings()
        assert settings == EngineSettings()
        assert settings.authorization.override_roles == ("HR_ADMIN", "SUPER_ADMIN")
        assert settings.resolution.max_hierarchy_depth == 10

    def test_example_file(self):
        settings = get_settings(CONFIG_DIR / "engine.example.yaml")
        assert settings.sweeper.interval_seconds == 120.0
        assert settings.directory.timeout_seconds == 5.0
        assert settings.system_actor_id == "system"

    def test_env_var_names_file(self, monkeypatch, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("log_level: debug\nsweeper:\n  max_workers: 1\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        settings = get_settings()
        assert settings.log_level == "DEBUG"
        assert settings.sweeper.max_workers == 1
        assert settings.sweeper.batch_size == 100

    def test_database_url_env_overrides(self, monkeypatch):
        monkeypatch.setenv(DATABASE_URL_ENV_VAR, "postgresql://hr@db/approvals")
        settings = get_settings(CONFIG_DIR / "engine.example.yaml")
        assert settings.database_url == "postgresql://hr@db/approvals"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_settings(tmp_path / "missing.yaml")


class TestParseSettings:
    def test_empty_mapping_gives_defaults(self):
        assert parse_settings({}) == EngineSettings()

    @pytest.mark.parametrize(
        "data",
        [
            {"sweeper": {"interval_seconds": 0}},
            {"sweeper": {"max_workers": -1}},
            {"directory": {"max_attempts": 0}},
            {"directory": {"timeout_seconds": 0}},
            {"resolution": {"max_hierarchy_depth": 0}},
        ],
    )
    def test_non_positive_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_settings(data)

    def test_override_roles(self):
        settings = parse_settings({"authorization": {"override_roles": ["PEOPLE_OPS"]}})
        assert settings.authorization.override_roles == ("PEOPLE_OPS",)
