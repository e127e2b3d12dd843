"""Tests for YAML configuration loading and environment overrides."""

import os

import pytest
import yaml

from pyro_thor.config import ConfigManager
from pyro_thor.errors import ConfigError
from pyro_thor.models import DEFAULT_THOR_FLAGS, PyroConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep PYRO_* variables from the outer shell out of these tests."""
    for key in list(os.environ):
        if key.startswith("PYRO_"):
            monkeypatch.delenv(key)


class TestConfigManager:
    def test_missing_file_written_with_defaults(self, tmp_path):
        path = tmp_path / "conf" / "config.yaml"
        config = ConfigManager(path).get_config()

        assert path.exists()
        assert config == PyroConfig()
        assert config.thor.flags == DEFAULT_THOR_FLAGS
        assert yaml.safe_load(path.read_text())["pyro"]["endpoint"] == "http://localhost:8080"

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "pyro:\n"
            "  endpoint: https://pyro.example.com/\n"
            "  api_key: abc123\n"
            "scanning:\n"
            "  execution_timeout_seconds: 90\n"
            "store:\n"
            "  path: /var/lib/pyro/rules.db\n"
        )
        config = ConfigManager(path).get_config()

        assert config.pyro.api_key == "abc123"
        assert config.scanning.execution_timeout_seconds == 90
        assert config.store.path == "/var/lib/pyro/rules.db"
        assert config.package_url == (
            "https://pyro.example.com/api/tools/Custom.DFIR.Yara.AllRules.zip"
        )
        assert config.results_url == "https://pyro.example.com/api/scan-results"

    def test_empty_file_means_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert ConfigManager(path).get_config() == PyroConfig()

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("pyro:\n  api_key: from-file\n")
        monkeypatch.setenv("PYRO_PYRO_API_KEY", "from-env")
        monkeypatch.setenv("PYRO_SCANNING_TEMP_DIR", "/scratch")
        monkeypatch.setenv("PYRO_UNKNOWN_THING", "ignored")

        config = ConfigManager(path).get_config()

        assert config.pyro.api_key == "from-env"
        assert config.scanning.temp_dir == "/scratch"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("pyro: [unclosed\n")
        with pytest.raises(ConfigError):
            ConfigManager(path)

    def test_non_mapping_top_level(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigManager(path)

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("pyro:\n  timeout_seconds: -5\n")
        with pytest.raises(ConfigError, match="timeout_seconds"):
            ConfigManager(path)

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "config.yaml"
        manager = ConfigManager(path)
        manager.config.pyro.endpoint = "http://pyro.internal:9000"
        manager.save_config()

        assert ConfigManager(path).get_config().pyro.endpoint == "http://pyro.internal:9000"
