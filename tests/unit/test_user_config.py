"""
Unit tests for user_config.py - Configuration management
"""
import pytest
import json
from pathlib import Path

from qrshare import config as static_config
from qrshare.common.user_config import ShareConfig, ConfigManager, format_config


class TestShareConfigValidation:
    """Tests for ShareConfig validation"""

    def test_default_config_is_valid(self):
        config = ShareConfig()
        errors = config.validate()
        assert errors == []

    def test_port_out_of_range(self):
        config = ShareConfig(port_range_end=70000)
        errors = config.validate()
        assert any("port_range_end" in e for e in errors)

    def test_port_range_reversed(self):
        config = ShareConfig(port_range_start=9000, port_range_end=8000)
        errors = config.validate()
        assert any("exceed" in e for e in errors)

    def test_zero_chunk_size_invalid(self):
        config = ShareConfig(chunk_size_kb=0)
        errors = config.validate()
        assert any("chunk_size_kb" in e for e in errors)

    def test_negative_timeout_invalid(self):
        config = ShareConfig(connect_timeout=-1)
        errors = config.validate()
        assert any("connect_timeout" in e for e in errors)

    def test_zero_retries_invalid(self):
        config = ShareConfig(max_retries=0)
        errors = config.validate()
        assert any("max_retries" in e for e in errors)

    def test_valid_custom_config(self):
        config = ShareConfig(
            port_range_start=9000,
            port_range_end=9010,
            session_timeout_minutes=15,
            chunk_size_kb=128,
            max_retries=5,
            retry_delay=0.5,
        )
        errors = config.validate()
        assert errors == []


class TestShareConfigSerialization:
    """Tests for ShareConfig serialization"""

    def test_to_dict(self):
        config = ShareConfig(max_retries=5, download_dir="/tmp/in")
        data = config.to_dict()

        assert isinstance(data, dict)
        assert data["max_retries"] == 5
        assert data["download_dir"] == "/tmp/in"

    def test_from_dict(self):
        config = ShareConfig.from_dict({"chunk_size_kb": 32, "retry_delay": 1.5})

        assert config.chunk_size_kb == 32
        assert config.retry_delay == 1.5
        # Default values preserved for missing keys
        assert config.port_range_start == static_config.DEFAULT_PORT_START

    def test_from_dict_ignores_unknown_keys(self):
        config = ShareConfig.from_dict({"max_retries": 2, "unknown_key": "should be ignored"})
        assert config.max_retries == 2
        assert not hasattr(config, "unknown_key")


class TestShareConfigProperties:
    """Tests for ShareConfig computed properties"""

    def test_chunk_size_bytes(self):
        assert ShareConfig(chunk_size_kb=64).chunk_size == 64 * 1024

    def test_port_range(self):
        assert ShareConfig(port_range_start=1, port_range_end=2).port_range == (1, 2)

    def test_download_dir_override(self, temp_dir):
        assert ShareConfig(download_dir=str(temp_dir)).resolved_download_dir() == temp_dir

    def test_download_dir_env(self, temp_dir, monkeypatch):
        monkeypatch.setenv(static_config.DOWNLOAD_DIR_ENV_VAR, str(temp_dir / "env"))
        assert ShareConfig().resolved_download_dir() == temp_dir / "env"


class TestConfigManager:
    """Tests for ConfigManager"""

    def test_load_defaults_if_missing(self, temp_dir):
        config_path = temp_dir / "config.json"
        assert not config_path.exists()

        config = ConfigManager(config_path).load()

        assert config == ShareConfig()

    def test_load_existing_config(self, temp_dir):
        config_path = temp_dir / "config.json"
        config_path.write_text(json.dumps({"max_retries": 7, "read_timeout": 90.0}))

        config = ConfigManager(config_path).load()

        assert config.max_retries == 7
        assert config.read_timeout == 90.0

    def test_load_invalid_values_uses_defaults(self, temp_dir):
        config_path = temp_dir / "config.json"
        config_path.write_text(json.dumps({"chunk_size_kb": -10}))

        config = ConfigManager(config_path).load()

        assert config.chunk_size_kb == ShareConfig().chunk_size_kb

    def test_load_corrupt_file_uses_defaults(self, temp_dir):
        config_path = temp_dir / "config.json"
        config_path.write_text("{not json")

        assert ConfigManager(config_path).load() == ShareConfig()

    def test_save_and_load_roundtrip(self, temp_dir):
        config_path = temp_dir / "nested" / "config.json"

        manager = ConfigManager(config_path)
        manager._config = ShareConfig(max_retries=4, download_dir="/data/in")
        assert manager.save() is True

        config = ConfigManager(config_path).load()

        assert config.max_retries == 4
        assert config.download_dir == "/data/in"

    def test_set_coerces_strings(self, temp_dir):
        manager = ConfigManager(temp_dir / "config.json")

        assert manager.set("max_retries", "5") is True
        assert manager.set("retry_delay", "0.5") is True
        assert manager.get().max_retries == 5
        assert manager.get().retry_delay == 0.5

        saved = json.loads((temp_dir / "config.json").read_text())
        assert saved["max_retries"] == 5

    def test_set_unknown_key(self, temp_dir):
        manager = ConfigManager(temp_dir / "config.json")
        assert manager.set("unknown_key", "value") is False

    def test_set_bad_value(self, temp_dir):
        manager = ConfigManager(temp_dir / "config.json")
        assert manager.set("max_retries", "lots") is False
        assert manager.set("port_range_start", "0") is False
        assert manager.get() == ShareConfig()

    def test_reset(self, temp_dir):
        config_path = temp_dir / "config.json"

        manager = ConfigManager(config_path)
        manager._config = ShareConfig(max_retries=9, chunk_size_kb=8)
        manager.save()

        config = manager.reset()

        # Should be back to defaults
        default = ShareConfig()
        assert config.max_retries == default.max_retries
        assert config.chunk_size_kb == default.chunk_size_kb

    def test_format_config(self, temp_dir):
        text = format_config(ShareConfig(), temp_dir / "config.json")
        assert "8080-8090" in text
        assert str(temp_dir / "config.json") in text
