"""
Unit tests for layered service configuration.
"""

import json

import pytest

from shared.config import get_config


class TestServiceConfig:
    """Test cases for ServiceConfig resolution."""

    @pytest.fixture
    def config_file(self, tmp_path, monkeypatch):
        path = tmp_path / "hapta.config.json"
        path.write_text(json.dumps({
            "pocketbase_url": "http://pocketbase.internal:8090",
            "cache_ttl_mode": "short",
            "cache_sync_enabled": True
        }))
        monkeypatch.setenv("HAPTA_CONFIG_FILE", str(path))
        return path

    def test_defaults(self, tmp_path, monkeypatch):
        """Test defaults apply when nothing is configured."""
        monkeypatch.setenv("HAPTA_CONFIG_FILE", str(tmp_path / "missing.json"))

        config = get_config("data", 8080)

        assert config.service_name == "data"
        assert config.port == 8080
        assert config.pocketbase_url == "http://127.0.0.1:8090"
        assert config.cache_sync_enabled is False
        assert config.cache_sync_channel == "hapta:cache-sync"
        assert config.cache_compression_threshold == 1024
        assert config.cache_ttl_mode == "medium"
        assert len(config.node_id) == 12

    def test_node_ids_are_unique(self):
        """Test each process gets its own node id by default."""
        assert get_config("data", 8080).node_id != get_config("data", 8080).node_id

    def test_json_file(self, config_file):
        """Test values are read from the JSON config file."""
        config = get_config("data", 8080)

        assert config.pocketbase_url == "http://pocketbase.internal:8090"
        assert config.cache_ttl_mode == "short"
        assert config.cache_sync_enabled is True

    def test_env_overrides_json_file(self, config_file, monkeypatch):
        """Test environment variables win over the config file."""
        monkeypatch.setenv("HAPTA_POCKETBASE_URL", "http://from-env:8090")

        config = get_config("data", 8080)

        assert config.pocketbase_url == "http://from-env:8090"
        assert config.cache_ttl_mode == "short"

    def test_overrides_win(self, config_file, monkeypatch):
        """Test explicit overrides win over every other source."""
        monkeypatch.setenv("HAPTA_CACHE_TTL_MODE", "long")

        config = get_config("data", 8080, cache_ttl_mode="dynamic")

        assert config.cache_ttl_mode == "dynamic"

    def test_admin_password_is_secret(self, monkeypatch):
        """Test the admin password is not exposed in reprs."""
        monkeypatch.setenv("HAPTA_POCKETBASE_ADMIN_PASSWORD", "hunter2")

        config = get_config("data", 8080)

        assert config.pocketbase_admin_password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(config)
