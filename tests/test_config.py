"""Tests for heartbeat.config module."""

import logging

import pytest
import yaml

from heartbeat import config


def write_config(home, data):
    home.mkdir(parents=True, exist_ok=True)
    (home / "config.yaml").write_text(yaml.safe_dump(data))


class TestPaths:

    def test_state_dir_override(self, heartbeat_home):
        assert config.get_heartbeat_dir() == heartbeat_home
        assert config.get_database_path() == heartbeat_home / "blackboard.db"
        assert config.get_sessions_log_dir() == heartbeat_home / "logs" / "sessions"

    def test_database_env_wins(self, monkeypatch, temp_dir):
        monkeypatch.setenv("HEARTBEAT_DB", str(temp_dir / "other.db"))
        assert config.get_database_path() == temp_dir / "other.db"

    def test_specflow_bin(self, monkeypatch):
        monkeypatch.setenv("SPECFLOW_BIN", "/opt/specflow")
        assert config.get_specflow_bin() == "/opt/specflow"


class TestLoadConfig:

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            config.load_config()

    def test_missing_file_gives_defaults(self):
        assert config.get_dispatch_config() == config.DEFAULT_DISPATCH_CONFIG
        assert config.get_specflow_config() == config.DEFAULT_SPECFLOW_CONFIG
        assert config.get_checks() == []

    def test_dispatch_overrides(self, heartbeat_home):
        write_config(heartbeat_home, {"dispatch": {"max_concurrent": 3, "bogus": True}})

        settings = config.get_dispatch_config()

        assert settings["max_concurrent"] == 3
        assert settings["max_items"] == 1
        assert "bogus" not in settings

    def test_specflow_overrides(self, heartbeat_home):
        write_config(heartbeat_home, {"specflow": {"quality_threshold": 70}})

        assert config.get_specflow_config() == {"quality_threshold": 70, "max_retries": 1}

    def test_checks(self, heartbeat_home):
        write_config(heartbeat_home, {"checks": [{"name": "queue", "type": "agent_dispatch"}]})

        assert config.get_checks() == [{"name": "queue", "type": "agent_dispatch"}]


class TestSetupLogging:

    def test_handler_added_once(self, heartbeat_home):
        logger = logging.getLogger("heartbeat")
        before = list(logger.handlers)
        try:
            first = config.setup_logging()
            second = config.setup_logging(debug=True)

            assert first == second
            assert first.parent == heartbeat_home / "logs"
            added = [h for h in logger.handlers if h not in before]
            assert len(added) == 1
            assert logger.level == logging.DEBUG
        finally:
            for handler in logger.handlers:
                if handler not in before:
                    logger.removeHandler(handler)
                    handler.close()
