"""Tests for configuration loading and saving."""

import json
import os
from unittest.mock import patch


class TestDefaults:
    def test_retriever_defaults(self):
        from opsdesk.common.config import RetrieverConfig

        cfg = RetrieverConfig()
        assert cfg.per_source_k == 5
        assert cfg.total_cap == 8
        assert cfg.source_timeout == 5.0

    def test_missing_file_uses_defaults(self, tmp_path):
        from opsdesk.common.config import load_config

        with patch("opsdesk.common.config.CONFIG_PATH", tmp_path / "missing.json"):
            cfg = load_config()

        assert cfg.sources.enabled == ["articles", "wiki", "tickets"]
        assert cfg.harvester.enabled is False


class TestLoadConfig:
    def test_sections_are_parsed(self, tmp_path):
        from opsdesk.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "sources": {"enabled": ["articles", "tickets"], "data_dir": str(tmp_path)},
            "retriever": {"per_source_k": 3, "total_cap": 6},
            "harvester": {"enabled": True, "period_seconds": 600, "jira_project": "OPS"},
        }))

        with patch("opsdesk.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.sources.enabled == ["articles", "tickets"]
        # Priority follows the enabled list when not given
        assert cfg.sources.source_priority == ["articles", "tickets"]
        assert cfg.retriever.per_source_k == 3
        assert cfg.retriever.total_cap == 6
        assert cfg.harvester.enabled is True
        assert cfg.harvester.period_seconds == 600
        assert cfg.harvester.jira_project == "OPS"

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path, caplog):
        import logging
        from opsdesk.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text("{broken")

        with patch("opsdesk.common.config.CONFIG_PATH", config_file), \
             caplog.at_level(logging.WARNING, logger="opsdesk.common.config"):
            cfg = load_config()

        assert cfg.retriever.total_cap == 8
        assert "Failed to load config file" in caplog.text

    def test_env_var_overrides(self, tmp_path):
        from opsdesk.common.config import load_config

        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"provider": "google"}}))

        env = {
            "OPENAI_API_KEY": "sk-env",
            "OPSDESK_LLM_PROVIDER": "openai",
            "OPSDESK_SOURCE_TIMEOUT": "2.5",
            "JIRA_BASE_URL": "https://example.atlassian.net",
        }
        with patch("opsdesk.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert cfg.llm.openai_api_key == "sk-env"
        assert cfg.embedding.openai_api_key == "sk-env"
        assert cfg.retriever.source_timeout == 2.5
        assert cfg.harvester.jira_base_url == "https://example.atlassian.net"


class TestSaveConfig:
    def test_save_config_omits_env_secrets(self, tmp_path):
        from opsdesk.common.config import load_config, save_config

        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {"OPENAI_API_KEY": "sk-env", "JIRA_API_TOKEN": "jira-secret"}
        with patch("opsdesk.common.config.CONFIG_PATH", config_file), \
             patch("opsdesk.common.config.CONFIG_DIR", tmp_path), \
             patch.dict(os.environ, env, clear=False):
            cfg = load_config()
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["openai_api_key"] == ""
        assert saved["embedding"]["openai_api_key"] == ""
        assert saved["harvester"]["jira_api_token"] == ""

    def test_save_config_keeps_file_secrets(self, tmp_path):
        from opsdesk.common.config import OpsDeskConfig, save_config

        cfg = OpsDeskConfig()
        cfg.llm.anthropic_api_key = "sk-ant-file"
        config_file = tmp_path / "config.json"

        with patch("opsdesk.common.config.CONFIG_PATH", config_file), \
             patch("opsdesk.common.config.CONFIG_DIR", tmp_path):
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["anthropic_api_key"] == "sk-ant-file"
        assert oct(config_file.stat().st_mode & 0o777) == "0o600"


class TestEnsureDirectories:
    def test_creates_data_and_state_dirs(self, tmp_path):
        from opsdesk.common.config import OpsDeskConfig, ensure_directories

        cfg = OpsDeskConfig()
        cfg.sources.data_dir = str(tmp_path / "data")
        cfg.harvester.state_dir = str(tmp_path / "harvest")

        with patch("opsdesk.common.config.CONFIG_DIR", tmp_path / "home"), \
             patch("opsdesk.common.config.LOGS_DIR", tmp_path / "home" / "logs"):
            ensure_directories(cfg)

        assert (tmp_path / "data").is_dir()
        assert (tmp_path / "harvest").is_dir()
        assert (tmp_path / "home" / "logs").is_dir()
