# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for CycleConfig — dict/env/YAML loading, defaults, validation."""
import pytest

from reviewfix.config import (
    AgentSettings,
    CycleConfig,
    RetryPolicy,
    ReviewOptions,
    load_config,
    save_config,
)
from reviewfix.errors import ConfigError


class TestRetryPolicy:

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay_ms == 1000
        assert policy.max_delay_ms == 30000

    def test_invalid(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=5000, max_delay_ms=1000)


class TestCycleConfig:

    def test_defaults(self):
        cfg = CycleConfig()
        assert cfg.reviewer.agent == "claude"
        assert cfg.fixer.agent == "claude"
        assert cfg.max_iterations == 5
        assert cfg.iteration_timeout_ms == 1_800_000
        assert cfg.run_simplifier is False

    def test_from_dict(self):
        cfg = CycleConfig.from_dict({
            "reviewer": {"agent": "codex", "model": "gpt-5"},
            "fixer": "claude",
            "max_iterations": 3,
            "retry": {"max_retries": 1},
            "logs_dir": "/tmp/rf-logs",
        })
        assert cfg.reviewer == AgentSettings(agent="codex", model="gpt-5")
        assert cfg.fixer.agent == "claude"
        assert cfg.max_iterations == 3
        assert cfg.retry.max_retries == 1
        assert cfg.logs_dir == "/tmp/rf-logs"

    def test_agent_settings_need_agent(self):
        with pytest.raises(ConfigError):
            CycleConfig.from_dict({"reviewer": {"model": "x"}})

    def test_clamping(self):
        cfg = CycleConfig(max_iterations=0, iteration_timeout_ms=10)
        assert cfg.max_iterations == 1
        assert cfg.iteration_timeout_ms == 1000
        assert cfg.iteration_timeout_s == 1.0

    def test_settings_for(self):
        cfg = CycleConfig(reviewer=AgentSettings("codex"), fixer=AgentSettings("claude"))
        assert cfg.settings_for("reviewer").agent == "codex"
        assert cfg.settings_for("fixer").agent == "claude"
        assert cfg.settings_for("simplifier").agent == "codex"
        cfg.simplifier = AgentSettings("gemini")
        assert cfg.settings_for("simplifier").agent == "gemini"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REVIEWFIX_REVIEWER", "codex")
        monkeypatch.setenv("REVIEWFIX_FIXER_MODEL", "opus")
        monkeypatch.setenv("REVIEWFIX_MAX_ITERATIONS", "7")
        monkeypatch.setenv("REVIEWFIX_RUN_SIMPLIFIER", "true")
        cfg = CycleConfig.from_env()
        assert cfg.reviewer.agent == "codex"
        assert cfg.fixer.model == "opus"
        assert cfg.max_iterations == 7
        assert cfg.run_simplifier is True

    def test_review_options_record(self):
        record = ReviewOptions(base_branch="main").to_record()
        assert record.base_branch == "main"
        assert record.commit_sha is None


class TestConfigFile:

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "config.yaml")
        cfg = CycleConfig(reviewer=AgentSettings("codex"), max_iterations=4, logs_dir=str(tmp_path))
        save_config(cfg, path)
        loaded = load_config(path)
        assert loaded.reviewer.agent == "codex"
        assert loaded.max_iterations == 4
        assert loaded.retry == cfg.retry

    def test_missing_file_uses_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REVIEWFIX_FIXER", "gemini")
        cfg = load_config(str(tmp_path / "absent.yaml"))
        assert cfg.fixer.agent == "gemini"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("reviewer: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("retry:\n  base_delay_ms: 0\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))
