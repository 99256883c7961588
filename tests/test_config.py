"""Tests for conductor.config (ConductorConfig.load)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conductor.config import ConductorConfig
from conductor.errors import ConfigurationError

_ENV_VARS = (
    "CONDUCTOR_MODEL",
    "CONDUCTOR_FAST_MODEL",
    "CONDUCTOR_CONTEXT_WINDOW",
    "CONDUCTOR_MAX_ITERATIONS",
    "CONDUCTOR_TURN_TIMEOUT",
    "CONDUCTOR_MEMORY_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # load_dotenv must not find a stray .env file.
    monkeypatch.setattr("conductor.config.load_dotenv", lambda **kwargs: False)


class TestDefaults:
    def test_defaults(self) -> None:
        config = ConductorConfig.load()
        assert config.loop.max_iterations == 10
        assert config.loop.turn_timeout_seconds == 240.0
        assert config.tools.timeout_seconds == 30.0
        assert config.tools.batch_concurrency == 5
        assert config.subagents.max_concurrent == 3
        assert config.subagents.deadline_seconds == 60.0
        assert config.subagents.result_token_cap == 2000
        assert config.compaction.threshold == 0.8
        assert config.compaction.keep_recent == 5
        assert config.verification.forbidden_patterns == []
        assert config.gather.enabled is True
        assert config.gather.max_items == 5
        assert config.gather.max_entries == 50
        assert config.gather.timeout_seconds == 5.0

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        config = ConductorConfig.load(str(tmp_path / "nope.json"))
        assert config.llm.context_window == 200_000


class TestFiles:
    def test_json(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.json"
        path.write_text(json.dumps({"llm": {"model": "openai/gpt-4o"}, "loop": {"max_iterations": 4}}))
        config = ConductorConfig.load(str(path))
        assert config.llm.model == "openai/gpt-4o"
        assert config.loop.max_iterations == 4

    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.yaml"
        path.write_text(
            "verification:\n  forbid_markdown: true\n  max_length: 1600\n"
            "subagents:\n  enabled: false\n"
        )
        config = ConductorConfig.load(str(path))
        assert config.verification.forbid_markdown is True
        assert config.verification.max_length == 1600
        assert config.subagents.enabled is False

    def test_unparseable_file(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            ConductorConfig.load(str(path))

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConductorConfig.load(str(path))

    def test_invalid_values(self, tmp_path: Path) -> None:
        path = tmp_path / "conductor.json"
        path.write_text(json.dumps({"tools": {"batch_concurrency": 0}}))
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConductorConfig.load(str(path))


class TestEnvOverrides:
    def test_env_wins_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "conductor.json"
        path.write_text(json.dumps({"llm": {"model": "openai/gpt-4o"}}))
        monkeypatch.setenv("CONDUCTOR_MODEL", "anthropic/claude-test")
        monkeypatch.setenv("CONDUCTOR_MAX_ITERATIONS", "7")
        monkeypatch.setenv("CONDUCTOR_TURN_TIMEOUT", "30.5")

        config = ConductorConfig.load(str(path))

        assert config.llm.model == "anthropic/claude-test"
        assert config.loop.max_iterations == 7
        assert config.loop.turn_timeout_seconds == 30.5

    def test_bad_env_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONDUCTOR_CONTEXT_WINDOW", "lots")
        with pytest.raises(ConfigurationError, match="CONDUCTOR_CONTEXT_WINDOW"):
            ConductorConfig.load()
