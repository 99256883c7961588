"""Configuration: Pydantic models for conductor settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from conductor.errors import ConfigurationError


class LLMConfig(BaseModel):
    """LLM provider configuration.

    Model names use litellm's provider-prefix format:
        "anthropic/claude-sonnet-4-5-20250929"
        "openai/gpt-4o"

    API keys are read from env vars automatically by litellm
    (ANTHROPIC_API_KEY, OPENAI_API_KEY, GEMINI_API_KEY).
    """

    model: str = Field(default="anthropic/claude-sonnet-4-5-20250929")
    fast_model: str = Field(
        default="anthropic/claude-haiku-4-5-20251001",
        description=(
            "Cheaper model for compaction summaries, subagent report "
            "condensing and the semantic judge"
        ),
    )
    temperature: float | None = Field(default=None)
    max_tokens: int | None = Field(default=None)
    context_window: int = Field(default=200_000)


class LoopConfig(BaseModel):
    max_iterations: int = Field(default=10, ge=1)
    max_verification_attempts: int = Field(default=3, ge=1)
    model_attempts: int = Field(default=3, ge=1)
    model_backoff_seconds: float = Field(default=1.0, ge=0)
    turn_timeout_seconds: float | None = Field(default=240.0)


class ToolsConfig(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    batch_concurrency: int = Field(default=5, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=10.0, ge=0)
    memory_dir: str = Field(
        default="~/.conductor/memory", description="Root of the file memory store"
    )


class SubagentsConfig(BaseModel):
    enabled: bool = Field(default=True)
    max_concurrent: int = Field(default=3, ge=1)
    deadline_seconds: float = Field(default=60.0, gt=0)
    result_token_cap: int = Field(default=2000, ge=1)
    max_iterations: int = Field(default=6, ge=1)


class CompactionConfig(BaseModel):
    enabled: bool = Field(default=True)
    threshold: float = Field(default=0.8, gt=0, le=1)
    keep_recent: int = Field(default=5, ge=1)


class VerificationConfig(BaseModel):
    min_length: int = Field(default=50, ge=0)
    max_length: int | None = Field(default=None)
    forbidden_patterns: list[str] = Field(
        default_factory=list, description="Regexes the response must not match"
    )
    forbid_markdown: bool = Field(
        default=False,
        description="Reject markdown bold, links and blockquotes",
    )
    require_citations: bool = Field(default=False)
    high_stakes: bool = Field(
        default=False, description="Run the semantic judge after the rules pass"
    )


class GatherConfig(BaseModel):
    enabled: bool = Field(default=True, description="Search memory at the start of a turn")
    max_items: int = Field(default=5, ge=1)
    max_entries: int = Field(default=50, ge=1, description="Memory entries read per turn")
    timeout_seconds: float = Field(default=5.0, gt=0)


class ConductorConfig(BaseModel):
    """Top-level conductor configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    subagents: SubagentsConfig = Field(default_factory=SubagentsConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    gather: GatherConfig = Field(default_factory=GatherConfig)
    agents_dir: str = Field(
        default="agents", description="Directory for agent profile files"
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> ConductorConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults. The file may be JSON or
        YAML (chosen by extension).

        Env vars:
            CONDUCTOR_MODEL             - Override primary model (litellm format)
            CONDUCTOR_FAST_MODEL        - Override fast model
            CONDUCTOR_CONTEXT_WINDOW    - Override context window size
            CONDUCTOR_MAX_ITERATIONS    - Override loop iteration cap
            CONDUCTOR_TURN_TIMEOUT      - Override whole-turn timeout (seconds)
            CONDUCTOR_MEMORY_DIR        - Override memory store root
        """
        # .env values win over stale shell exports.
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            config_data = _read_file(Path(config_path))

        for env_name, section, key, convert in _ENV_OVERRIDES:
            raw = os.environ.get(env_name)
            if not raw:
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {env_name}={raw!r}: {e}") from e
            config_data.setdefault(section, {})[key] = value

        try:
            return cls.model_validate(config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


_ENV_OVERRIDES: list[tuple[str, str, str, Any]] = [
    ("CONDUCTOR_MODEL", "llm", "model", str),
    ("CONDUCTOR_FAST_MODEL", "llm", "fast_model", str),
    ("CONDUCTOR_CONTEXT_WINDOW", "llm", "context_window", int),
    ("CONDUCTOR_MAX_ITERATIONS", "loop", "max_iterations", int),
    ("CONDUCTOR_TURN_TIMEOUT", "loop", "turn_timeout_seconds", float),
    ("CONDUCTOR_MEMORY_DIR", "tools", "memory_dir", str),
]


def _read_file(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data
