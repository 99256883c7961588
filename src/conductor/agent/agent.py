"""Agent profiles: loaded from YAML frontmatter in markdown files."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from conductor.errors import ConfigurationError
from conductor.tool.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the available tools to gather what you "
    "need, then answer the user's question directly. When tool results inform "
    "your answer, cite them with [n] markers."
)

DEFAULT_SUBAGENT_PROMPT = (
    "You are a research subagent. Complete the task you are given using the "
    "available tools and reply with a concise, factual report of what you found."
)


@dataclass
class AgentConfig:
    """Configuration for an agent, typically from YAML frontmatter."""

    name: str
    description: str = ""
    mode: str = "primary"  # "primary" | "subagent"
    tools: list[str] = field(default_factory=list)
    max_iterations: int = 10
    high_stakes: bool = False


@dataclass
class Agent:
    """A configured agent profile.

    Profiles are markdown files with YAML frontmatter:

        ---
        name: researcher
        description: Looks things up
        mode: subagent
        tools: [think, memory]
        max_iterations: 6
        ---

        You are a research subagent...

    An empty ``tools`` list means every registered tool.
    """

    config: AgentConfig
    system_prompt: str = ""

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def tools(self) -> list[str]:
        return self.config.tools

    @property
    def max_iterations(self) -> int:
        return self.config.max_iterations

    def tool_registry(self, registry: ToolRegistry) -> ToolRegistry:
        """The frozen subset of ``registry`` this agent may use.

        Raises ``ConfigurationError`` for tool names the registry lacks.
        """
        if self.tools:
            return registry.subset(self.tools)
        return registry.subset(registry.names())

    @classmethod
    def from_markdown(cls, path: str) -> Agent:
        """Load an agent definition from a markdown file with YAML frontmatter."""
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        config_dict, prompt = _parse_frontmatter(content, path)
        return cls.from_dict(config_dict, system_prompt=prompt.strip())

    @classmethod
    def from_dict(cls, data: dict[str, Any], system_prompt: str = "") -> Agent:
        """Create an agent from a dictionary config."""
        try:
            config = AgentConfig(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid agent profile: {e}") from e
        if config.mode not in ("primary", "subagent"):
            raise ConfigurationError(
                f"Agent {config.name}: mode must be 'primary' or 'subagent', got {config.mode!r}"
            )
        return cls(config=config, system_prompt=system_prompt)

    @classmethod
    def default(cls) -> Agent:
        return cls(config=AgentConfig(name="assistant"), system_prompt=DEFAULT_SYSTEM_PROMPT)

    @classmethod
    def default_subagent(cls, max_iterations: int = 6) -> Agent:
        return cls(
            config=AgentConfig(
                name="subagent", mode="subagent", max_iterations=max_iterations
            ),
            system_prompt=DEFAULT_SUBAGENT_PROMPT,
        )


def _parse_frontmatter(content: str, source: str = "<string>") -> tuple[dict[str, Any], str]:
    """Parse YAML frontmatter from markdown content.

    Returns (config_dict, body_text).
    """
    pattern = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)", re.DOTALL)
    match = pattern.match(content)

    if not match:
        return {}, content

    try:
        config = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Bad frontmatter in {source}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigurationError(f"Frontmatter in {source} must be a mapping")

    return config, match.group(2)


def discover_agents(search_dirs: list[str]) -> list[Agent]:
    """Discover agent definitions from markdown files in directories.

    Files without a ``name`` in their frontmatter are skipped; malformed
    profiles raise ``ConfigurationError``.
    """
    agents = []
    for dir_path in search_dirs:
        if not os.path.isdir(dir_path):
            continue
        for fname in sorted(os.listdir(dir_path)):
            if not fname.endswith(".md"):
                continue
            full_path = os.path.join(dir_path, fname)
            with open(full_path, "r", encoding="utf-8") as f:
                config_dict, prompt = _parse_frontmatter(f.read(), full_path)
            if not config_dict.get("name"):
                logger.debug("Skipping %s: no agent name in frontmatter", full_path)
                continue
            agent = Agent.from_dict(config_dict, system_prompt=prompt.strip())
            agents.append(agent)
            logger.info("Discovered agent: %s", agent.name)
    return agents
