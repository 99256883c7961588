"""Tool registry: a closed set of tools, validated at startup."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from conductor.cancel import CancelToken
from conductor.errors import ConfigurationError
from conductor.llm.message import Outcome
from conductor.tool.base import BaseTool

logger = logging.getLogger(__name__)

# Anything callable like a BaseTool can serve as a handler.
ToolHandler = Callable[[dict[str, Any], CancelToken], Awaitable[Outcome]]


class ToolRegistry:
    """Registry of available tools.

    Tools are registered during startup, then the registry is frozen and
    becomes read-only. Referencing an unknown tool name while wiring agents
    raises ``ConfigurationError`` instead of surfacing at call time.
    """

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._frozen = False
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance."""
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register {tool.name}: tool registry is frozen"
            )
        if tool.name in self._tools:
            raise ConfigurationError(f"Tool {tool.name} is already registered")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def register_many(self, tools: Iterable[BaseTool]) -> None:
        for tool in tools:
            self.register(tool)

    def freeze(self) -> ToolRegistry:
        """Make the registry read-only. Returns self for chaining."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def require(self, names: Iterable[str]) -> None:
        """Raise ``ConfigurationError`` if any of ``names`` is unknown."""
        missing = [n for n in names if n not in self._tools]
        if missing:
            raise ConfigurationError(
                f"Unknown tool(s): {', '.join(missing)}. "
                f"Registered: {', '.join(self.names()) or '(none)'}"
            )

    def get_specs(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Get OpenAI tool specs, optionally filtered by name."""
        if names is None:
            return [t.to_openai_spec() for t in self._tools.values()]
        wanted = set(names)
        return [t.to_openai_spec() for t in self._tools.values() if t.name in wanted]

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def subset(self, names: Iterable[str]) -> ToolRegistry:
        """Create a frozen registry with only the specified tools."""
        names = list(names)
        self.require(names)
        return ToolRegistry(self._tools[n] for n in names).freeze()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
