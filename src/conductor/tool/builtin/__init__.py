"""Built-in general-purpose tools."""

from conductor.tool.builtin.memory import MemoryTool
from conductor.tool.builtin.think import ThinkTool

__all__ = [
    "MemoryTool",
    "ThinkTool",
]
