"""Tool system: base class, registry, dispatcher and output truncation."""

from conductor.tool.base import BaseTool
from conductor.tool.dispatcher import (
    AggregatedResult,
    BatchStats,
    DispatchPolicy,
    DispatchRecord,
    ToolDispatcher,
)
from conductor.tool.errors import classify_exception
from conductor.tool.registry import ToolHandler, ToolRegistry
from conductor.tool.truncation import truncate_output

__all__ = [
    "BaseTool",
    "AggregatedResult",
    "BatchStats",
    "DispatchPolicy",
    "DispatchRecord",
    "ToolDispatcher",
    "classify_exception",
    "ToolHandler",
    "ToolRegistry",
    "truncate_output",
]
