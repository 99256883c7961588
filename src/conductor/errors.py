"""Exception hierarchy for conductor.

Tool failures are *values* (see ``conductor.tool.base.Failure``) and never
show up here. These exceptions cover configuration mistakes and model
service errors, which the agent loop handles at its own boundary.
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for all conductor errors."""


class ConfigurationError(ConductorError):
    """Raised at startup for bad wiring (unknown tool names, bad profiles)."""


class ModelError(ConductorError):
    """The model service failed to produce a response."""


class TransientModelError(ModelError):
    """Network, timeout, rate-limit or 5xx failure. Safe to retry."""


class FatalModelError(ModelError):
    """Authentication or quota failure. Retrying will not help."""
