"""
Tool adapters: one per supported generation site.

Each adapter knows how to fill, submit, wait for and read back one generation
round-trip on its site's page. Everything site-specific (selectors, busy
indicators, upload mechanics) stays inside this package so the orchestrator
and scheduler remain tool-agnostic.
"""

from __future__ import annotations

from .base import AdapterStepError, CompletionTimeout, ExecutionCancelled, ToolAdapter, ValidationResult
from .registry import AdapterRegistry, create_default_registry

__all__ = [
    "AdapterRegistry",
    "AdapterStepError",
    "CompletionTimeout",
    "ExecutionCancelled",
    "ToolAdapter",
    "ValidationResult",
    "create_default_registry",
]
