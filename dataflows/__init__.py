# dataflows/__init__.py
from dataflows import builtin  # noqa: F401  (registers the built-in flows)
from dataflows.base import DataFlow
from dataflows.models import FlowRunResult
from dataflows.registry import FlowRegistry, register_flow, registry
from dataflows.runner import run_flow

__all__ = [
    "DataFlow",
    "FlowRegistry",
    "FlowRunResult",
    "register_flow",
    "registry",
    "run_flow",
]
