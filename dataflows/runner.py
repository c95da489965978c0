# dataflows/runner.py
from __future__ import annotations

import logging
import time
import traceback
from typing import Any

from dataflows.exceptions import UnresolvableFlowError
from dataflows.models import FlowRunResult
from dataflows.registry import FlowRegistry, registry as default_registry

logger = logging.getLogger(__name__)


def format_backtrace(error: BaseException) -> str:
    """Format the traceback of an error the way it would be printed."""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()


def run_flow(configuration: Any, registry: FlowRegistry | None = None) -> FlowRunResult:
    """
    Resolve a flow configuration into a work unit and run it synchronously.

    This is the only place a flow's configuration is interpreted. It:
    1. Resolves the registered work unit named by the configuration
    2. Constructs it with the full configuration
    3. Calls run()
    4. Returns a standardized result

    Resolution failures and errors raised by run() are reported the same way,
    as a failed FlowRunResult carrying the message and traceback.

    Args:
        configuration: The flow's configuration (a name or a mapping with 'class_name')
        registry: Registry to resolve from (defaults to the global registry)

    Returns:
        FlowRunResult with execution outcome
    """
    registry = registry or default_registry
    start_time = time.time()

    try:
        flow = registry.create(configuration)
        flow.run()

        duration_ms = int((time.time() - start_time) * 1000)
        return FlowRunResult(success=True, duration_ms=duration_ms)

    except UnresolvableFlowError as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error("Flow resolution failed: %s", e)
        return _failure(e, duration_ms)

    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error("Flow execution failed: %s", e, exc_info=True)
        return _failure(e, duration_ms)


def _failure(error: Exception, duration_ms: int) -> FlowRunResult:
    return FlowRunResult(
        success=False,
        error_message=str(error) or type(error).__name__,
        error_backtrace=format_backtrace(error),
        duration_ms=duration_ms,
        error=error,
    )
