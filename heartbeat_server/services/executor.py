# heartbeat_server/services/executor.py
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, cast

from dataflows.models import FlowRunResult
from dataflows.registry import FlowRegistry
from dataflows.runner import run_flow
from heartbeat_server.db.models import Flow, FlowRun, RunStatus, utcnow
from heartbeat_server.services.flows import release_claim
from heartbeat_server.services.runs import finish_run, open_run

logger = logging.getLogger(__name__)


# Structured logging adapter that includes flow name and run_id
class FlowLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        flow = str(extra.get("flow", "unknown"))
        run_id = str(extra.get("run_id", "-"))
        formatted_msg = f"[flow={flow}] [run_id={run_id}] {msg}"
        return formatted_msg, kwargs


class ExecutionState(str, Enum):
    """Lifecycle of one flow execution."""

    START = "start"
    RUN_CREATED = "run_created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ExecutionOutcome:
    """
    Result of executing one flow.

    By the time an outcome is returned the flow summary and the run record
    are both terminal, whether the flow succeeded or failed.
    """

    flow_id: int
    flow_name: str
    run_id: int
    state: ExecutionState
    result: FlowRunResult

    @property
    def succeeded(self) -> bool:
        return self.state == ExecutionState.SUCCEEDED

    @property
    def error_message(self) -> str | None:
        return self.result.error_message

    def raise_for_failure(self) -> None:
        """Re-raise the error that failed the flow. No-op on success."""
        self.result.raise_for_failure()


class FlowExecutor:
    """
    Runs one flow: opens its run record, invokes the work unit, then writes
    the outcome to both the flow and the run record.

    States: start → run_created → running → (succeeded | failed)
    """

    def __init__(
        self,
        flow: Flow,
        registry: FlowRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.flow = flow
        self.registry = registry
        self.clock = clock
        self.state = ExecutionState.START
        self.run: FlowRun | None = None
        self.log = FlowLoggerAdapter(logger, {"flow": flow.name})

    def execute(self) -> ExecutionOutcome:
        if self.state != ExecutionState.START:
            raise RuntimeError(f"Flow {self.flow.name} execution already {self.state.value}")

        flow_id = cast(int, self.flow.id)

        try:
            self.run = open_run(flow_id, started_at=self.clock())
        except Exception as e:
            self.log.error("Failed to open run: %s", e, exc_info=True)
            self._release_claim()
            raise
        run_id = cast(int, self.run.id)
        self.log = FlowLoggerAdapter(logger, {"flow": self.flow.name, "run_id": run_id})
        self._advance(ExecutionState.RUN_CREATED)

        self._advance(ExecutionState.RUNNING)
        result = run_flow(self.flow.configuration, registry=self.registry)

        self._finish(flow_id, run_id, result)
        if result.success:
            self._advance(ExecutionState.SUCCEEDED)
            self.log.info("Flow succeeded in %sms", result.duration_ms)
        else:
            self._advance(ExecutionState.FAILED)
            self.log.warning("Flow failed: %s", result.error_message)

        return ExecutionOutcome(
            flow_id=flow_id,
            flow_name=cast(str, self.flow.name),
            run_id=run_id,
            state=self.state,
            result=result,
        )

    def _finish(self, flow_id: int, run_id: int, result: FlowRunResult) -> None:
        """
        Write the outcome to the flow and the run record in one transaction.

        If that write fails, the run is recorded as failed instead. If that
        fails too, the claim is released so the next cycle can retry the flow.
        The original store error is re-raised either way.
        """
        status = RunStatus.SUCCESS if result.success else RunStatus.FAILED
        try:
            finish_run(
                flow_id,
                run_id,
                status,
                self.clock(),
                error_message=result.error_message,
                error_backtrace=result.error_backtrace,
            )
            return
        except Exception as e:
            self.log.error("Failed to record %s outcome: %s", status.value, e, exc_info=True)
            self._advance(ExecutionState.FAILED)
            error = e

        try:
            finish_run(
                flow_id,
                run_id,
                RunStatus.FAILED,
                self.clock(),
                error_message=f"Outcome could not be recorded: {error}",
                error_backtrace=result.error_backtrace,
            )
        except Exception as e:
            self.log.error("Failed to record fallback failure: %s", e, exc_info=True)
            self._release_claim()
        raise error

    def _release_claim(self) -> None:
        try:
            release_claim(cast(int, self.flow.id), claimed_at=self.flow.claimed_at)
        except Exception as e:
            self.log.error("Failed to release claim: %s", e, exc_info=True)

    def _advance(self, state: ExecutionState) -> None:
        self.log.debug("%s → %s", self.state.value, state.value)
        self.state = state


def execute_flow(flow: Flow, registry: FlowRegistry | None = None) -> ExecutionOutcome:
    """Execute a flow and return its outcome."""
    return FlowExecutor(flow, registry=registry).execute()
