# heartbeat_server/services/runs.py
import logging
from datetime import datetime
from typing import cast

from dataflows.exceptions import InvalidRunTransitionError, RunNotFoundError
from heartbeat_server.db.engine import get_session
from heartbeat_server.db.models import (
    TERMINAL_RUN_STATUSES,
    Flow,
    FlowRun,
    FlowStatus,
    RunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

INTERRUPTED_RUN_MESSAGE = "Run interrupted before its outcome was recorded"


def _close_open_runs(session, flow_id: int, ended_at: datetime) -> int:
    """Fail any run of the flow that never reached a terminal status."""
    stale = (
        session.query(FlowRun)
        .filter(FlowRun.flow_id == flow_id)
        .filter(FlowRun.status.in_([RunStatus.PENDING.value, RunStatus.IN_PROGRESS.value]))
        .all()
    )
    for run in stale:
        if run.status == RunStatus.PENDING.value:
            run.transition_to(RunStatus.IN_PROGRESS)
        run.transition_to(RunStatus.FAILED)
        run.ended_at = ended_at
        run.error_message = INTERRUPTED_RUN_MESSAGE
        logger.warning("Closed interrupted run %s of flow %s", run.id, flow_id)
    return len(stale)


def open_run(flow_id: int, started_at: datetime | None = None) -> FlowRun:
    """
    Create a run record for a flow and move it straight to in_progress.

    Runs of the same flow left open by an interrupted execution are marked
    failed in the same transaction, so a flow has at most one open run.

    Updates run status: pending → in_progress

    Returns:
        The run record (detached from its session)
    """
    started_at = started_at or utcnow()
    session = get_session()
    try:
        _close_open_runs(session, flow_id, started_at)

        run = FlowRun(
            flow_id=flow_id,
            status=RunStatus.PENDING.value,
            started_at=started_at,
        )
        session.add(run)
        session.flush()

        run.transition_to(RunStatus.IN_PROGRESS)
        session.commit()
        logger.info("Opened run %s for flow %s", run.id, flow_id)
        return run
    finally:
        session.close()


def _terminal_status(status: RunStatus | str, run_id: int) -> RunStatus:
    target = RunStatus(status)
    if target not in TERMINAL_RUN_STATUSES:
        raise InvalidRunTransitionError(
            f"Run {run_id} can only be completed as success or failed, got {target.value}",
            target=target.value,
        )
    return target


def _write_terminal(
    run: FlowRun,
    target: RunStatus,
    ended_at: datetime,
    error_message: str | None,
    error_backtrace: str | None,
) -> None:
    run.transition_to(target)
    run.ended_at = ended_at
    if target == RunStatus.FAILED:
        run.error_message = error_message
        run.error_backtrace = error_backtrace


def complete_run(
    run_id: int,
    status: RunStatus | str,
    ended_at: datetime | None = None,
    error_message: str | None = None,
    error_backtrace: str | None = None,
) -> FlowRun:
    """
    Write the terminal status of a run.

    Error details are only stored for failed runs.

    Raises:
        InvalidRunTransitionError: If status is not success/failed
        RunAlreadyCompletedError: If the run already reached a terminal status
        RunNotFoundError: If the run does not exist
    """
    target = _terminal_status(status, run_id)

    session = get_session()
    try:
        run = session.query(FlowRun).filter(FlowRun.id == run_id).with_for_update().one_or_none()
        if not run:
            raise RunNotFoundError(f"Run {run_id} not found")

        _write_terminal(run, target, ended_at or utcnow(), error_message, error_backtrace)
        session.commit()

        logger.info("Run %s completed with status: %s", run_id, run.status)
        return run
    finally:
        session.close()


def finish_run(
    flow_id: int,
    run_id: int,
    status: RunStatus | str,
    ended_at: datetime | None = None,
    error_message: str | None = None,
    error_backtrace: str | None = None,
) -> FlowRun:
    """
    Record a flow's outcome and complete its run in one transaction.

    Sets last_run_at/last_run_status on the flow, releases its claim and
    writes the run's terminal status. Either all of it is committed or none.

    Raises:
        InvalidRunTransitionError: If status is not success/failed
        RunAlreadyCompletedError: If the run already reached a terminal status
        RunNotFoundError: If the run does not exist
    """
    target = _terminal_status(status, run_id)
    ended_at = ended_at or utcnow()

    session = get_session()
    try:
        run = session.query(FlowRun).filter(FlowRun.id == run_id).with_for_update().one_or_none()
        if not run:
            raise RunNotFoundError(f"Run {run_id} not found")

        flow = session.get(Flow, flow_id)
        if flow:
            flow.last_run_at = ended_at
            flow.last_run_status = FlowStatus(target.value).value
            flow.claimed_at = None
        else:
            logger.warning("Flow %s disappeared before its outcome (%s) was recorded", flow_id, target.value)

        _write_terminal(run, target, ended_at, error_message, error_backtrace)
        session.commit()

        logger.info("Run %s of flow %s finished with status: %s", run_id, flow_id, run.status)
        return run
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_run(run_id: int) -> FlowRun | None:
    """Get a run by ID."""
    session = get_session()
    try:
        return session.get(FlowRun, run_id)
    finally:
        session.close()


def list_runs(
    flow_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[FlowRun], int]:
    """
    List runs with filtering, newest first.

    Returns:
        (runs, total_count)
    """
    session = get_session()
    try:
        query = session.query(FlowRun)

        if flow_id is not None:
            query = query.filter(FlowRun.flow_id == flow_id)
        if status:
            query = query.filter(FlowRun.status == status)

        total = query.count()
        runs = query.order_by(FlowRun.id.desc()).offset(offset).limit(limit).all()

        return cast(list[FlowRun], runs), total
    finally:
        session.close()
