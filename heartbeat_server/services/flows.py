# heartbeat_server/services/flows.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, cast

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from dataflows.exceptions import ClaimError, FlowAlreadyExistsError
from heartbeat_server.conf import DEFAULT_CLAIM_TTL_SECONDS
from heartbeat_server.db.engine import get_session
from heartbeat_server.db.models import Flow, FlowStatus, to_utc, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("enabled", "run_interval", "configuration", "description")


def _unclaimed(cutoff: datetime):
    """No claim, or a claim older than the cutoff (its cycle is presumed dead)."""
    return or_(Flow.claimed_at.is_(None), Flow.claimed_at < cutoff)


def claim_due_flows(
    now: datetime | None = None,
    limit: int | None = None,
    claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
) -> list[Flow]:
    """
    Claim the enabled flows that are due to run.

    Candidate rows are locked with FOR UPDATE SKIP LOCKED so a concurrent
    caller skips them instead of blocking. Each candidate is then claimed with
    a compare-and-swap on claimed_at, which keeps the claim after this
    transaction commits and also guards backends without row locks (SQLite).
    Concurrent callers get disjoint subsets of the due set.

    Returns:
        Claimed flows (detached), possibly empty

    Raises:
        ClaimError: If the store fails while claiming
    """
    now = to_utc(now) if now else utcnow()
    cutoff = now - timedelta(seconds=claim_ttl_seconds)

    session = get_session()
    try:
        candidates = (
            session.query(Flow)
            .filter(Flow.enabled == True)  # noqa: E712
            .filter(_unclaimed(cutoff))
            .order_by(Flow.id)
            .with_for_update(skip_locked=True)
            .all()
        )
        due = [flow for flow in candidates if flow.is_due(now)]
        if limit is not None:
            due = due[:limit]

        claimed = []
        for flow in due:
            updated = (
                session.query(Flow)
                .filter(Flow.id == flow.id)
                .filter(_unclaimed(cutoff))
                .update({Flow.claimed_at: now}, synchronize_session=False)
            )
            if updated:
                set_committed_value(flow, "claimed_at", now)
                claimed.append(flow)
            else:
                logger.debug("Flow %s was claimed by another cycle", flow.name)

        session.commit()

        if claimed:
            logger.info("Claimed %d due flow(s): %s", len(claimed), ", ".join(cast(str, f.name) for f in claimed))
        return claimed
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Failed to claim due flows: %s", e, exc_info=True)
        raise ClaimError(f"Failed to claim due flows: {e}") from e
    finally:
        session.close()


def record_outcome(flow_id: int, status: FlowStatus | str, at: datetime | None = None) -> None:
    """
    Record the outcome of a flow's latest run and release its claim.

    Writing the same outcome twice leaves the flow unchanged.
    """
    status = FlowStatus(status)
    at = at or utcnow()

    session = get_session()
    try:
        flow = session.get(Flow, flow_id)
        if not flow:
            logger.warning("Flow %s disappeared before its outcome (%s) was recorded", flow_id, status.value)
            return

        flow.last_run_at = at
        flow.last_run_status = status.value
        flow.claimed_at = None
        session.commit()

        logger.debug("Recorded %s outcome for flow %s at %s", status.value, flow.name, at)
    finally:
        session.close()


def release_claim(flow_id: int, claimed_at: datetime | None = None) -> bool:
    """
    Drop a flow's claim without recording an outcome, so the next cycle can
    pick it up. With claimed_at, only that claim is released; a newer claim
    taken by another cycle is left alone.

    Returns:
        True if a claim was released
    """
    session = get_session()
    try:
        query = session.query(Flow).filter(Flow.id == flow_id).filter(Flow.claimed_at.isnot(None))
        if claimed_at is not None:
            query = query.filter(Flow.claimed_at == claimed_at)
        updated = query.update({Flow.claimed_at: None}, synchronize_session=False)
        session.commit()
        if updated:
            logger.info("Released claim on flow %s", flow_id)
        return bool(updated)
    finally:
        session.close()


def create_flow(
    name: str,
    run_interval: int,
    configuration: str | Dict[str, Any] | None = None,
    enabled: bool = True,
    description: str | None = None,
) -> Flow:
    """
    Create a new flow definition.

    Raises:
        FlowAlreadyExistsError: If a flow with this name exists
        ValueError: If run_interval is not positive
    """
    session = get_session()
    try:
        flow = Flow(
            name=name,
            run_interval=run_interval,
            configuration=configuration,
            enabled=enabled,
            description=description,
        )
        session.add(flow)
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise FlowAlreadyExistsError(f"Flow '{name}' already exists") from e

        logger.info("Created flow %s (interval: %ss, enabled: %s)", name, run_interval, enabled)
        return flow
    finally:
        session.close()


def get_flow(name: str) -> Flow | None:
    """Get a flow by name."""
    session = get_session()
    try:
        return session.query(Flow).filter(Flow.name == name).one_or_none()
    finally:
        session.close()


def list_flows(enabled: bool | None = None) -> list[Flow]:
    """List flows, optionally filtered by enabled state."""
    session = get_session()
    try:
        query = session.query(Flow)
        if enabled is not None:
            query = query.filter(Flow.enabled == enabled)
        return query.order_by(Flow.name.asc()).all()
    finally:
        session.close()


def update_flow(name: str, **changes: Any) -> Flow | None:
    """
    Update a flow's definition (enabled, run_interval, configuration, description).

    Outcome fields are never touched here.

    Returns:
        The updated flow, or None if it does not exist
    """
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update flow field(s): {', '.join(sorted(unknown))}")

    session = get_session()
    try:
        flow = session.query(Flow).filter(Flow.name == name).one_or_none()
        if not flow:
            return None

        for field, value in changes.items():
            setattr(flow, field, value)
        session.commit()

        logger.info("Updated flow %s: %s", name, ", ".join(sorted(changes)) or "no changes")
        return flow
    finally:
        session.close()


def delete_flow(name: str) -> bool:
    """Delete a flow and its run records."""
    session = get_session()
    try:
        flow = session.query(Flow).filter(Flow.name == name).one_or_none()
        if not flow:
            return False

        session.delete(flow)
        session.commit()
        logger.info("Deleted flow %s", name)
        return True
    finally:
        session.close()
