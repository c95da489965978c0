# heartbeat_server/services/dispatcher.py
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from dataflows.registry import FlowRegistry
from heartbeat_server.conf import DEFAULT_CLAIM_TTL_SECONDS
from heartbeat_server.db.models import Flow, to_utc, utcnow
from heartbeat_server.services.executor import execute_flow
from heartbeat_server.services.flows import claim_due_flows

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Summary of one heartbeat cycle."""

    flows_due: int
    flows_triggered: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flows_due": self.flows_due,
            "flows_triggered": self.flows_triggered,
            "timestamp": self.timestamp.isoformat(),
        }


def _dispatch(flow: Flow, registry: FlowRegistry | None) -> bool:
    """
    Execute one claimed flow.

    Returns:
        True if the flow ran to completion without failing
    """
    try:
        outcome = execute_flow(flow, registry=registry)
    except Exception as e:
        logger.error("Flow %s execution failed: %s", flow.name, e, exc_info=True)
        return False

    if not outcome.succeeded:
        logger.error("Flow %s execution failed: %s", flow.name, outcome.error_message)
        return False
    return True


def run_cycle(
    now: datetime | None = None,
    max_workers: int = 1,
    claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
    registry: FlowRegistry | None = None,
) -> CycleReport:
    """
    Run one heartbeat cycle: claim the due flows and execute each of them.

    A failing flow is logged and does not stop the others. flows_triggered
    counts flows that completed without failure, so failed runs are executed
    but not counted.

    Raises:
        ClaimError: If claiming fails; no flow is executed
    """
    now = to_utc(now) if now else utcnow()
    flows = claim_due_flows(now, claim_ttl_seconds=claim_ttl_seconds)

    if not flows:
        logger.debug("Heartbeat at %s: no flows due", now.isoformat())
        return CycleReport(flows_due=0, flows_triggered=0, timestamp=now)

    if max_workers > 1 and len(flows) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(flows)), thread_name_prefix="flow") as pool:
            completed = list(pool.map(lambda flow: _dispatch(flow, registry), flows))
    else:
        completed = [_dispatch(flow, registry) for flow in flows]

    report = CycleReport(flows_due=len(flows), flows_triggered=sum(completed), timestamp=now)
    logger.info(
        "Heartbeat at %s: %d flow(s) due, %d triggered",
        now.isoformat(),
        report.flows_due,
        report.flows_triggered,
    )
    return report
