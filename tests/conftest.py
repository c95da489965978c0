"""Global test configuration and fixtures."""
from datetime import datetime, timezone

import pytest

from dataflows.base import DataFlow
from dataflows.registry import FlowRegistry
from heartbeat_server.db.engine import configure_engine, dispose_engine, get_session
from heartbeat_server.db.models import Flow, FlowRun

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class SucceedingFlow(DataFlow):
    """Flow that always succeeds."""

    def run(self) -> None:
        pass


class FailingFlow(DataFlow):
    """Flow that always raises."""

    def run(self) -> None:
        raise RuntimeError("boom")


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    engine = configure_engine(f"sqlite:///{tmp_path / 'heartbeat.db'}")
    yield engine
    dispose_engine()


@pytest.fixture
def test_registry():
    """Registry with a succeeding and a failing flow."""
    registry = FlowRegistry()
    registry.add("succeeding", SucceedingFlow)
    registry.add("failing", FailingFlow)
    return registry


@pytest.fixture
def make_flow(db):
    """Insert a flow row directly, including outcome fields."""

    def _make_flow(
        name: str,
        run_interval: int = 60,
        configuration=None,
        enabled: bool = True,
        last_run_at: datetime | None = None,
        last_run_status: str | None = None,
        claimed_at: datetime | None = None,
    ) -> Flow:
        session = get_session()
        try:
            flow = Flow(
                name=name,
                run_interval=run_interval,
                configuration=configuration if configuration is not None else {"class_name": "succeeding"},
                enabled=enabled,
                last_run_at=last_run_at,
                last_run_status=last_run_status or ("success" if last_run_at else None),
                claimed_at=claimed_at,
            )
            session.add(flow)
            session.commit()
            session.refresh(flow)
            return flow
        finally:
            session.close()

    return _make_flow


@pytest.fixture
def load_flow(db):
    """Reload a flow by name."""

    def _load_flow(name: str) -> Flow:
        session = get_session()
        try:
            return session.query(Flow).filter(Flow.name == name).one()
        finally:
            session.close()

    return _load_flow


@pytest.fixture
def load_runs(db):
    """Reload all runs of a flow, oldest first."""

    def _load_runs(flow_id: int) -> list[FlowRun]:
        session = get_session()
        try:
            return session.query(FlowRun).filter(FlowRun.flow_id == flow_id).order_by(FlowRun.id).all()
        finally:
            session.close()

    return _load_runs


@pytest.fixture
def now() -> datetime:
    """Fixed cycle time."""
    return NOW
