# heartbeat_server/db/models.py
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from dataflows.exceptions import InvalidRunTransitionError, RunAlreadyCompletedError

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps read back from the database as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Convert to an aware UTC timestamp; naive values are taken as UTC."""
    return as_utc(value).astimezone(timezone.utc)


class FlowStatus(str, Enum):
    """Summary status of a flow's last run."""

    SUCCESS = "success"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a single run record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED})

# pending → in_progress → (success | failed)
RUN_TRANSITIONS = {
    RunStatus.PENDING: frozenset({RunStatus.IN_PROGRESS}),
    RunStatus.IN_PROGRESS: frozenset({RunStatus.SUCCESS, RunStatus.FAILED}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class Flow(Base):
    """Scheduled flow definition."""

    __tablename__ = "data_flows"
    __table_args__ = (
        CheckConstraint("run_interval > 0", name="ck_data_flows_run_interval_positive"),
        Index("ix_data_flows_enabled_last_run_at", "enabled", "last_run_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)
    configuration = Column(JSON, nullable=True)  # Work unit name, or mapping with "class_name"
    run_interval = Column(Integer, nullable=False)  # Seconds
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_run_status = Column(String, nullable=True)  # "success", "failed", or None if never run
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # Set while a heartbeat cycle owns the flow
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    runs = relationship(
        "FlowRun",
        back_populates="flow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="FlowRun.id",
    )

    @validates("name")
    def validate_name(self, key, value):
        if not value or not str(value).strip():
            raise ValueError("name must be present")
        return value

    @validates("run_interval")
    def validate_run_interval(self, key, value):
        if value is None or int(value) <= 0:
            raise ValueError(f"run_interval must be greater than 0, got: {value}")
        return int(value)

    @validates("last_run_status")
    def validate_last_run_status(self, key, value):
        if value is None:
            return None
        return FlowStatus(value).value

    def is_due(self, now: datetime) -> bool:
        """Enabled and never run, or at least run_interval seconds since the last run."""
        if not self.enabled:
            return False
        last_run_at = as_utc(self.last_run_at)
        if last_run_at is None:
            return True
        return (now - last_run_at).total_seconds() >= self.run_interval

    def __repr__(self) -> str:
        return f"<Flow {self.name!r} interval={self.run_interval}s enabled={self.enabled}>"


class FlowRun(Base):
    """One execution attempt of a flow."""

    __tablename__ = "data_flow_runs"
    __table_args__ = (Index("ix_data_flow_runs_flow_id_created_at", "flow_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    flow_id = Column(Integer, ForeignKey("data_flows.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False, index=True)  # "pending", "in_progress", "success", "failed"
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    error_backtrace = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    flow = relationship("Flow", back_populates="runs")

    @validates("status")
    def validate_status(self, key, value):
        return RunStatus(value).value

    @validates("started_at")
    def validate_started_at(self, key, value):
        if value is None:
            raise ValueError("started_at must be present")
        return value

    @property
    def is_terminal(self) -> bool:
        return RunStatus(self.status) in TERMINAL_RUN_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS.value

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED.value

    @property
    def duration(self) -> float | None:
        """Seconds between start and end, None while the run is open."""
        if self.ended_at is None:
            return None
        return (as_utc(self.ended_at) - as_utc(self.started_at)).total_seconds()

    def transition_to(self, status: RunStatus) -> None:
        """
        Move the run to a new status.

        Raises:
            RunAlreadyCompletedError: If the run is already terminal
            InvalidRunTransitionError: If the transition is not allowed
        """
        current = RunStatus(self.status)
        target = RunStatus(status)
        if current in TERMINAL_RUN_STATUSES:
            raise RunAlreadyCompletedError(
                f"Run {self.id} is already {current.value}", current=current.value, target=target.value
            )
        if target not in RUN_TRANSITIONS[current]:
            raise InvalidRunTransitionError(
                f"Run {self.id} cannot move from {current.value} to {target.value}",
                current=current.value,
                target=target.value,
            )
        self.status = target.value
