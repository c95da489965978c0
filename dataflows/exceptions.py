# dataflows/exceptions.py
"""
Exception types shared by the flow runner and the heartbeat server.

Hierarchy:
- HeartbeatFlowsError (base)
  - UnresolvableFlowError (configuration names no registered work unit)
  - InvalidRunTransitionError (run status moved outside pending → in_progress → terminal)
    - RunAlreadyCompletedError (terminal run completed a second time)
  - RunNotFoundError
  - ClaimError (store failure while claiming due flows, fatal for a cycle)
"""


class HeartbeatFlowsError(Exception):
    """Base exception for all heartbeat flow errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnresolvableFlowError(HeartbeatFlowsError, ValueError):
    """The flow configuration does not name a registered work unit."""

    def __init__(self, message: str, flow_key: str | None = None):
        super().__init__(message)
        self.flow_key = flow_key


class InvalidRunTransitionError(HeartbeatFlowsError):
    """A run record was moved to a status its current status does not allow."""

    def __init__(self, message: str, current: str | None = None, target: str | None = None):
        super().__init__(message)
        self.current = current
        self.target = target


class RunAlreadyCompletedError(InvalidRunTransitionError):
    """A run record that already reached success/failed was completed again."""


class RunNotFoundError(HeartbeatFlowsError, LookupError):
    pass


class ClaimError(HeartbeatFlowsError):
    """
    Claiming due flows failed at the store level.
    Fatal for the whole heartbeat cycle, nothing is executed.
    """


class FlowAlreadyExistsError(HeartbeatFlowsError, ValueError):
    """A flow with the same name already exists."""
