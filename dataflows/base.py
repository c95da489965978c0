# dataflows/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Union

FlowConfiguration = Union[str, Dict[str, Any]]


class DataFlow(ABC):
    """
    Base class for all data flows.

    A data flow is a unit of recurring work. It is constructed from the full
    configuration stored on its flow definition and exposes a single `run`
    operation that either returns normally or raises.
    """

    def __init__(self, configuration: FlowConfiguration):
        self.configuration = configuration

    @property
    def params(self) -> Dict[str, Any]:
        """Configuration parameters, empty when the flow is configured by name only."""
        if isinstance(self.configuration, dict):
            return self.configuration
        return {}

    @abstractmethod
    def run(self) -> None:
        """
        Execute the flow.

        Raises:
            Exception: any error; the runner records it as a failed run.
        """
        pass
