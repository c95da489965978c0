# dataflows/registry.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator

from dataflows.base import DataFlow, FlowConfiguration
from dataflows.exceptions import UnresolvableFlowError

logger = logging.getLogger(__name__)

FlowFactory = Callable[[FlowConfiguration], DataFlow]

CLASS_NAME_KEY = "class_name"


def flow_key(configuration: Any) -> str:
    """
    Extract the work unit name from a flow configuration.

    The configuration is either the name itself or a mapping with a
    'class_name' entry.

    Raises:
        UnresolvableFlowError: If no name can be extracted
    """
    if isinstance(configuration, str):
        key = configuration
    elif isinstance(configuration, dict):
        key = configuration.get(CLASS_NAME_KEY)
    else:
        raise UnresolvableFlowError(
            f"Flow configuration must be a string or a mapping, got {type(configuration).__name__}"
        )

    if not isinstance(key, str) or not key.strip():
        raise UnresolvableFlowError(f"Flow configuration must include a '{CLASS_NAME_KEY}' field")
    return key.strip()


class FlowRegistry:
    """Maps work unit names to factories that build a DataFlow from its configuration."""

    def __init__(self) -> None:
        self._factories: Dict[str, FlowFactory] = {}

    def register(self, name: str) -> Callable[[FlowFactory], FlowFactory]:
        """
        Decorator registering a DataFlow subclass (or any factory) under a name.

        Raises:
            ValueError: If the name is already registered
        """

        def decorator(factory: FlowFactory) -> FlowFactory:
            self.add(name, factory)
            return factory

        return decorator

    def add(self, name: str, factory: FlowFactory) -> None:
        if name in self._factories:
            raise ValueError(f"Flow '{name}' is already registered")
        self._factories[name] = factory
        logger.debug("Registered flow %s", name)

    def remove(self, name: str) -> None:
        self._factories.pop(name, None)

    def resolve(self, configuration: Any) -> FlowFactory:
        """
        Resolve the factory named by a flow configuration.

        Raises:
            UnresolvableFlowError: If the name is missing or not registered
        """
        key = flow_key(configuration)
        try:
            return self._factories[key]
        except KeyError:
            raise UnresolvableFlowError(f"Unresolvable flow: '{key}' is not registered", flow_key=key) from None

    def create(self, configuration: FlowConfiguration) -> DataFlow:
        """Build a flow instance, passing it the full configuration."""
        factory = self.resolve(configuration)
        return factory(configuration)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._factories))

    def __len__(self) -> int:
        return len(self._factories)


# Default registry used by the server
registry = FlowRegistry()


def register_flow(name: str) -> Callable[[FlowFactory], FlowFactory]:
    """Register a flow in the default registry."""
    return registry.register(name)
