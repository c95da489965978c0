# dataflows/builtin.py
from __future__ import annotations

import logging

import requests

from dataflows.base import DataFlow, FlowConfiguration
from dataflows.models import HttpPingInput, LogMessageInput
from dataflows.registry import register_flow

logger = logging.getLogger(__name__)


@register_flow("noop")
class NoopFlow(DataFlow):
    """Flow that does nothing. Useful to check scheduling end to end."""

    def run(self) -> None:
        logger.debug("noop flow ran")


@register_flow("log_message")
class LogMessageFlow(DataFlow):
    """Flow that writes a configured message to the log."""

    def __init__(self, configuration: FlowConfiguration):
        super().__init__(configuration)
        self.input = LogMessageInput(**self.params)

    def run(self) -> None:
        logger.log(logging.getLevelName(self.input.level), "%s", self.input.message)


@register_flow("http_ping")
class HttpPingFlow(DataFlow):
    """Flow that requests a URL and fails on a non-2xx response."""

    def __init__(self, configuration: FlowConfiguration):
        super().__init__(configuration)
        self.input = HttpPingInput(**self.params)

    def run(self) -> None:
        response = requests.request(
            self.input.method,
            self.input.url,
            headers=self.input.headers,
            timeout=self.input.timeout,
        )
        response.raise_for_status()
        logger.info("Pinged %s → %s", self.input.url, response.status_code)
