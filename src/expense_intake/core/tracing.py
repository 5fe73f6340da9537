from __future__ import annotations

import logging
from typing import Any, Protocol

from expense_intake.core.logging import get_logger, log_event


class DecisionTracer(Protocol):
    def record(self, step: str, **details: Any) -> None: ...


class LoggingTracer:
    """Writes every decision step as a structured DEBUG event."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or get_logger("expense_intake.trace")

    def record(self, step: str, **details: Any) -> None:
        log_event(self._logger, f"trace.{step}", level=logging.DEBUG, **details)


class RecordingTracer:
    def __init__(self) -> None:
        self.steps: list[tuple[str, dict[str, Any]]] = []

    def record(self, step: str, **details: Any) -> None:
        self.steps.append((step, details))

    @property
    def step_names(self) -> list[str]:
        return [name for name, _ in self.steps]


default_tracer: DecisionTracer = LoggingTracer()
