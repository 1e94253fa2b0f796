"""Common runtime helpers for taskfuture scripts."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType
from typing import Protocol

from taskfuture.config.logging_config import get_logger, setup_logging
from taskfuture.config.settings import Settings

logger = get_logger(__name__)


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


@dataclass
class _ShutdownController:
    """Shutdown state shared between signal handlers and the loop."""

    _event: threading.Event

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=sig_name)
        self._event.set()


def create_shutdown_controller() -> _ShutdownController:
    return _ShutdownController(threading.Event())


def install_signal_handlers(controller: _ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    setup_logging(settings, json_logs=json_logs)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_logs)


def run_periodic_loop(
    *,
    controller: ShutdownSignal,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], object],
) -> int:
    """Call ``action`` every ``interval_seconds`` until shutdown.

    A failing iteration is logged and the loop keeps going, except in
    ``run_once`` mode where the error propagates to the caller.

    Returns:
        Number of iterations executed.
    """

    interval_seconds = max(0.1, interval_seconds)
    logger.info("periodic_loop_started", interval=interval_seconds, run_once=run_once)
    iteration = 0
    while not controller.is_set():
        iteration += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("periodic_iteration_failed", iteration=iteration)
            if run_once:
                raise
        if run_once:
            break
        controller.wait(interval_seconds)

    logger.info("periodic_loop_stopped", iterations=iteration)
    return iteration


__all__ = [
    "ShutdownSignal",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "run_periodic_loop",
]
