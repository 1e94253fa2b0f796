"""Periodic sweep that deletes terminal task records past retention."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import runtime
from taskfuture.adapters.store_factory import create_task_store
from taskfuture.config.logging_config import get_logger
from taskfuture.config.settings import get_settings
from taskfuture.domain.exceptions import StorageUnavailableError
from taskfuture.use_cases.expire_tasks import ExpirationSweep

logger = get_logger(__name__)


def _parse_cutoff(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"--cutoff must be an ISO-8601 timestamp, got {value!r}"
        ) from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete expired terminal task records"
    )
    parser.add_argument(
        "--retention-hours",
        type=float,
        default=None,
        help="Override the configured retention window",
    )
    parser.add_argument(
        "--cutoff",
        type=_parse_cutoff,
        default=None,
        help="Explicit ISO-8601 cutoff (implies --run-once)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Interval between sweeps; defaults to the configured value",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args(argv)
    if args.retention_hours is not None and args.retention_hours <= 0:
        parser.error("--retention-hours must be greater than 0")
    if args.interval_seconds is not None and args.interval_seconds <= 0:
        parser.error("--interval-seconds must be greater than 0")
    if args.cutoff is not None:
        args.run_once = True
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    runtime.initialize_logging(settings, json_logs=args.json_logs)

    controller = runtime.create_shutdown_controller()
    runtime.install_signal_handlers(controller)

    retention = (
        timedelta(hours=args.retention_hours)
        if args.retention_hours is not None
        else settings.retention
    )
    interval_seconds = args.interval_seconds or settings.sweep_interval_seconds

    store = create_task_store(settings)
    sweep = ExpirationSweep(store, retention=retention)

    try:
        runtime.run_periodic_loop(
            controller=controller,
            interval_seconds=interval_seconds,
            run_once=args.run_once,
            action=lambda: sweep.run(args.cutoff),
        )
    except StorageUnavailableError as exc:
        logger.error("expiration_sweep_storage_unavailable", error=str(exc))
        return 1
    finally:
        close = getattr(store, "close", None)
        if callable(close):
            close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
