"""Main entry point for the converge reconciliation engine.

Everything is driven by environment variables (see Config.from_env). The
process either runs a single cycle and exits, or, when CONVERGE_INTERVAL is
set, keeps reconciling until SIGTERM/SIGINT.

Plans and apply summaries are written to stdout; structured JSON logs go to
stderr so the two never interleave.

Exit codes:
    0: success (no drift, or drift applied, or OBSERVE mode)
    1: failure (configuration, declarations, apply failures, state conflicts)
    2: drift found in PROTECT mode
    3: scope locked by another run
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .provider import ProviderRegistrationError, ProviderRegistry
from .reconciler import Reconciler, ReconcileResult
from .state import AlreadyLocked, LocalStateStore

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PROTECT_VIOLATION = 2
EXIT_LOCKED = 3

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "taskName"}
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def exit_code_for(result: ReconcileResult) -> int:
    """Map a cycle result to the process exit code."""
    if isinstance(result.error, AlreadyLocked):
        return EXIT_LOCKED
    if result.error is not None:
        return EXIT_FAILURE
    if result.violation:
        return EXIT_PROTECT_VIOLATION
    return EXIT_SUCCESS


def _emit(result: ReconcileResult) -> None:
    if result.plan_output:
        sys.stdout.write(result.plan_output)
    if result.apply_output:
        sys.stdout.write(result.apply_output)
    sys.stdout.flush()


async def main() -> int:
    """Run the engine.

    Returns:
        Exit code (see module docstring).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        registry = ProviderRegistry.from_entry_points()
    except ProviderRegistrationError as e:
        logger.error("Provider registration failed", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting converge",
        extra={
            "scope": config.scope,
            "mode": config.mode.value,
            "config_path": str(config.config_path),
            "state_dir": str(config.state_dir),
            "kinds": registry.kinds(),
        },
    )

    store = LocalStateStore(config.state_dir, history=config.state_history)
    reconciler = Reconciler(config, registry, store)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        if config.continuous:
            await reconciler.run()
            logger.info("Engine stopped")
            return EXIT_SUCCESS

        result = await reconciler.reconcile_once()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    _emit(result)
    return exit_code_for(result)


def run() -> None:
    """Entry point for the converge command."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
