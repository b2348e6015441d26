"""Main entry point for the stack operator.

Runs one deploy (or plan, with DRY_RUN=true) from environment configuration
and prints the orchestration report as JSON. The click CLI (stackop.cli)
wraps the same building blocks for interactive use.

Exit codes:
    0  the report succeeded
    1  the report lists failures, or the run crashed
    2  configuration, spec or security errors (nothing was attempted)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError
from .reconciler import StackReconciler, check_prerequisites
from .report import Operation, OrchestrationReport
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError, load_stack_spec

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2

# LogRecord attributes that are not structured `extra=` fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
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

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    json_output: bool = True,
    level: int = logging.INFO,
    stream: TextIO | None = None,
) -> None:
    """Configure logging: JSON lines for audit logging, plain text otherwise.

    Args:
        json_output: Use the JSON formatter (ENABLE_AUDIT_LOGGING).
        level: Root log level.
        stream: Output stream, stdout by default. The CLI logs to stderr so
            the report on stdout stays machine readable.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def exit_code(report: OrchestrationReport) -> int:
    return EXIT_SUCCESS if report.succeeded else EXIT_FAILURE


async def execute(reconciler: StackReconciler, operation: Operation) -> OrchestrationReport:
    """Run one operation with SIGINT/SIGTERM wired to reconciler.shutdown()."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        match operation:
            case Operation.DEPLOY:
                return await reconciler.deploy(dry_run=False)
            case Operation.PLAN:
                return await reconciler.plan()
            case Operation.DESTROY:
                return await reconciler.destroy()
        raise ValueError(f"Unknown operation: {operation}")
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def build_reconciler(config: Config) -> StackReconciler:
    """Load the spec, check prerequisites and compose the reconciler.

    Raises:
        SpecLoadError: If the spec is invalid.
        ConfigurationError: If a required tool is missing.
        SecretlessViolationError: In managed identity mode, if secrets are set.
    """
    spec = load_stack_spec(config.spec_file, config.security.max_resources_per_stack)
    check_prerequisites(spec)
    return StackReconciler.from_config(config, spec)


async def main() -> int:
    """Run one deploy from environment configuration.

    Returns:
        Exit code (see module docstring).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIGURATION_ERROR

    setup_logging(json_output=config.security.enable_audit_logging)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting stack operator",
        extra={
            "stack": config.stack_id,
            "subscription_id": config.subscription_id,
            "location": config.location,
            "resource_group": config.resource_group,
            "dry_run": config.dry_run,
        },
    )

    try:
        reconciler = build_reconciler(config)
    except SpecLoadError as e:
        logger.error(
            "Stack spec loading failed",
            extra={"error": str(e), "spec_file": str(config.spec_file)},
        )
        return EXIT_CONFIGURATION_ERROR
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIGURATION_ERROR
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_CONFIGURATION_ERROR

    operation = Operation.PLAN if config.dry_run else Operation.DEPLOY
    try:
        report = await execute(reconciler, operation)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE

    print(report.to_json())
    return exit_code(report)


def run() -> None:
    """Entry point for `python -m stackop.main`."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
