"""Operator entry point: reconcile one VM continuously.

Configuration comes from the environment (see Config.from_env) and the
session from the OpenNebula auth file. Credentials are never accepted from
the desired-state file or from environment variables.
"""

from __future__ import annotations

import logging
import signal
import sys
from datetime import UTC
from types import FrameType

from .config import Config, ConfigurationError
from .lifecycle import VmLifecycleController, VmResource
from .reconciler import Reconciler
from .security import CredentialsError, InsecureCredentialsError, resolve_session
from .spec_loader import SpecLoadError, load_spec
from .state_store import StateStore, StateStoreError
from .transport import XmlRpcOneClient


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

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
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # pyone talks HTTP through requests, which logs every connection via urllib3
    logging.getLogger("urllib3").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset(
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


def main() -> int:
    """Run the operator.

    Returns:
        Exit code: 0 on clean shutdown, 1 on error, 2 on a credentials
        security violation.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    if config.spec_path is None:
        logger.error("ONEVM_SPEC must point to a desired-state file")
        return 1

    logger.info(
        "Starting OpenNebula VM operator",
        extra={
            "endpoint": config.endpoint,
            "spec_path": str(config.spec_path),
            "state_path": str(config.state_path),
            "mode": config.mode.value,
        },
    )

    try:
        session = resolve_session()
    except InsecureCredentialsError as e:
        # SECURITY: password outside the auth file - fatal security error
        logger.critical(
            "Security violation: insecure credentials",
            extra={"error": str(e)},
        )
        return 2
    except CredentialsError as e:
        logger.error("Credentials unavailable", extra={"error": str(e)})
        return 1

    client = XmlRpcOneClient(config.endpoint, session, config.rpc_timeout_seconds)
    store = StateStore(config.state_path)
    controller = VmLifecycleController(client, config.lifecycle, checkpoint=store.save)
    reconciler = Reconciler(controller, config)
    spec_path = config.spec_path

    def load_resource() -> VmResource:
        # Re-read every cycle so edits to the spec file are picked up
        return store.load_resource(load_spec(spec_path))

    # Validate once up front so a broken spec fails fast
    try:
        load_resource()
    except (SpecLoadError, StateStoreError) as e:
        logger.error("Failed to load desired state", extra={"error": str(e)})
        return 1

    def signal_handler(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)

    try:
        reconciler.run(load_resource, store.save)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the onevm-operator command."""
    sys.exit(main())


if __name__ == "__main__":
    run()
