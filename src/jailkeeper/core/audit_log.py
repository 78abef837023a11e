# Install log: append-across-runs structured record of every provisioning run.
#
# An unattended run that fails must be diagnosable after the fact without
# re-running it, so every stage transition, fallback and error is written
# here as a JSON line, and echoed to stderr for an operator watching live.

import logging
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of provisioning events written to the install log."""
    RUN_STARTED = "run.started"
    RUN_FINISHED = "run.finished"

    PACKAGES_INSTALLED = "packages.installed"

    PROBE_COMPLETED = "probe.completed"
    PROBE_DEGRADED = "probe.degraded"

    CONFIG_BACKED_UP = "config.backed_up"
    CONFIG_WRITTEN = "config.written"
    CONFIG_VALIDATED = "config.validated"
    CONFIG_REJECTED = "config.rejected"

    RUNTIME_REPAIRED = "runtime.repaired"
    OVERRIDE_QUARANTINED = "systemd.override.quarantined"

    STAGE_STARTED = "activation.stage.started"
    STAGE_FAILED = "activation.stage.failed"
    SERVICE_HEALTHY = "activation.healthy"
    ACTIVATION_EXHAUSTED = "activation.exhausted"

    DIAGNOSTICS_COLLECTED = "diagnostics.collected"
    FATAL_ERROR = "run.fatal"


class EventSeverity(str, Enum):
    """
    Severity levels for provisioning events.

    - INFO: normal progress
    - WARNING: degraded but continuing (probe fallback, stage fallthrough)
    - ERROR: the run is failing
    """
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def to_level(self) -> int:
        return {
            EventSeverity.INFO: logging.INFO,
            EventSeverity.WARNING: logging.WARNING,
            EventSeverity.ERROR: logging.ERROR,
        }[self]


class RunLogBuffer(logging.Handler):
    """Keeps this run's log lines in memory for the diagnostics report."""

    def __init__(self, capacity: int = 2000):
        super().__init__(level=logging.DEBUG)
        self.capacity = capacity
        self.lines: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)
            return
        if len(self.lines) > self.capacity:
            del self.lines[: len(self.lines) - self.capacity]


class InstallLogger:
    """
    Append-only structured install log.

    Features:
    - Structured JSON event lines via structlog
    - Automatic timestamp and event ID
    - File handler in append mode (never truncated between runs)
    - Optional stderr echo for interactive runs
    - In-memory copy of the current run for diagnostics
    """

    def __init__(self, log_path: Optional[Path] = None, echo: bool = True):
        """
        Initialize install logger.

        Args:
            log_path: Install log file (default: /var/log/jailkeeper/install.log)
            echo: Whether to mirror log lines to stderr
        """
        self.log_path = Path(log_path or "/var/log/jailkeeper/install.log")
        self.echo = echo
        self._handlers: List[logging.Handler] = []
        self.run_buffer = RunLogBuffer()

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_handlers()

        self.logger = structlog.get_logger("jailkeeper.install")

    def _setup_handlers(self):
        """Attach file, stderr and run-buffer handlers to the root logger."""
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
        root_logger = logging.getLogger()

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_path, mode="a", encoding="utf-8")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            self._handlers.append(file_handler)
        except OSError as e:
            # Still usable: stderr and the run buffer keep working
            print(f"install log unavailable ({self.log_path}): {e}", file=sys.stderr)

        if self.echo:
            stream_handler = logging.StreamHandler(sys.stderr)
            stream_handler.setLevel(logging.INFO)
            stream_handler.setFormatter(formatter)
            self._handlers.append(stream_handler)

        self.run_buffer.setFormatter(formatter)
        self._handlers.append(self.run_buffer)

        for handler in self._handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)

    def close(self) -> None:
        """Detach and close this logger's handlers."""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log a provisioning event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "host": socket.gethostname(),
            "details": details or {},
        }
        self.logger.log(severity.to_level(), "install_event", **event_data)
        return event_id

    def run_lines(self) -> List[str]:
        """Log lines emitted since this logger was created."""
        return list(self.run_buffer.lines)


# Global logger instance
_install_logger: Optional[InstallLogger] = None


def get_install_logger() -> InstallLogger:
    """Get global install logger (singleton pattern)."""
    global _install_logger
    if _install_logger is None:
        _install_logger = InstallLogger()
    return _install_logger


def set_install_logger(install_logger: Optional[InstallLogger]) -> None:
    """Replace the global install logger (closing the previous one)."""
    global _install_logger
    if _install_logger is not None and _install_logger is not install_logger:
        _install_logger.close()
    _install_logger = install_logger


def log_install_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging provisioning events.

    Usage:
        log_install_event(
            EventType.PROBE_DEGRADED,
            EventSeverity.WARNING,
            "No primary IPv4 detected",
            details={"probe": "primary_ipv4"}
        )
    """
    return get_install_logger().log_event(event_type, severity, message, **kwargs)
