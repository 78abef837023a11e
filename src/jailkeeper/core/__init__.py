# Core module - shared plumbing for the provisioning pipeline:
# - Install logging (structlog, append-only)
# - Error taxonomy
# - Command execution and bounded polling
# - Settings and host paths

from .audit_log import (
    EventSeverity,
    EventType,
    InstallLogger,
    get_install_logger,
    log_install_event,
    set_install_logger,
)
from .commands import CommandOutput, CommandRunner
from .polling import Poller, PollResult
from .settings import InstallPaths, Settings

__all__ = [
    # Install Logging
    "InstallLogger",
    "EventType",
    "EventSeverity",
    "get_install_logger",
    "set_install_logger",
    "log_install_event",
    # Commands
    "CommandOutput",
    "CommandRunner",
    "Poller",
    "PollResult",
    # Settings
    "InstallPaths",
    "Settings",
]
