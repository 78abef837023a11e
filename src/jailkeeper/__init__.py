# jailkeeper: idempotent fail2ban installer for Debian hosts
#
# Probes the host, writes jail.local for the sshd jail, repairs the runtime
# directory and brings fail2ban up through progressively more direct start
# strategies, collecting diagnostics when none of them work.

__version__ = "0.4.0"
__author__ = "jailkeeper maintainers"
__description__ = "Idempotent fail2ban installer and activation orchestrator"

from .core import (
    EventSeverity,
    EventType,
    InstallPaths,
    Settings,
    get_install_logger,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "InstallPaths",
    "Settings",
    "get_install_logger",
]
