"""
fail2ban and systemd collaborator commands.

Thin named wrappers over ``CommandRunner`` so the rest of the pipeline never
builds argument vectors itself.  None of these raise on failure; they return
``CommandOutput`` and the caller classifies the result.
"""

import logging
from typing import Optional

from ..core.commands import CommandOutput, CommandRunner
from ..core.settings import (
    GUARDED_COMMS,
    GUARDED_UNITS,
    JOURNAL_TAIL_LINES,
    SERVICE_UNIT,
    SOCKET_UNIT,
    InstallPaths,
)

logger = logging.getLogger(__name__)


class Fail2banService:
    """Commands exposed by fail2ban itself and by the init system."""

    def __init__(self, runner: CommandRunner, paths: InstallPaths):
        self._run = runner.run
        self._paths = paths

    # ── fail2ban ───────────────────────────────────────────────────

    def self_check(self) -> CommandOutput:
        """``fail2ban-server -t``: parse and test the current configuration."""
        return self._run(["fail2ban-server", "-t"], timeout=60)

    def ping(self) -> CommandOutput:
        """Lightweight health probe; succeeds only when the server answers."""
        return self._run(["fail2ban-client", "ping"], timeout=10)

    def is_alive(self) -> bool:
        return self.ping().ok

    def direct_start(self) -> CommandOutput:
        """Start the server in the background, bypassing systemd."""
        return self._run(
            [
                "fail2ban-server", "-b",
                "-s", str(self._paths.socket_path),
                "-p", str(self._paths.pid_path),
                "start",
            ],
            timeout=30,
        )

    def foreground_debug(self, seconds: float) -> CommandOutput:
        """Run the server in the foreground; it is killed after ``seconds``."""
        return self._run(
            [
                "fail2ban-server", "-xf",
                "-s", str(self._paths.socket_path),
                "-p", str(self._paths.pid_path),
                "start",
            ],
            timeout=seconds,
        )

    def client_status(self, jail: Optional[str] = None) -> CommandOutput:
        args = ["fail2ban-client", "status"]
        if jail:
            args.append(jail)
        return self._run(args, timeout=15)

    # ── systemd ────────────────────────────────────────────────────

    def daemon_reload(self) -> CommandOutput:
        return self._run(["systemctl", "daemon-reload"], timeout=60)

    def socket_unit_present(self) -> bool:
        r = self._run(
            ["systemctl", "list-unit-files", SOCKET_UNIT, "--no-legend"],
            timeout=15,
        )
        return r.ok and any(
            line.split()[0] == SOCKET_UNIT
            for line in r.stdout.splitlines()
            if line.strip()
        )

    def enable_socket(self) -> CommandOutput:
        return self._run(["systemctl", "enable", "--now", SOCKET_UNIT], timeout=60)

    def enable(self) -> CommandOutput:
        return self._run(["systemctl", "enable", SERVICE_UNIT], timeout=60)

    def restart(self) -> CommandOutput:
        return self._run(["systemctl", "restart", SERVICE_UNIT], timeout=90)

    def unit_active(self, unit: str) -> bool:
        return self._run(["systemctl", "is-active", "--quiet", unit], timeout=15).ok

    def status(self) -> CommandOutput:
        return self._run(
            ["systemctl", "status", SERVICE_UNIT, "-l", "--no-pager"],
            timeout=30,
        )

    def journal_tail(self, lines: int = JOURNAL_TAIL_LINES) -> CommandOutput:
        return self._run(
            ["journalctl", "-u", SERVICE_UNIT, "-b", "--no-pager", "-n", str(lines)],
            timeout=30,
        )

    @staticmethod
    def journal_match() -> str:
        """Structured-log filter for the guarded SSH daemon."""
        terms = [f"_SYSTEMD_UNIT={unit}" for unit in GUARDED_UNITS]
        terms += [f"_COMM={comm}" for comm in GUARDED_COMMS]
        return " + ".join(terms)
