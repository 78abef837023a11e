"""
Environment Probe: read-only host facts for one provisioning run.

Every individual probe degrades to a safe default instead of failing:
  - no primary IPv4        → ignore list omits it (warning)
  - no ``Port`` line       → the named ``ssh`` service port
  - no active nft/ufw unit → generic iptables multiport action
  - no readable auth.log   → structured journal
"""

import ipaddress
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..core.audit_log import EventSeverity, EventType, get_install_logger
from ..core.commands import CommandRunner
from ..core.exceptions import ProbeDegraded
from ..core.settings import InstallPaths
from .service import Fail2banService

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = "ssh"
ROUTE_PROBE_TARGET = "1.1.1.1"

_PORT_LINE = re.compile(r"^\s*Port\s+(\d+)\s*(?:#.*)?$")


class FirewallBackend(str, Enum):
    NFTABLES = "nftables"
    UFW = "ufw"
    GENERIC = "generic-multiport"


class LogBackend(str, Enum):
    FLAT_FILE = "flat-file"
    JOURNAL = "structured-journal"


@dataclass(frozen=True)
class OsRelease:
    id: str = ""
    version_id: str = ""
    pretty_name: str = ""

    @property
    def is_debian(self) -> bool:
        return self.id == "debian"


@dataclass(frozen=True)
class HostFacts:
    """Immutable snapshot of the host, produced once per run."""
    primary_ipv4: Optional[str] = None
    ssh_port: str = DEFAULT_SSH_PORT
    firewall: FirewallBackend = FirewallBackend.GENERIC
    log_backend: LogBackend = LogBackend.JOURNAL
    os_release: OsRelease = field(default_factory=OsRelease)
    degraded: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "primary_ipv4": self.primary_ipv4,
            "ssh_port": self.ssh_port,
            "firewall": self.firewall.value,
            "log_backend": self.log_backend.value,
            "os_release": self.os_release.pretty_name or self.os_release.id,
            "degraded": list(self.degraded),
        }


class EnvironmentProbe:
    """Gathers ``HostFacts``; never raises."""

    def __init__(
        self,
        runner: CommandRunner,
        paths: InstallPaths,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self._runner = runner
        self._paths = paths
        self._service = Fail2banService(runner, paths)
        self._which = which

    def probe(self) -> HostFacts:
        notes: List[str] = []

        os_release = self._guard(self.detect_os_release, OsRelease(), notes)
        if os_release.id and not os_release.is_debian:
            logger.warning(
                "Targeted for Debian; detected %s. Continuing anyway.",
                os_release.pretty_name or os_release.id,
            )

        facts = HostFacts(
            primary_ipv4=self._guard(self.detect_primary_ipv4, None, notes),
            ssh_port=self._guard(self.detect_ssh_port, DEFAULT_SSH_PORT, notes),
            firewall=self._guard(self.detect_firewall, FirewallBackend.GENERIC, notes),
            log_backend=self._guard(self.detect_log_backend, LogBackend.JOURNAL, notes),
            os_release=os_release,
            degraded=tuple(notes),
        )

        install_log = get_install_logger()
        for note in facts.degraded:
            install_log.log_event(
                EventType.PROBE_DEGRADED,
                EventSeverity.WARNING,
                f"Probe degraded: {note}",
                details={"note": note},
            )
        install_log.log_event(
            EventType.PROBE_COMPLETED,
            EventSeverity.INFO,
            "Detected values: server_ip={}, ssh_port={}, firewall={}".format(
                facts.primary_ipv4 or "<none>", facts.ssh_port, facts.firewall.value,
            ),
            details=facts.to_dict(),
        )
        return facts

    @staticmethod
    def _guard(probe, default, notes: List[str]):
        """Run one probe, recording a note and returning ``default`` on degradation."""
        try:
            return probe()
        except ProbeDegraded as exc:
            notes.append(str(exc))
        except OSError as exc:
            notes.append(f"{probe.__name__}: {exc}")
        return default

    # ── Individual probes ─────────────────────────────────────────

    def detect_primary_ipv4(self) -> Optional[str]:
        r = self._runner.run(["ip", "route", "get", ROUTE_PROBE_TARGET], timeout=10)
        if r.ok:
            tokens = r.stdout.split()
            for i, token in enumerate(tokens[:-1]):
                if token == "src" and _is_ipv4(tokens[i + 1]):
                    return tokens[i + 1]

        r = self._runner.run(["hostname", "-I"], timeout=10)
        if r.ok:
            for token in r.stdout.split():
                if _is_ipv4(token):
                    return token

        raise ProbeDegraded("primary_ipv4: not detected; ignoreip will not include it")

    def detect_ssh_port(self) -> str:
        try:
            text = self._paths.sshd_config.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ProbeDegraded(
                f"ssh_port: cannot read {self._paths.sshd_config} ({exc.strerror}); "
                f"using '{DEFAULT_SSH_PORT}'"
            ) from exc

        for line in text.splitlines():
            m = _PORT_LINE.match(line)
            if m:
                return m.group(1)
        return DEFAULT_SSH_PORT

    def detect_firewall(self) -> FirewallBackend:
        if self._which("nft") and self._service.unit_active("nftables"):
            return FirewallBackend.NFTABLES
        if self._which("ufw") and self._service.unit_active("ufw"):
            return FirewallBackend.UFW
        return FirewallBackend.GENERIC

    def detect_log_backend(self) -> LogBackend:
        # Only an auth.log with content counts; on journald-only images an
        # empty placeholder never receives events.
        auth_log = self._paths.auth_log
        if (
            auth_log.is_file()
            and os.access(auth_log, os.R_OK)
            and auth_log.stat().st_size > 0
        ):
            return LogBackend.FLAT_FILE
        return LogBackend.JOURNAL

    def detect_os_release(self) -> OsRelease:
        path = self._paths.os_release
        if not path.exists():
            return OsRelease()
        values = {}
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip().strip('"').strip("'")
        return OsRelease(
            id=values.get("ID", ""),
            version_id=values.get("VERSION_ID", ""),
            pretty_name=values.get("PRETTY_NAME", ""),
        )


def _is_ipv4(value: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(value), ipaddress.IPv4Address)
    except ValueError:
        return False
