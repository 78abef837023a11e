"""
jail.local synthesis and writing.

``ConfigSynthesizer.synthesize()`` is pure: the same ``HostFacts`` and
``PolicyDefaults`` always render the same file.  ``ConfigWriter`` owns the
side effects (timestamped backup, temp file, atomic rename, mode 0644).
"""

import configparser
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.audit_log import EventSeverity, EventType, get_install_logger
from ..core.exceptions import ConfigWriteError
from ..core.settings import InstallPaths
from .probe import FirewallBackend, HostFacts, LogBackend
from .service import Fail2banService

logger = logging.getLogger(__name__)

LOOPBACK_IGNORE = ("127.0.0.1/8", "::1")

BANACTIONS = {
    FirewallBackend.NFTABLES: "nftables-multiport",
    FirewallBackend.UFW: "ufw",
    FirewallBackend.GENERIC: "iptables-multiport",
}

BACKEND_FOR_LOG = {
    LogBackend.FLAT_FILE: "auto",
    LogBackend.JOURNAL: "systemd",
}

CONFIG_MODE = 0o644
_DEFAULT_SECTION = "DEFAULT"


def utc_stamp(now: Optional[datetime] = None) -> str:
    """Backup suffix timestamp, e.g. ``20261019T094400Z``."""
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")


@dataclass(frozen=True)
class PolicyDefaults:
    """Fixed policy numbers; edit the rendered file to tune them."""
    bantime: str = "1d"
    findtime: str = "10m"
    maxretry: int = 5
    loglevel: str = "INFO"
    dbfile: str = "/var/lib/fail2ban/fail2ban.sqlite3"
    jail_name: str = "sshd"
    extra_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DefaultSection:
    bantime: str
    findtime: str
    maxretry: int
    backend: str
    dbfile: str
    ignoreip: Tuple[str, ...]
    banaction: str
    loglevel: str

    def items(self) -> List[Tuple[str, str]]:
        return [
            ("bantime", self.bantime),
            ("findtime", self.findtime),
            ("maxretry", str(self.maxretry)),
            ("backend", self.backend),
            ("dbfile", self.dbfile),
            ("ignoreip", " ".join(self.ignoreip)),
            ("banaction", self.banaction),
            ("loglevel", self.loglevel),
        ]


@dataclass(frozen=True)
class JailSection:
    """One guard section; exactly one of ``logpath``/``journalmatch``."""
    name: str
    enabled: bool
    port: str
    maxretry: int
    logpath: Optional[str] = None
    journalmatch: Optional[str] = None

    def __post_init__(self):
        if (self.logpath is None) == (self.journalmatch is None):
            raise ValueError(
                f"jail [{self.name}] needs exactly one of logpath or journalmatch"
            )

    def items(self) -> List[Tuple[str, str]]:
        rows = [
            ("enabled", "true" if self.enabled else "false"),
            ("port", self.port),
            ("maxretry", str(self.maxretry)),
        ]
        if self.logpath is not None:
            rows.append(("logpath", self.logpath))
        else:
            rows.append(("journalmatch", self.journalmatch))
        return rows


@dataclass(frozen=True)
class ServiceConfig:
    default: DefaultSection
    jails: Tuple[JailSection, ...] = field(default_factory=tuple)

    def jail(self, name: str) -> JailSection:
        for jail in self.jails:
            if jail.name == name:
                return jail
        raise KeyError(name)

    def render(self) -> str:
        lines = [
            "# Managed by jailkeeper. Earlier versions are kept as",
            "# jail.local.backup.<timestamp> next to this file.",
            f"[{_DEFAULT_SECTION}]",
        ]
        lines.extend(f"{key} = {value}" for key, value in self.default.items())
        for jail in self.jails:
            lines.append("")
            lines.append(f"[{jail.name}]")
            lines.extend(f"{key} = {value}" for key, value in jail.items())
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> "ServiceConfig":
        """Read back a rendered jail.local (for comparison across runs)."""
        # DEFAULT is read as an ordinary section so its keys don't leak into jails
        parser = configparser.ConfigParser(
            interpolation=None, default_section="__jailkeeper_none__",
        )
        parser.read_string(text)
        d = parser[_DEFAULT_SECTION]
        default = DefaultSection(
            bantime=d["bantime"],
            findtime=d["findtime"],
            maxretry=int(d["maxretry"]),
            backend=d["backend"],
            dbfile=d["dbfile"],
            ignoreip=tuple(d.get("ignoreip", "").split()),
            banaction=d["banaction"],
            loglevel=d["loglevel"],
        )
        jails = []
        for name in parser.sections():
            if name == _DEFAULT_SECTION:
                continue
            s = parser[name]
            jails.append(JailSection(
                name=name,
                enabled=s.getboolean("enabled"),
                port=s["port"],
                maxretry=int(s["maxretry"]),
                logpath=s.get("logpath"),
                journalmatch=s.get("journalmatch"),
            ))
        return cls(default=default, jails=tuple(jails))


class ConfigSynthesizer:
    """Renders ``ServiceConfig`` from host facts plus policy defaults."""

    def __init__(self, paths: Optional[InstallPaths] = None):
        self._paths = paths or InstallPaths()

    def synthesize(self, facts: HostFacts, policy: PolicyDefaults = PolicyDefaults()) -> ServiceConfig:
        ignore = list(LOOPBACK_IGNORE)
        if facts.primary_ipv4:
            ignore.append(facts.primary_ipv4)
        ignore.extend(e for e in policy.extra_ignore if e not in ignore)

        use_flat_log = facts.log_backend == LogBackend.FLAT_FILE
        default = DefaultSection(
            bantime=policy.bantime,
            findtime=policy.findtime,
            maxretry=policy.maxretry,
            backend=BACKEND_FOR_LOG[facts.log_backend],
            dbfile=policy.dbfile,
            ignoreip=tuple(ignore),
            banaction=BANACTIONS[facts.firewall],
            loglevel=policy.loglevel,
        )
        jail = JailSection(
            name=policy.jail_name,
            enabled=True,
            port=facts.ssh_port,
            maxretry=policy.maxretry,
            logpath=str(self._paths.auth_log) if use_flat_log else None,
            journalmatch=None if use_flat_log else Fail2banService.journal_match(),
        )
        return ServiceConfig(default=default, jails=(jail,))


@dataclass(frozen=True)
class WriteResult:
    path: Path
    backup_path: Optional[Path] = None
    # None when there was no previous file or it could not be parsed
    changed: Optional[bool] = None


class ConfigWriter:
    """Backs up the previous jail.local, then replaces it atomically."""

    def __init__(self, paths: InstallPaths, mode: int = CONFIG_MODE):
        self._path = paths.jail_local
        self._mode = mode

    def backup_existing(self, now: Optional[datetime] = None) -> Optional[Path]:
        if not self._path.is_file():
            return None
        backup = self._path.with_name(f"{self._path.name}.backup.{utc_stamp(now)}")
        n = 1
        while backup.exists():
            backup = self._path.with_name(f"{self._path.name}.backup.{utc_stamp(now)}.{n}")
            n += 1
        shutil.copy2(self._path, backup)
        get_install_logger().log_event(
            EventType.CONFIG_BACKED_UP,
            EventSeverity.INFO,
            f"Backed up existing {self._path} -> {backup}",
            details={"path": str(self._path), "backup": str(backup)},
        )
        return backup

    def write(self, config: ServiceConfig, now: Optional[datetime] = None) -> WriteResult:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            previous = self._read_previous()
            backup = self.backup_existing(now)
            self._atomic_write(config.render())
        except OSError as exc:
            raise ConfigWriteError(f"cannot write {self._path}: {exc}") from exc

        jail = config.jails[0] if config.jails else None
        source = "none"
        if jail is not None:
            source = "logpath" if jail.logpath else "systemd journal"
        changed = None if previous is None else previous != config
        get_install_logger().log_event(
            EventType.CONFIG_WRITTEN,
            EventSeverity.INFO,
            f"Wrote {self._path} (sshd using {source})",
            details={
                "path": str(self._path),
                "banaction": config.default.banaction,
                "changed": changed,
            },
        )
        if changed is False:
            logger.info("%s unchanged from the previous run", self._path)
        return WriteResult(path=self._path, backup_path=backup, changed=changed)

    def _read_previous(self) -> Optional[ServiceConfig]:
        """The current file as a ``ServiceConfig``, or None if absent or hand-edited."""
        if not self._path.is_file():
            return None
        text = self._path.read_text(encoding="utf-8", errors="replace")
        try:
            return ServiceConfig.parse(text)
        except (configparser.Error, KeyError, ValueError) as exc:
            logger.info("Previous %s is not in managed form: %s", self._path, exc)
            return None

    def _atomic_write(self, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, self._mode)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
