"""
Installer settings: host paths, policy constants and env-file overrides.

Policy numbers (ban time, retry budgets) are fixed here and are not
tunable per run.  Only the installer's own artifact paths can be moved,
via ``JAILKEEPER_*`` environment variables or an env file.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

DEFAULT_ENV_FILE = Path("/etc/default/jailkeeper")

# ── Activation budgets ─────────────────────────────────────────────

SYSTEMD_POLL_INTERVAL = 1.0
SYSTEMD_POLL_MAX_TRIES = 20
DIRECT_START_DELAY = 1.0
DIRECT_START_MAX_TRIES = 1
FOREGROUND_DEBUG_SECONDS = 8

# ── Diagnostics limits ─────────────────────────────────────────────

JOURNAL_TAIL_LINES = 200
CONFIG_DUMP_LINES = 240

# ── Packages ───────────────────────────────────────────────────────

PACKAGES = ("fail2ban", "python3-systemd", "python3-pyinotify", "whois")

SERVICE_UNIT = "fail2ban"
SOCKET_UNIT = "fail2ban.socket"
# Debian names the unit ssh.service; sshd.service is its alias elsewhere.
# OpenSSH 9.8+ logs authentication from the per-connection sshd-session.
GUARDED_UNITS = ("sshd.service", "ssh.service")
GUARDED_COMMS = ("sshd", "sshd-session")


@dataclass(frozen=True)
class InstallPaths:
    """Every host path the installer reads or writes."""
    jail_local: Path = Path("/etc/fail2ban/jail.local")
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    os_release: Path = Path("/etc/os-release")
    runtime_dir: Path = Path("/run/fail2ban")
    legacy_runtime_dir: Path = Path("/var/run/fail2ban")
    socket_path: Path = Path("/run/fail2ban/fail2ban.sock")
    pid_path: Path = Path("/run/fail2ban/fail2ban.pid")
    auth_log: Path = Path("/var/log/auth.log")
    db_dir: Path = Path("/var/lib/fail2ban")
    db_file: Path = Path("/var/lib/fail2ban/fail2ban.sqlite3")
    systemd_override: Path = Path("/etc/systemd/system/fail2ban.service.d/override.conf")
    install_log: Path = Path("/var/log/jailkeeper/install.log")
    report_path: Path = Path("/var/log/jailkeeper/diagnostics.jsonl")
    lock_path: Path = Path("/run/lock/jailkeeper.lock")

    @classmethod
    def under(cls, root) -> "InstallPaths":
        """Re-root every default path below ``root`` (used by tests)."""
        root = Path(root)
        defaults = cls()
        return cls(**{
            f.name: root / getattr(defaults, f.name).relative_to("/")
            for f in fields(cls)
        })


_ENV_KEYS = {
    "JAILKEEPER_INSTALL_LOG": "install_log",
    "JAILKEEPER_REPORT_PATH": "report_path",
    "JAILKEEPER_LOCK_PATH": "lock_path",
}


@dataclass(frozen=True)
class Settings:
    paths: InstallPaths = InstallPaths()
    skip_install: bool = False
    echo: bool = True

    @classmethod
    def load(
        cls,
        env_file: Optional[Path] = None,
        paths: Optional[InstallPaths] = None,
        **overrides,
    ) -> "Settings":
        """Build settings from defaults, an env file, then the environment.

        Later sources win: env file values are overridden by real
        environment variables of the same name.
        """
        values = {}
        source = Path(env_file) if env_file else DEFAULT_ENV_FILE
        if source.is_file():
            values.update({k: v for k, v in dotenv_values(source).items() if v})
        values.update({
            k: os.environ[k]
            for k in (*_ENV_KEYS, "JAILKEEPER_SKIP_INSTALL")
            if os.environ.get(k)
        })

        base = paths or InstallPaths()
        moved = {
            attr: Path(values[key])
            for key, attr in _ENV_KEYS.items()
            if key in values
        }
        if moved:
            base = replace(base, **moved)

        skip = str(values.get("JAILKEEPER_SKIP_INSTALL", "")).lower() in ("1", "true", "yes")
        overrides.setdefault("skip_install", skip)
        return cls(paths=base, **overrides)
