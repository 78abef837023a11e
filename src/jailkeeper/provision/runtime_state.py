"""
Runtime state repair for the fail2ban daemon.

Idempotent: applying ``repair()`` to an already-correct host changes
nothing and returns a ``RuntimeState`` with no ``changes``.

Invariants after a pass:
  - /run/fail2ban is a real directory (never a symlink)
  - /var/run/fail2ban resolves to /run/fail2ban (explicit symlink, or the
    usual /var/run -> /run parent link)
  - no socket or pid file left by a dead server
  - /var/log/auth.log exists (placeholder) with adm-group or owner-only perms
  - /var/lib/fail2ban exists
"""

import grp
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import psutil

from ..core.audit_log import EventSeverity, EventType, get_install_logger
from ..core.settings import InstallPaths

logger = logging.getLogger(__name__)

RUNTIME_DIR_MODE = 0o755
DB_DIR_MODE = 0o755
LOG_GROUP_MODE = 0o640
LOG_OWNER_MODE = 0o600

SERVER_PROCESS_MARKER = "fail2ban-server"


@dataclass(frozen=True)
class RuntimeState:
    runtime_dir: Path
    legacy_alias: Path
    socket_path: Path
    pid_path: Path
    log_placeholder: Path
    db_dir: Path
    changes: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.changes)


class RuntimeStateRepairer:
    """Makes the filesystem preconditions of fail2ban well-formed.

    Args:
        paths: Host paths.
        owner: (uid, gid) for directories and the placeholder log.
        log_group: Group that may read auth.log (``adm`` on Debian).
    """

    def __init__(
        self,
        paths: InstallPaths,
        owner: Tuple[int, int] = (0, 0),
        log_group: Optional[str] = "adm",
    ):
        self.paths = paths
        self.owner = owner
        self.log_group = log_group

    def repair(self) -> RuntimeState:
        changes: List[str] = []
        self._ensure_runtime_dir(changes)
        self._ensure_legacy_alias(changes)
        self._remove_stale_control_files(changes)
        self._ensure_log_placeholder(changes)
        self._ensure_dir(self.paths.db_dir, DB_DIR_MODE, changes)

        state = RuntimeState(
            runtime_dir=self.paths.runtime_dir,
            legacy_alias=self.paths.legacy_runtime_dir,
            socket_path=self.paths.socket_path,
            pid_path=self.paths.pid_path,
            log_placeholder=self.paths.auth_log,
            db_dir=self.paths.db_dir,
            changes=tuple(changes),
        )
        if changes:
            get_install_logger().log_event(
                EventType.RUNTIME_REPAIRED,
                EventSeverity.INFO,
                f"Repaired runtime state ({len(changes)} change(s))",
                details={"changes": list(changes)},
            )
        return state

    # ── Steps ─────────────────────────────────────────────────────

    def _ensure_runtime_dir(self, changes: List[str]) -> None:
        path = self.paths.runtime_dir
        if path.is_symlink() or (path.exists() and not path.is_dir()):
            path.unlink()
            changes.append(f"removed non-directory {path}")
        self._ensure_dir(path, RUNTIME_DIR_MODE, changes)

    def _ensure_legacy_alias(self, changes: List[str]) -> None:
        legacy = self.paths.legacy_runtime_dir
        canonical = self.paths.runtime_dir
        if os.path.realpath(legacy) == os.path.realpath(canonical):
            return

        if legacy.is_symlink() or legacy.is_file():
            legacy.unlink()
            changes.append(f"removed stale alias {legacy}")
        elif legacy.is_dir():
            shutil.rmtree(legacy)
            changes.append(f"removed directory {legacy} in place of alias")
        elif legacy.exists():
            legacy.unlink()
            changes.append(f"removed {legacy}")

        legacy.parent.mkdir(parents=True, exist_ok=True)
        legacy.symlink_to(canonical, target_is_directory=True)
        changes.append(f"linked {legacy} -> {canonical}")

    def _remove_stale_control_files(self, changes: List[str]) -> None:
        pid_path = self.paths.pid_path
        sock_path = self.paths.socket_path

        pid_alive = False
        if pid_path.exists() or pid_path.is_symlink():
            pid_alive = _pid_file_is_live(pid_path)
            if not pid_alive:
                pid_path.unlink()
                changes.append(f"removed stale pid file {pid_path}")

        if sock_path.exists() or sock_path.is_symlink():
            if not (pid_alive or server_process_running()):
                sock_path.unlink()
                changes.append(f"removed stale socket {sock_path}")

    def _ensure_log_placeholder(self, changes: List[str]) -> None:
        path = self.paths.auth_log
        if path.exists() or path.is_symlink():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()

        uid, gid = self.owner
        mode = LOG_OWNER_MODE
        group_gid = _group_id(self.log_group)
        if group_gid is not None:
            gid, mode = group_gid, LOG_GROUP_MODE
        _apply_owner_mode(path, uid, gid, mode)
        changes.append(f"created placeholder {path} ({oct(mode)})")

    def _ensure_dir(self, path: Path, mode: int, changes: List[str]) -> None:
        if not path.is_dir():
            path.mkdir(parents=True, exist_ok=True)
            changes.append(f"created {path}")
        uid, gid = self.owner
        if _apply_owner_mode(path, uid, gid, mode):
            changes.append(f"fixed ownership/mode of {path}")


def _apply_owner_mode(path: Path, uid: int, gid: int, mode: int) -> bool:
    """chown/chmod only when they differ; returns True if anything changed."""
    st = path.lstat()
    changed = False
    if (st.st_uid, st.st_gid) != (uid, gid):
        os.chown(path, uid, gid)
        changed = True
    if stat.S_IMODE(st.st_mode) != mode:
        os.chmod(path, mode)
        changed = True
    return changed


def _group_id(name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        return None


def _pid_file_is_live(pid_path: Path) -> bool:
    try:
        pid = int(pid_path.read_text().strip())
    except (OSError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return _looks_like_server(proc.name(), proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def server_process_running() -> bool:
    """True if any live process is a fail2ban server."""
    for proc in psutil.process_iter(["name", "cmdline"]):
        try:
            if _looks_like_server(proc.info["name"], proc.info["cmdline"]):
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return False


def _looks_like_server(name: Optional[str], cmdline: Optional[Iterable[str]]) -> bool:
    if name and SERVER_PROCESS_MARKER in name:
        return True
    return any(SERVER_PROCESS_MARKER in part for part in (cmdline or ()))
