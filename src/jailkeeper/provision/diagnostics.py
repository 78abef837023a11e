"""
Diagnostics collection on terminal activation failure.

Best effort: each artifact (status, journal, config dump, path listing, run
log) is collected independently, and a failure on one is recorded in the
report's ``errors`` rather than stopping the others.  Reports are appended
as JSON lines to the report file; the previous file is backed up when a new
invocation begins.
"""

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..core.audit_log import EventSeverity, EventType, InstallLogger, get_install_logger
from ..core.commands import CommandOutput
from ..core.exceptions import DiagnosticsCollectionError
from ..core.settings import CONFIG_DUMP_LINES, JOURNAL_TAIL_LINES, InstallPaths
from .jail_config import utc_stamp
from .service import Fail2banService

logger = logging.getLogger(__name__)

SUMMARY_TAIL_LINES = 160


@dataclass
class DiagnosticsReport:
    created_at: str
    status_snapshot: str = ""
    log_excerpt: str = ""
    config_dump: str = ""
    path_listing: Dict[str, str] = field(default_factory=dict)
    run_log: List[str] = field(default_factory=list)
    attempts: List[dict] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "created_at": self.created_at,
            "status_snapshot": self.status_snapshot,
            "log_excerpt": self.log_excerpt,
            "config_dump": self.config_dump,
            "path_listing": dict(self.path_listing),
            "run_log": list(self.run_log),
            "attempts": list(self.attempts),
            "errors": dict(self.errors),
        }

    def render_text(self) -> str:
        """Human-readable form, sectioned like the old install log."""
        sections = [
            ("systemctl status fail2ban", self.status_snapshot),
            (f"journalctl -u fail2ban (last {JOURNAL_TAIL_LINES} lines)", self.log_excerpt),
            ("runtime paths", "\n".join(f"{p}: {d}" for p, d in self.path_listing.items())),
            ("jail.local", self.config_dump),
        ]
        for attempt in self.attempts:
            sections.append((
                f"attempt {attempt['strategy']} ({attempt['outcome']})",
                attempt.get("detail", ""),
            ))
        if self.errors:
            sections.append((
                "collection errors",
                "\n".join(f"{k}: {v}" for k, v in self.errors.items()),
            ))
        return "\n".join(f"---- {title} ----\n{body}" for title, body in sections)


def backup_previous_report(report_path: Path) -> Optional[Path]:
    """Preserve an earlier report file before this invocation appends to it."""
    if not report_path.is_file():
        return None
    stamp = utc_stamp()
    backup = report_path.with_name(f"{report_path.name}.backup.{stamp}")
    n = 1
    while backup.exists():
        backup = report_path.with_name(f"{report_path.name}.backup.{stamp}.{n}")
        n += 1
    shutil.copy2(report_path, backup)
    logger.info("Preserved previous diagnostics report as %s", backup)
    return backup


class DiagnosticsCollector:
    def __init__(
        self,
        service: Fail2banService,
        paths: InstallPaths,
        install_logger: Optional[InstallLogger] = None,
    ):
        self._service = service
        self._paths = paths
        self._install_logger = install_logger

    def collect(self, attempts: Iterable = ()) -> DiagnosticsReport:
        install_log = self._install_logger or get_install_logger()
        report = DiagnosticsReport(
            created_at=datetime.now(timezone.utc).isoformat(),
            attempts=[a.to_dict() for a in attempts],
        )

        report.status_snapshot = self._guard(
            report, "status_snapshot", lambda: self._command_text(self._service.status()),
        )
        report.log_excerpt = self._guard(
            report, "log_excerpt", lambda: self._command_text(self._service.journal_tail()),
        )
        report.config_dump = self._guard(report, "config_dump", self._config_dump)
        report.path_listing = self._guard(report, "path_listing", self._path_listing, {})
        report.run_log = self._guard(report, "run_log", install_log.run_lines, [])

        self._persist(report)

        install_log.log_event(
            EventType.DIAGNOSTICS_COLLECTED,
            EventSeverity.ERROR,
            f"Diagnostics saved to {self._paths.report_path}",
            details={"errors": report.errors, "report": str(self._paths.report_path)},
        )
        text = report.render_text().splitlines()
        logger.error(
            "---- tail of diagnostics ----\n%s",
            "\n".join(text[-SUMMARY_TAIL_LINES:]),
        )
        return report

    @staticmethod
    def _guard(report: DiagnosticsReport, artifact: str, collect: Callable, default=""):
        try:
            return collect()
        except DiagnosticsCollectionError as exc:
            report.errors[artifact] = exc.detail
        except Exception as exc:
            report.errors[artifact] = f"{type(exc).__name__}: {exc}"
        logger.warning("Could not collect %s: %s", artifact, report.errors[artifact])
        return default

    @staticmethod
    def _command_text(r: CommandOutput) -> str:
        if not r.launched:
            raise DiagnosticsCollectionError(" ".join(r.args), r.stderr)
        # systemctl status exits non-zero for a failed unit; output is still the evidence
        return r.combined

    def _config_dump(self) -> str:
        path = self._paths.jail_local
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                lines = []
                for i, line in enumerate(f):
                    if i >= CONFIG_DUMP_LINES:
                        break
                    lines.append(line.rstrip("\n"))
        except OSError as exc:
            raise DiagnosticsCollectionError("config_dump", f"{path}: {exc.strerror}") from exc
        return "\n".join(lines)

    def _path_listing(self) -> Dict[str, str]:
        p = self._paths
        listing = {}
        for path in (p.runtime_dir, p.legacy_runtime_dir, p.socket_path,
                     p.pid_path, p.auth_log, p.db_dir):
            listing[str(path)] = describe_path(path)
        return listing

    def _persist(self, report: DiagnosticsReport) -> None:
        path = self._paths.report_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(report.to_dict()) + "\n")
            os.chmod(path, 0o600)
        except OSError as exc:
            report.errors["persist"] = f"{path}: {exc}"
            logger.error("Could not write diagnostics report %s: %s", path, exc)


def describe_path(path: Path) -> str:
    """One-line ``ls -ld``-style description of a path."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return "missing"
    except OSError as exc:
        return f"unreadable ({exc.strerror})"

    mode = stat.filemode(st.st_mode)
    desc = f"{mode} uid={st.st_uid} gid={st.st_gid} size={st.st_size}"
    if stat.S_ISLNK(st.st_mode):
        try:
            desc += f" -> {os.readlink(path)}"
        except OSError:
            desc += " -> ?"
    elif stat.S_ISDIR(st.st_mode):
        try:
            entries = sorted(os.listdir(path))
        except OSError as exc:
            entries = [f"<{exc.strerror}>"]
        desc += f" entries={entries}"
    return desc
