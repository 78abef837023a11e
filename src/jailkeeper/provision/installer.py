"""
Installer - one idempotent provisioning run, start to finish.

    privilege check -> instance lock -> packages -> probe -> jail.local
    -> runtime repair -> self-check -> staged activation

Exit codes: 0 healthy, 1 fatal setup or validation error (the running
service is never touched), 2 every activation stage failed (diagnostics
collected).
"""

import logging
import os
import shutil
import signal
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..core.audit_log import (
    EventSeverity,
    EventType,
    InstallLogger,
    get_install_logger,
    set_install_logger,
)
from ..core.commands import CommandRunner
from ..core.exceptions import (
    ActivationExhausted,
    FatalSetupError,
    PrivilegeError,
    ValidationError,
)
from ..core.instance_lock import instance_lock
from ..core.settings import FOREGROUND_DEBUG_SECONDS, Settings
from .activation import ActivationOrchestrator, ActivationResult, StageBudget, Strategy
from .diagnostics import DiagnosticsCollector, backup_previous_report
from .jail_config import ConfigSynthesizer, ConfigWriter, PolicyDefaults
from .packages import PackageInstaller
from .probe import EnvironmentProbe
from .runtime_state import RuntimeStateRepairer
from .service import Fail2banService
from .validator import ConfigValidator

logger = logging.getLogger(__name__)

EXIT_HEALTHY = 0
EXIT_FATAL = FatalSetupError.exit_code
EXIT_EXHAUSTED = ActivationExhausted.exit_code

_CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Installer:
    """Drives one provisioning run and maps its outcome to an exit code.

    Everything that touches the host beyond ``settings.paths`` is
    injectable (command runner, euid lookup, binary lookup, ownership,
    poll clock) so a run can be exercised against a temp directory.
    """

    def __init__(
        self,
        settings: Settings,
        runner: Optional[CommandRunner] = None,
        cancel_event: Optional[threading.Event] = None,
        geteuid: Callable[[], int] = os.geteuid,
        which: Callable[[str], Optional[str]] = shutil.which,
        owner: Tuple[int, int] = (0, 0),
        log_group: Optional[str] = "adm",
        clock: Callable[[], float] = time.monotonic,
        budgets: Optional[Dict[Strategy, StageBudget]] = None,
        foreground_seconds: float = FOREGROUND_DEBUG_SECONDS,
        handle_signals: bool = True,
    ):
        self.settings = settings
        self.paths = settings.paths
        self.runner = runner or CommandRunner()
        self.cancel_event = cancel_event or threading.Event()
        self._geteuid = geteuid
        self._which = which
        self._clock = clock
        self._budgets = budgets
        self._foreground_seconds = foreground_seconds
        self._handle_signals = handle_signals

        self.service = Fail2banService(self.runner, self.paths)
        self.repairer = RuntimeStateRepairer(self.paths, owner=owner, log_group=log_group)
        self.policy = PolicyDefaults(dbfile=str(self.paths.db_file))
        self.result: Optional[ActivationResult] = None

    def run(self) -> int:
        install_log = InstallLogger(self.paths.install_log, echo=self.settings.echo)
        set_install_logger(install_log)
        install_log.log_event(
            EventType.RUN_STARTED,
            EventSeverity.INFO,
            "jailkeeper run started",
            details={"skip_install": self.settings.skip_install, "pid": os.getpid()},
        )

        previous = self._install_signal_handlers()
        try:
            code = self._run_guarded()
        finally:
            self._restore_signal_handlers(previous)

        install_log.log_event(
            EventType.RUN_FINISHED,
            EventSeverity.INFO if code == EXIT_HEALTHY else EventSeverity.ERROR,
            f"jailkeeper run finished (exit {code})",
            details={"exit_code": code},
        )
        return code

    def _run_guarded(self) -> int:
        try:
            self._check_privilege()
            with instance_lock(self.paths.lock_path):
                self._backup_report()
                return self._converge()
        except FatalSetupError as exc:
            details = {"error": type(exc).__name__}
            if isinstance(exc, ValidationError):
                details["output"] = exc.details
            get_install_logger().log_event(
                EventType.FATAL_ERROR,
                EventSeverity.ERROR,
                f"Fatal: {exc}",
                details=details,
            )
            if isinstance(exc, ValidationError) and exc.details:
                logger.error("fail2ban-server -t output:\n%s", exc.details)
            return exc.exit_code

    def _check_privilege(self) -> None:
        if self._geteuid() != 0:
            raise PrivilegeError("jailkeeper must run as root")

    def _backup_report(self) -> None:
        try:
            backup_previous_report(self.paths.report_path)
        except OSError as exc:
            logger.warning("Could not back up %s: %s", self.paths.report_path, exc)

    def _converge(self) -> int:
        if self.settings.skip_install:
            logger.info("Skipping package installation")
        else:
            installer = PackageInstaller(self.runner)
            installer.install()
            get_install_logger().log_event(
                EventType.PACKAGES_INSTALLED,
                EventSeverity.INFO,
                "Dependencies installed",
                details={"packages": list(installer.packages)},
            )

        facts = EnvironmentProbe(self.runner, self.paths, which=self._which).probe()
        config = ConfigSynthesizer(self.paths).synthesize(facts, self.policy)
        ConfigWriter(self.paths).write(config)

        try:
            self.repairer.repair()
        except OSError as exc:
            logger.warning("Runtime repair before validation failed: %s", exc)

        ConfigValidator(self.service).validate(self.paths.jail_local)

        orchestrator = ActivationOrchestrator(
            self.service,
            self.repairer,
            self.paths,
            clock=self._clock,
            cancel_event=self.cancel_event,
            budgets=self._budgets,
            foreground_seconds=self._foreground_seconds,
        )
        try:
            self.result = orchestrator.activate()
        except ActivationExhausted as exc:
            self.result = ActivationResult(attempts=exc.attempts)
            DiagnosticsCollector(self.service, self.paths).collect(exc.attempts)
            return exc.exit_code

        self._log_summary()
        return EXIT_HEALTHY

    def _log_summary(self) -> None:
        """Log ``fail2ban-client status`` for the server and the sshd jail."""
        for jail in (None, self.policy.jail_name):
            r = self.service.client_status(jail)
            label = " ".join(filter(None, ["fail2ban-client status", jail]))
            if r.ok:
                logger.info("%s:\n%s", label, r.stdout.rstrip())
            else:
                logger.warning("%s failed (rc=%s): %s", label, r.returncode, r.combined.strip())

    # ── Cancellation ───────────────────────────────────────────────

    def _install_signal_handlers(self):
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in _CANCEL_SIGNALS:
            previous[signum] = signal.signal(signum, self._on_signal)
        return previous

    def _restore_signal_handlers(self, previous) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _on_signal(self, signum, frame) -> None:
        logger.warning("Received %s; stopping after the current step",
                       signal.Signals(signum).name)
        self.cancel_event.set()
