"""
Activation Orchestrator: staged bring-up of the fail2ban service.

Stages run strictly in order, each exactly once, and never backtrack:

  systemd-managed-start     enable + restart the unit, poll ping (20 x 1s)
  direct-daemon-start       fail2ban-server -b ... start, one ping after 1s
  foreground-debug-capture  fail2ban-server -xf ... start for 8s, diagnostic only

Every stage begins with a runtime repair pass, since a failed attempt may
have left a stale socket or pid file behind.  A start command that fails to
launch is treated like a failed poll: the stage still spends its poll budget
so a slow-starting server gets its chance.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..core.audit_log import EventSeverity, EventType, get_install_logger
from ..core.commands import CommandOutput
from ..core.exceptions import ActivationExhausted, ActivationStageFailure
from ..core.polling import Poller
from ..core.settings import (
    DIRECT_START_DELAY,
    DIRECT_START_MAX_TRIES,
    FOREGROUND_DEBUG_SECONDS,
    SYSTEMD_POLL_INTERVAL,
    SYSTEMD_POLL_MAX_TRIES,
    InstallPaths,
)
from .jail_config import utc_stamp
from .runtime_state import RuntimeStateRepairer
from .service import Fail2banService

logger = logging.getLogger(__name__)

DETAIL_TAIL_LINES = 200


class Strategy(str, Enum):
    SYSTEMD = "systemd-managed-start"
    DIRECT = "direct-daemon-start"
    FOREGROUND = "foreground-debug-capture"


STAGE_ORDER: Tuple[Strategy, ...] = (
    Strategy.SYSTEMD,
    Strategy.DIRECT,
    Strategy.FOREGROUND,
)


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DIAGNOSTIC = "diagnostic"


@dataclass(frozen=True)
class StageBudget:
    interval: float
    max_tries: int
    initial_delay: float = 0.0


DEFAULT_BUDGETS: Dict[Strategy, StageBudget] = {
    Strategy.SYSTEMD: StageBudget(SYSTEMD_POLL_INTERVAL, SYSTEMD_POLL_MAX_TRIES),
    Strategy.DIRECT: StageBudget(DIRECT_START_DELAY, DIRECT_START_MAX_TRIES,
                                 initial_delay=DIRECT_START_DELAY),
}


@dataclass(frozen=True)
class ActivationAttempt:
    """One stage try; built once its outcome is known."""
    strategy: Strategy
    started_at: datetime
    outcome: AttemptOutcome
    probe_latency: Optional[float] = None
    tries: int = 0
    launch_returncode: Optional[int] = None
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy.value,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome.value,
            "probe_latency": self.probe_latency,
            "tries": self.tries,
            "launch_returncode": self.launch_returncode,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ActivationResult:
    attempts: Tuple[ActivationAttempt, ...]

    @property
    def succeeded(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].outcome is AttemptOutcome.SUCCEEDED

    @property
    def healthy_strategy(self) -> Optional[Strategy]:
        return self.attempts[-1].strategy if self.succeeded else None


@dataclass(frozen=True)
class _StageSuccess:
    latency: float
    tries: int
    returncode: Optional[int]
    detail: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivationOrchestrator:
    """Brings fail2ban to a state where ``fail2ban-client ping`` answers."""

    def __init__(
        self,
        service: Fail2banService,
        repairer: RuntimeStateRepairer,
        paths: InstallPaths,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        cancel_event: Optional[threading.Event] = None,
        budgets: Optional[Dict[Strategy, StageBudget]] = None,
        foreground_seconds: float = FOREGROUND_DEBUG_SECONDS,
    ):
        self._service = service
        self._repairer = repairer
        self._paths = paths
        self._clock = clock
        self._now = now
        self._cancel = cancel_event or threading.Event()
        self._budgets = dict(DEFAULT_BUDGETS)
        self._budgets.update(budgets or {})
        self._foreground_seconds = foreground_seconds
        self._stages = {
            Strategy.SYSTEMD: self._systemd_start,
            Strategy.DIRECT: self._direct_start,
            Strategy.FOREGROUND: self._foreground_debug,
        }

    def activate(self) -> ActivationResult:
        """Run the stages in order until one reports a healthy service.

        Raises:
            ActivationExhausted: every stage failed (or the run was cancelled).
        """
        install_log = get_install_logger()
        attempts: List[ActivationAttempt] = []

        for strategy in STAGE_ORDER:
            if self._cancel.is_set():
                logger.warning("Activation cancelled before %s", strategy.value)
                break
            attempt = self._run_stage(strategy)
            attempts.append(attempt)
            if attempt.outcome is AttemptOutcome.SUCCEEDED:
                install_log.log_event(
                    EventType.SERVICE_HEALTHY,
                    EventSeverity.INFO,
                    f"fail2ban running via {strategy.value}",
                    details=attempt.to_dict(),
                )
                return ActivationResult(attempts=tuple(attempts))

        message = (
            "activation cancelled" if self._cancel.is_set()
            else "all activation stages failed"
        )
        install_log.log_event(
            EventType.ACTIVATION_EXHAUSTED,
            EventSeverity.ERROR,
            f"Failed to start fail2ban: {message}",
            details={"attempts": [a.to_dict() for a in attempts]},
        )
        raise ActivationExhausted(attempts, message)

    # ── Stage driver ───────────────────────────────────────────────

    def _run_stage(self, strategy: Strategy) -> ActivationAttempt:
        install_log = get_install_logger()
        started_at = self._now()
        install_log.log_event(
            EventType.STAGE_STARTED,
            EventSeverity.INFO,
            f"Activation stage {strategy.value}",
            details={"strategy": strategy.value},
        )

        try:
            self._repairer.repair()
        except OSError as exc:
            # The stage itself will surface whatever this breaks
            logger.warning("Runtime repair before %s failed: %s", strategy.value, exc)

        try:
            success = self._stages[strategy]()
        except ActivationStageFailure as failure:
            outcome = (
                AttemptOutcome.DIAGNOSTIC if strategy is Strategy.FOREGROUND
                else AttemptOutcome.FAILED
            )
            install_log.log_event(
                EventType.STAGE_FAILED,
                EventSeverity.WARNING,
                f"Activation stage {strategy.value} failed",
                details={"strategy": strategy.value, "detail": _tail(failure.detail, 20)},
            )
            return ActivationAttempt(
                strategy=strategy,
                started_at=started_at,
                outcome=outcome,
                tries=failure.tries,
                launch_returncode=failure.returncode,
                detail=failure.detail,
            )

        return ActivationAttempt(
            strategy=strategy,
            started_at=started_at,
            outcome=AttemptOutcome.SUCCEEDED,
            probe_latency=success.latency,
            tries=success.tries,
            launch_returncode=success.returncode,
            detail=success.detail,
        )

    def _poll_health(self, strategy: Strategy, launch: CommandOutput) -> _StageSuccess:
        if not launch.ok:
            logger.warning(
                "%s: start command failed (rc=%s); polling anyway: %s",
                strategy.value, launch.returncode, _tail(launch.combined, 5),
            )
        budget = self._budgets[strategy]
        poller = Poller(
            interval=budget.interval,
            max_tries=budget.max_tries,
            initial_delay=budget.initial_delay,
            clock=self._clock,
            cancel_event=self._cancel,
        )
        result = poller.poll(self._service.is_alive)
        if result.succeeded:
            logger.info("fail2ban-client ping OK after %d tries", result.tries)
            return _StageSuccess(
                latency=result.elapsed,
                tries=result.tries,
                returncode=launch.returncode,
                detail=_tail(launch.combined, DETAIL_TAIL_LINES),
            )

        reason = "cancelled" if result.cancelled else (
            f"no ping response after {result.tries} tries"
        )
        raise ActivationStageFailure(
            strategy.value,
            detail="\n".join(filter(None, [
                reason,
                f"start rc={launch.returncode}",
                _tail(launch.combined, DETAIL_TAIL_LINES),
            ])),
            returncode=launch.returncode,
            tries=result.tries,
        )

    # ── Stages ─────────────────────────────────────────────────────

    def _systemd_start(self) -> _StageSuccess:
        self._quarantine_override()
        reload = self._service.daemon_reload()
        if not reload.ok:
            logger.warning("systemctl daemon-reload failed: %s", reload.stderr.strip())
        if self._service.socket_unit_present():
            sock = self._service.enable_socket()
            if not sock.ok:
                logger.warning("Enabling fail2ban.socket failed: %s", sock.stderr.strip())

        enable = self._service.enable()
        if not enable.ok:
            logger.warning("systemctl enable fail2ban failed: %s", enable.stderr.strip())
        # restart, not start: picks up the freshly written jail.local
        restart = self._service.restart()
        return self._poll_health(Strategy.SYSTEMD, restart)

    def _direct_start(self) -> _StageSuccess:
        logger.info("Attempting direct daemon start: fail2ban-server start")
        return self._poll_health(Strategy.DIRECT, self._service.direct_start())

    def _foreground_debug(self) -> _StageSuccess:
        logger.info(
            "Running foreground debug for %ss to capture errors",
            self._foreground_seconds,
        )
        r = self._service.foreground_debug(self._foreground_seconds)
        raise ActivationStageFailure(
            Strategy.FOREGROUND.value,
            detail=_tail(r.combined, DETAIL_TAIL_LINES) or "(no output)",
            returncode=r.returncode,
        )

    def _quarantine_override(self) -> None:
        """Move any drop-in override aside; it may pin a broken ExecStart."""
        override = self._paths.systemd_override
        if not override.is_file():
            return
        target = override.with_name(f"{override.name}.bak.{utc_stamp(self._now())}")
        try:
            override.rename(target)
        except OSError as exc:
            logger.warning("Could not move systemd override %s aside: %s", override, exc)
            return
        get_install_logger().log_event(
            EventType.OVERRIDE_QUARANTINED,
            EventSeverity.WARNING,
            f"Backed up existing systemd override -> {target}",
            details={"override": str(override), "backup": str(target)},
        )


def _tail(text: str, lines: int) -> str:
    if not text:
        return ""
    return "\n".join(text.splitlines()[-lines:])
