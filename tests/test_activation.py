"""
Tests for ActivationOrchestrator: stage order, budgets, non-repetition.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import out
from jailkeeper.core.exceptions import ActivationExhausted
from jailkeeper.provision.activation import (
    STAGE_ORDER,
    ActivationOrchestrator,
    AttemptOutcome,
    Strategy,
)
from jailkeeper.provision.service import Fail2banService

NOW = datetime(2026, 10, 19, 9, 44, 0, tzinfo=timezone.utc)
PING = ("fail2ban-client", "ping")


@pytest.fixture
def repairer():
    return MagicMock()


@pytest.fixture
def orchestrator(runner, paths, clock, repairer):
    return ActivationOrchestrator(
        Fail2banService(runner, paths),
        repairer,
        paths,
        clock=clock,
        now=lambda: NOW,
        cancel_event=clock,
    )


class TestSystemdStage:
    def test_success_on_third_ping(self, runner, clock, orchestrator):
        runner.on(*PING, outputs=[out(1), out(1), out(0)])

        result = orchestrator.activate()

        assert result.succeeded
        assert result.healthy_strategy is Strategy.SYSTEMD
        (attempt,) = result.attempts
        assert attempt.tries == 3
        assert attempt.probe_latency == pytest.approx(2.0)
        assert clock.waits == [1.0, 1.0]
        assert runner.called("fail2ban-server") == []

    def test_unit_commands_in_order(self, runner, orchestrator):
        orchestrator.activate()
        systemctl = [c for c in runner.calls if c[0] == "systemctl"]
        verbs = [c[1] for c in systemctl]
        assert verbs.index("daemon-reload") < verbs.index("enable") < verbs.index("restart")

    def test_socket_unit_enabled_when_present(self, runner, orchestrator):
        runner.on("systemctl", "list-unit-files", stdout="fail2ban.socket disabled enabled\n")
        orchestrator.activate()
        assert runner.called("systemctl", "enable", "--now", "fail2ban.socket")

    def test_socket_unit_skipped_when_absent(self, runner, orchestrator):
        runner.on("systemctl", "list-unit-files", stdout="")
        orchestrator.activate()
        assert runner.called("systemctl", "enable", "--now") == []

    def test_override_is_quarantined(self, paths, orchestrator):
        paths.systemd_override.parent.mkdir(parents=True)
        paths.systemd_override.write_text("[Service]\nExecStart=\nExecStart=/bin/false\n")

        orchestrator.activate()

        assert not paths.systemd_override.exists()
        moved = paths.systemd_override.with_name("override.conf.bak.20261019T094400Z")
        assert "ExecStart=/bin/false" in moved.read_text()

    def test_launch_failure_still_polls(self, runner, orchestrator):
        runner.on("systemctl", "restart", returncode=127, launched=False)
        runner.on(*PING, outputs=[out(1), out(0)])

        result = orchestrator.activate()

        assert result.healthy_strategy is Strategy.SYSTEMD
        assert result.attempts[0].launch_returncode == 127
        assert len(runner.called(*PING)) == 2


class TestFallthrough:
    def test_direct_start_after_systemd_budget(self, runner, clock, repairer, orchestrator):
        runner.on(*PING, outputs=[out(1)] * 20 + [out(0)])

        result = orchestrator.activate()

        systemd, direct = result.attempts
        assert systemd.strategy is Strategy.SYSTEMD
        assert systemd.outcome is AttemptOutcome.FAILED
        assert systemd.tries == 20
        assert direct.outcome is AttemptOutcome.SUCCEEDED
        assert direct.probe_latency == pytest.approx(1.0)
        # 19 waits between systemd pings, one initial delay before the direct ping
        assert clock.waits == [1.0] * 20
        assert repairer.repair.call_count == 2

    def test_exhaustion_runs_each_stage_once(self, runner, repairer, orchestrator):
        runner.on(*PING, returncode=1, stderr="Failed to access socket path")
        runner.on("fail2ban-server", "-xf", stdout="ERROR  No file(s) found for glob /var/log/auth.log\n")

        with pytest.raises(ActivationExhausted) as exc_info:
            orchestrator.activate()

        attempts = exc_info.value.attempts
        assert [a.strategy for a in attempts] == list(STAGE_ORDER)
        assert [a.outcome for a in attempts] == [
            AttemptOutcome.FAILED, AttemptOutcome.FAILED, AttemptOutcome.DIAGNOSTIC,
        ]
        assert len(runner.called("systemctl", "restart")) == 1
        assert len(runner.called("fail2ban-server", "-b")) == 1
        assert len(runner.called("fail2ban-server", "-xf")) == 1
        assert len(runner.called(*PING)) == 21
        assert repairer.repair.call_count == 3
        assert "No file(s) found" in attempts[2].detail
        assert exc_info.value.exit_code == 2

    def test_foreground_is_never_success(self, runner, orchestrator):
        # even a clean foreground exit only produces evidence
        runner.on(*PING, returncode=1)
        runner.on("fail2ban-server", "-xf", returncode=0)
        with pytest.raises(ActivationExhausted):
            orchestrator.activate()

    def test_foreground_runs_with_debug_timeout(self, runner, orchestrator):
        runner.on(*PING, returncode=1)
        with pytest.raises(ActivationExhausted):
            orchestrator.activate()
        idx = runner.calls.index(runner.called("fail2ban-server", "-xf")[0])
        assert runner.timeouts[idx] == 8

    def test_repair_error_does_not_stop_stage(self, runner, repairer, orchestrator):
        repairer.repair.side_effect = PermissionError("read-only filesystem")
        result = orchestrator.activate()
        assert result.succeeded


class TestCancellation:
    def test_cancel_during_systemd_poll_skips_later_stages(self, runner, clock, orchestrator):
        runner.on(*PING, returncode=1)
        clock.on_wait = lambda seconds: clock.set()

        with pytest.raises(ActivationExhausted) as exc_info:
            orchestrator.activate()

        assert str(exc_info.value) == "activation cancelled"
        assert len(exc_info.value.attempts) == 1
        assert runner.called("fail2ban-server") == []
