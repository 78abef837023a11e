"""
End-to-end tests for the Installer pipeline against a temp host tree.

Exit codes: 0 healthy, 1 fatal (service untouched), 2 activation exhausted.
"""

import json
import signal

import pytest

from jailkeeper.core.instance_lock import instance_lock
from jailkeeper.core.settings import Settings
from jailkeeper.provision.activation import Strategy
from jailkeeper.provision.installer import EXIT_EXHAUSTED, EXIT_FATAL, EXIT_HEALTHY, Installer

ROUTE_OUTPUT = "1.1.1.1 via 10.0.0.1 dev eth0 src 10.0.0.5 uid 0\n"


@pytest.fixture
def host(paths, runner):
    """A Debian host with sshd on 2222 and nftables active."""
    paths.sshd_config.write_text("Port 2222\n")
    paths.os_release.write_text('ID=debian\nPRETTY_NAME="Debian GNU/Linux 12"\n')
    runner.on("ip", "route", "get", stdout=ROUTE_OUTPUT)
    runner.on("systemctl", "is-active", "--quiet", "nftables", returncode=0)
    return paths


def make_installer(paths, runner, clock, owner, skip_install=True, geteuid=lambda: 0):
    settings = Settings(paths=paths, skip_install=skip_install, echo=False)
    return Installer(
        settings,
        runner=runner,
        cancel_event=clock,
        geteuid=geteuid,
        which=lambda name: f"/usr/sbin/{name}" if name == "nft" else None,
        owner=owner,
        log_group="jailkeeper-no-such-group",
        clock=clock,
        handle_signals=False,
    )


class TestHealthyRun:
    def test_end_to_end_success(self, host, runner, clock, owner):
        installer = make_installer(host, runner, clock, owner)

        assert installer.run() == EXIT_HEALTHY

        text = host.jail_local.read_text()
        assert "ignoreip = 127.0.0.1/8 ::1 10.0.0.5" in text
        assert "banaction = nftables-multiport" in text
        assert "port = 2222" in text
        assert installer.result.healthy_strategy is Strategy.SYSTEMD
        assert runner.called("fail2ban-client", "status", "sshd")
        assert not host.report_path.exists()

    def test_second_run_changes_nothing_but_backup(self, host, runner, clock, owner):
        assert make_installer(host, runner, clock, owner).run() == EXIT_HEALTHY
        first = host.jail_local.read_text()

        assert make_installer(host, runner, clock, owner).run() == EXIT_HEALTHY

        assert host.jail_local.read_text() == first
        backups = list(host.jail_local.parent.glob("jail.local.backup.*"))
        assert len(backups) == 1
        assert backups[0].read_text() == first

    def test_degraded_probe_still_validates(self, host, runner, clock, owner):
        runner.on("ip", returncode=2)
        runner.on("hostname", stdout="")

        assert make_installer(host, runner, clock, owner).run() == EXIT_HEALTHY

        assert "ignoreip = 127.0.0.1/8 ::1\n" in host.jail_local.read_text()
        assert runner.called("fail2ban-server", "-t")

    def test_corrupt_pid_file_is_repaired(self, host, runner, clock, owner):
        host.runtime_dir.mkdir(parents=True)
        host.pid_path.write_text("-1\n")

        assert make_installer(host, runner, clock, owner).run() == EXIT_HEALTHY

        assert not host.pid_path.exists()
        assert "run.finished" in host.install_log.read_text()

    def test_packages_installed_unless_skipped(self, host, runner, clock, owner):
        make_installer(host, runner, clock, owner, skip_install=False).run()
        assert runner.called("apt-get", "install")

    def test_run_is_logged(self, host, runner, clock, owner):
        make_installer(host, runner, clock, owner).run()
        log = host.install_log.read_text()
        assert "run.started" in log
        assert "activation.healthy" in log
        assert "run.finished" in log


class TestFatal:
    def test_not_root(self, host, runner, clock, owner):
        code = make_installer(host, runner, clock, owner, geteuid=lambda: 1000).run()
        assert code == EXIT_FATAL
        assert runner.calls == []
        assert not host.jail_local.exists()
        assert "run.fatal" in host.install_log.read_text()

    def test_lock_held_by_another_run(self, host, runner, clock, owner):
        with instance_lock(host.lock_path):
            code = make_installer(host, runner, clock, owner).run()
        assert code == EXIT_FATAL
        assert runner.calls == []

    def test_package_failure(self, host, runner, clock, owner):
        runner.on("apt-get", "install", returncode=100, stderr="E: broken packages")
        code = make_installer(host, runner, clock, owner, skip_install=False).run()
        assert code == EXIT_FATAL
        assert not host.jail_local.exists()

    def test_validation_failure_never_activates(self, host, runner, clock, owner):
        runner.on("fail2ban-server", "-t", returncode=255, stderr="ERROR  No section: 'sshd'")
        installer = make_installer(host, runner, clock, owner)

        assert installer.run() == EXIT_FATAL

        assert installer.result is None
        assert runner.called("systemctl", "restart") == []
        assert runner.called("fail2ban-client") == []
        assert not host.report_path.exists()
        assert "No section" in host.install_log.read_text()


class TestReports:
    def test_diagnostics_collected(self, host, runner, clock, owner):
        runner.on("fail2ban-client", "ping", returncode=255, stderr="Failed to access socket path")
        runner.on("fail2ban-server", "-xf", stdout="ERROR  Have not found any log file for sshd jail\n")
        installer = make_installer(host, runner, clock, owner)

        assert installer.run() == EXIT_EXHAUSTED

        assert len(installer.result.attempts) == 3
        (line,) = host.report_path.read_text().splitlines()
        report = json.loads(line)
        assert [a["strategy"] for a in report["attempts"]] == [
            "systemd-managed-start", "direct-daemon-start", "foreground-debug-capture",
        ]
        assert "Have not found any log file" in report["attempts"][2]["detail"]

    def test_previous_report_backed_up(self, host, runner, clock, owner):
        host.report_path.parent.mkdir(parents=True)
        host.report_path.write_text('{"previous": 1}\n')

        make_installer(host, runner, clock, owner).run()

        backups = list(host.report_path.parent.glob("diagnostics.jsonl.backup.*"))
        assert len(backups) == 1
        assert backups[0].read_text() == '{"previous": 1}\n'


class TestCancellation:
    def test_signal_sets_cancel_event(self, host, runner, clock, owner):
        installer = make_installer(host, runner, clock, owner)
        installer._on_signal(signal.SIGTERM, None)
        assert clock.is_set()

    def test_cancelled_run_is_exhausted(self, host, runner, clock, owner):
        runner.on("fail2ban-client", "ping", returncode=1)
        clock.on_wait = lambda seconds: clock.set()

        installer = make_installer(host, runner, clock, owner)

        assert installer.run() == EXIT_EXHAUSTED
        assert len(installer.result.attempts) == 1
        assert host.report_path.exists()
