"""
Tests for the install log: append-only JSON events plus the run buffer.
"""

import json

from jailkeeper.core.audit_log import (
    EventSeverity,
    EventType,
    InstallLogger,
    get_install_logger,
    log_install_event,
    set_install_logger,
)


def event_lines(path):
    events = []
    for line in path.read_text().splitlines():
        _, _, message = line.partition("jailkeeper.install: ")
        if message:
            events.append(json.loads(message))
    return events


class TestInstallLogger:
    def test_log_event_writes_json(self, tmp_path):
        log = InstallLogger(tmp_path / "install.log", echo=False)
        set_install_logger(log)

        event_id = log.log_event(
            EventType.CONFIG_WRITTEN, EventSeverity.INFO, "Wrote jail.local",
            details={"banaction": "ufw"},
        )

        (event,) = event_lines(tmp_path / "install.log")
        assert event["event_id"] == event_id
        assert event["event_type"] == "config.written"
        assert event["details"] == {"banaction": "ufw"}

    def test_appends_across_runs(self, tmp_path):
        path = tmp_path / "install.log"
        for message in ("first run", "second run"):
            log = InstallLogger(path, echo=False)
            set_install_logger(log)
            log.log_event(EventType.RUN_STARTED, EventSeverity.INFO, message)
        set_install_logger(None)

        assert [e["message"] for e in event_lines(path)] == ["first run", "second run"]

    def test_run_lines_only_cover_this_run(self, tmp_path):
        path = tmp_path / "install.log"
        old = InstallLogger(path, echo=False)
        set_install_logger(old)
        old.log_event(EventType.RUN_STARTED, EventSeverity.INFO, "earlier")

        current = InstallLogger(path, echo=False)
        set_install_logger(current)
        current.log_event(EventType.RUN_STARTED, EventSeverity.INFO, "now")

        lines = current.run_lines()
        assert any("now" in line for line in lines)
        assert not any("earlier" in line for line in lines)

    def test_severity_levels(self):
        assert EventSeverity.WARNING.to_level() == 30
        assert EventSeverity.ERROR.to_level() == 40


class TestSingleton:
    def test_get_install_logger_is_shared(self):
        assert get_install_logger() is get_install_logger()

    def test_convenience_function(self, tmp_path):
        set_install_logger(InstallLogger(tmp_path / "install.log", echo=False))
        event_id = log_install_event(
            EventType.PROBE_DEGRADED, EventSeverity.WARNING, "no IPv4",
            details={"probe": "primary_ipv4"},
        )
        assert len(event_id) == 36
