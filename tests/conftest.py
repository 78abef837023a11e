"""
Shared pytest fixtures for the jailkeeper test suite.

Autouse fixtures below isolate tests from the live host:
  - Install logger -> temp directory (prevents writes to /var/log/jailkeeper)
  - Logging root   -> handlers restored after every test

Non-autouse helpers:
  - ``paths``  : every host path re-rooted under tmp_path
  - ``runner`` : FakeRunner recording argv and returning scripted outputs
  - ``clock``  : FakeClock standing in for both the monotonic clock and the
                 poller's cancel event, so polling never really sleeps
"""

import logging
import os
from typing import Callable, List, Tuple, Union

import pytest

from jailkeeper.core.commands import CommandOutput
from jailkeeper.core.settings import InstallPaths


class FakeRunner:
    """CommandRunner stand-in.

    ``on(*prefix, ...)`` registers the output for any argv starting with
    ``prefix``; the most recent matching rule wins.  A rule may be a list of
    outputs consumed in order (the last one repeats) or a callable taking
    the argv.  Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: List[Tuple[str, ...]] = []
        self.timeouts: List[float] = []
        self._rules: List[Tuple[Tuple[str, ...], object]] = []

    def on(self, *prefix, returncode=0, stdout="", stderr="", launched=True, outputs=None, handler=None):
        if handler is not None:
            rule = handler
        elif outputs is not None:
            rule = list(outputs)
        else:
            rule = CommandOutput(
                stdout=stdout, stderr=stderr, returncode=returncode, launched=launched,
            )
        self._rules.append((tuple(prefix), rule))
        return self

    def run(self, command, timeout=None, env=None) -> CommandOutput:
        args = tuple(command)
        self.calls.append(args)
        self.timeouts.append(timeout)
        for prefix, rule in reversed(self._rules):
            if args[: len(prefix)] != prefix:
                continue
            if callable(rule):
                out = rule(args)
            elif isinstance(rule, list):
                out = rule.pop(0) if len(rule) > 1 else rule[0]
            else:
                out = rule
            return CommandOutput(
                args=args, stdout=out.stdout, stderr=out.stderr,
                returncode=out.returncode, launched=out.launched,
                timed_out=out.timed_out,
            )
        return CommandOutput(args=args, returncode=0)

    def called(self, *prefix) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[: len(prefix)] == prefix]


def out(returncode=0, stdout="", stderr="", launched=True) -> CommandOutput:
    return CommandOutput(stdout=stdout, stderr=stderr, returncode=returncode, launched=launched)


class FakeClock:
    """Monotonic clock plus cancel-event whose ``wait`` advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.waits: List[float] = []
        self._set = False
        self.on_wait: Union[Callable[[float], None], None] = None

    def __call__(self) -> float:
        return self.now

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        self.now += seconds
        if self.on_wait is not None:
            self.on_wait(seconds)
        return self._set

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True


@pytest.fixture(autouse=True)
def _isolate_install_log(tmp_path, monkeypatch):
    """Redirect the global InstallLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_install_logger().log_event(...)`` would try to create
    ``/var/log/jailkeeper/install.log`` on the machine running the tests.
    """
    import jailkeeper.core.audit_log as audit_mod

    root_logger = logging.getLogger()
    saved_handlers = list(root_logger.handlers)
    saved_level = root_logger.level

    old_logger = audit_mod._install_logger
    audit_mod._install_logger = None

    orig_init = audit_mod.InstallLogger.__init__

    def patched_init(self, log_path=None, echo=True):
        orig_init(self, log_path=log_path or tmp_path / "install.log", echo=False)

    monkeypatch.setattr(audit_mod.InstallLogger, "__init__", patched_init)

    yield

    audit_mod.set_install_logger(None)
    audit_mod._install_logger = old_logger
    for handler in list(root_logger.handlers):
        if handler not in saved_handlers:
            root_logger.removeHandler(handler)
    root_logger.setLevel(saved_level)


@pytest.fixture
def paths(tmp_path) -> InstallPaths:
    p = InstallPaths.under(tmp_path / "host")
    p.jail_local.parent.mkdir(parents=True)
    p.sshd_config.parent.mkdir(parents=True)
    return p


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def owner() -> Tuple[int, int]:
    return (os.getuid(), os.getgid())
