"""Dependency installation through apt."""

import logging
from typing import Sequence

from ..core.commands import CommandRunner
from ..core.exceptions import DependencyInstallError
from ..core.settings import PACKAGES

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageInstaller:
    """Installs fail2ban plus the journal and inotify integrations.

    apt-get install is idempotent, so re-running on a provisioned host
    only refreshes the package index.
    """

    def __init__(self, runner: CommandRunner, packages: Sequence[str] = PACKAGES):
        self._runner = runner
        self.packages = tuple(packages)

    def install(self) -> None:
        update = self._runner.run(["apt-get", "update", "-qq"], timeout=600, env=APT_ENV)
        if not update.ok:
            # A stale index can still satisfy install; let install decide
            logger.warning("apt-get update failed (rc=%s): %s",
                           update.returncode, update.stderr.strip())

        r = self._runner.run(
            ["apt-get", "install", "-yq", *self.packages],
            timeout=1800,
            env=APT_ENV,
        )
        if not r.ok:
            raise DependencyInstallError(
                f"apt-get install failed (rc={r.returncode}): {r.combined.strip()[-2000:]}"
            )
        logger.info("Installed packages: %s", " ".join(self.packages))
