"""
Command execution for provisioning steps

Every external process (apt-get, systemctl, fail2ban-server, ...) is
launched through ``CommandRunner.run()``.  A non-zero exit never raises;
callers decide whether a failure is fatal.  Launch failures (missing
binary, timeout) come back as a ``CommandOutput`` with ``launched=False``
so a stage can treat them exactly like a failed health probe.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)

# Exit code reported when the binary could not be found
NOT_FOUND_RETURNCODE = 127
# Exit code reported when the command was killed on timeout
TIMEOUT_RETURNCODE = 124


@dataclass
class CommandOutput:
    """Unified command result."""
    args: tuple = ()
    stdout: str = ""
    stderr: str = ""
    returncode: int = -1
    launched: bool = True
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.launched and self.returncode == 0

    @property
    def combined(self) -> str:
        """stdout and stderr joined, the way a terminal would show them."""
        parts = [p for p in (self.stdout, self.stderr) if p]
        return "\n".join(p.rstrip("\n") for p in parts)


class CommandRunner:
    """Runs local commands via subprocess with a per-call timeout."""

    def __init__(self, default_timeout: int = 60):
        self.default_timeout = default_timeout

    def run(
        self,
        command: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandOutput:
        """Run ``command`` (a list, never a shell string) and capture output.

        Args:
            command: Argument vector.
            timeout: Max seconds to wait (defaults to ``default_timeout``).
            env: Extra environment variables merged over ``os.environ``.

        Returns:
            ``CommandOutput``; never raises for a failing command.
        """
        args = tuple(command)
        timeout = self.default_timeout if timeout is None else timeout
        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)

        logger.debug("exec: %s", " ".join(args))
        try:
            result = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=run_env,
            )
            return CommandOutput(
                args=args,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
                returncode=result.returncode,
            )
        except FileNotFoundError as e:
            return CommandOutput(
                args=args,
                stderr=f"command not found: {e.filename or args[0]}",
                returncode=NOT_FOUND_RETURNCODE,
                launched=False,
            )
        except PermissionError as e:
            return CommandOutput(
                args=args,
                stderr=f"permission denied: {e}",
                returncode=NOT_FOUND_RETURNCODE,
                launched=False,
            )
        except subprocess.TimeoutExpired as e:
            return CommandOutput(
                args=args,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) or f"Command timed out after {timeout}s",
                returncode=TIMEOUT_RETURNCODE,
                timed_out=True,
            )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
