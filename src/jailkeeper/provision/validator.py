"""Configuration gate: fail2ban's own self-check must pass before activation."""

import logging
from dataclasses import dataclass
from pathlib import Path

from ..core.audit_log import EventSeverity, EventType, get_install_logger
from ..core.exceptions import ValidationError
from .service import Fail2banService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    config_path: Path
    output: str


class ConfigValidator:
    def __init__(self, service: Fail2banService):
        self._service = service

    def validate(self, config_path: Path) -> ValidationResult:
        """Run ``fail2ban-server -t`` against the written configuration.

        Raises:
            ValidationError: the self-check failed or could not be launched.
                Always fatal; the caller must not activate the service.
        """
        logger.info("Validating fail2ban configuration (%s)...", config_path)
        r = self._service.self_check()
        output = r.combined
        if not r.ok:
            get_install_logger().log_event(
                EventType.CONFIG_REJECTED,
                EventSeverity.ERROR,
                "fail2ban configuration test failed",
                details={"returncode": r.returncode, "output": output},
            )
            raise ValidationError(
                f"fail2ban configuration test failed (rc={r.returncode})",
                details=output,
            )

        get_install_logger().log_event(
            EventType.CONFIG_VALIDATED,
            EventSeverity.INFO,
            "Configuration OK",
            details={"path": str(config_path)},
        )
        return ValidationResult(config_path=config_path, output=output)
