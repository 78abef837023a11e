# Provision module - the fail2ban convergence pipeline:
# - Host probing and jail.local synthesis
# - Runtime state repair and configuration self-check
# - Staged service activation with diagnostics on failure

from .activation import (
    ActivationAttempt,
    ActivationOrchestrator,
    ActivationResult,
    AttemptOutcome,
    Strategy,
)
from .diagnostics import DiagnosticsCollector, DiagnosticsReport
from .installer import Installer
from .jail_config import ConfigSynthesizer, ConfigWriter, PolicyDefaults, ServiceConfig
from .probe import EnvironmentProbe, FirewallBackend, HostFacts, LogBackend
from .runtime_state import RuntimeState, RuntimeStateRepairer
from .service import Fail2banService
from .validator import ConfigValidator

__all__ = [
    # Probing and config
    "EnvironmentProbe",
    "HostFacts",
    "FirewallBackend",
    "LogBackend",
    "ConfigSynthesizer",
    "ConfigWriter",
    "PolicyDefaults",
    "ServiceConfig",
    # Runtime and validation
    "RuntimeState",
    "RuntimeStateRepairer",
    "ConfigValidator",
    "Fail2banService",
    # Activation
    "ActivationOrchestrator",
    "ActivationAttempt",
    "ActivationResult",
    "AttemptOutcome",
    "Strategy",
    "DiagnosticsCollector",
    "DiagnosticsReport",
    # Pipeline
    "Installer",
]
