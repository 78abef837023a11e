"""
Provisioning Exception Classes

Fatal errors abort the run before the running service is touched (exit 1).
Stage failures are recovered by falling through to the next stage; only
exhaustion of every stage is fatal (exit 2).
"""


class JailkeeperError(Exception):
    """Base exception for provisioning operations"""
    pass


class FatalSetupError(JailkeeperError):
    """Raised when setup cannot continue; no activation is attempted"""
    exit_code = 1


class PrivilegeError(FatalSetupError):
    """Raised when the installer is not running as root"""
    pass


class InstanceLockError(FatalSetupError):
    """Raised when another installer instance holds the lock"""
    pass


class DependencyInstallError(FatalSetupError):
    """Raised when the package manager fails to install fail2ban"""
    pass


class ConfigWriteError(FatalSetupError):
    """Raised when jail.local (or its backup) cannot be written"""
    pass


class ValidationError(FatalSetupError):
    """Raised when fail2ban's own self-check rejects the configuration"""

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.details = details


class ProbeDegraded(JailkeeperError):
    """Raised by a single host probe; the caller falls back to a default"""
    pass


class ActivationStageFailure(JailkeeperError):
    """Raised when one activation stage exhausts its poll budget"""

    def __init__(self, strategy, detail: str = "", returncode=None, tries: int = 0):
        super().__init__(f"{strategy} failed: {detail}" if detail else f"{strategy} failed")
        self.strategy = strategy
        self.detail = detail
        self.returncode = returncode
        self.tries = tries


class ActivationExhausted(JailkeeperError):
    """Raised when every activation stage has failed"""
    exit_code = 2

    def __init__(self, attempts, message: str = "all activation stages failed"):
        super().__init__(message)
        self.attempts = tuple(attempts)


class DiagnosticsCollectionError(JailkeeperError):
    """Raised when one diagnostics artifact cannot be collected"""

    def __init__(self, artifact: str, detail: str):
        super().__init__(f"{artifact}: {detail}")
        self.artifact = artifact
        self.detail = detail
