"""
Custom exceptions for the self-healing health monitor.
"""

from typing import Any, Dict, Optional


class HealingError(Exception):
    """Base class for every error raised by the health monitor."""


class ConfigError(HealingError):
    """
    Raised when a module registration or engine configuration is invalid.

    Raised synchronously to the caller of register_module(), update_config()
    or the configuration loader; never raised from a running check.
    """

    def __init__(
        self,
        message: str,
        module_name: Optional[str] = None,
        field_errors: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize ConfigError.

        Args:
            message: Human-readable error message
            module_name: Module whose registration was rejected, if any
            field_errors: Detailed field-level validation errors
        """
        super().__init__(message)
        self.module_name = module_name
        self.field_errors = field_errors or {}

    @classmethod
    def from_validation(
        cls,
        message: str,
        exc: Exception,
        module_name: Optional[str] = None,
    ) -> "ConfigError":
        """Build a ConfigError from a pydantic ValidationError."""
        field_errors = {
            ".".join(str(p) for p in err.get("loc", ())) or "__root__": err.get("msg")
            for err in exc.errors()
        }
        return cls(message, module_name=module_name, field_errors=field_errors)

    def __str__(self) -> str:
        """String representation with additional context."""
        msg = super().__str__()
        if self.module_name:
            msg = f"[{self.module_name}] {msg}"
        if self.field_errors:
            msg += f" (field errors: {self.field_errors})"
        return msg


class HealthCheckError(HealingError):
    """
    Base class for a failed health check.

    These never escape the scheduler; they are converted into the module's
    last_error and failure counters.
    """

    def __init__(self, message: str, module_name: Optional[str] = None):
        super().__init__(message)
        self.module_name = module_name
        self.message = message


class CheckTimeout(HealthCheckError):
    """The probe did not complete within the module's timeout."""

    def __init__(self, module_name: Optional[str], timeout: float):
        super().__init__(f"Health check timed out after {timeout:g}s", module_name)
        self.timeout = timeout


class CheckFailed(HealthCheckError):
    """The probe raised an exception."""

    def __init__(self, module_name: Optional[str], cause: BaseException):
        message = str(cause) or type(cause).__name__
        super().__init__(message, module_name)
        self.cause = cause


class CheckReportedUnhealthy(HealthCheckError):
    """The probe completed but reported healthy=False."""

    def __init__(self, module_name: Optional[str], message: Optional[str] = None):
        super().__init__(message or "Health check failed", module_name)


class RemediationFailure(HealingError):
    """
    Raised inside the auto-healing engine when a remediation attempt fails.

    Contained by the engine and reflected in the module's remediation record.
    """

    def __init__(
        self,
        message: str,
        module_name: Optional[str] = None,
        attempts: int = 0,
    ):
        """
        Initialize RemediationFailure.

        Args:
            message: Human-readable error message
            module_name: Module that was being remediated
            attempts: Number of attempts made in the current failure episode
        """
        super().__init__(message)
        self.module_name = module_name
        self.attempts = attempts

    def __str__(self) -> str:
        """String representation with additional context."""
        msg = super().__str__()
        if self.module_name:
            msg = f"[{self.module_name}] {msg}"
        if self.attempts:
            msg += f" (attempts: {self.attempts})"
        return msg
