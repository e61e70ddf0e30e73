from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    """Impact of a failure on the pipeline of the current volume."""

    FATAL = "fatal"
    ERROR = "error"


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str, severity: Severity = Severity.FATAL) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage
        self.reason = normalized_reason
        self.severity = severity

    @property
    def fatal(self) -> bool:
        return self.severity is Severity.FATAL


class ContainerRuntimeError(RuntimeError):
    """Raised by a container runtime when an operation cannot complete."""

    def __init__(self, reason: str, *, severity: Severity = Severity.FATAL) -> None:
        super().__init__(reason)
        self.severity = severity


class OutputParseError(ValueError):
    def __init__(self, message: str, *, field: str) -> None:
        super().__init__(message)
        self.field = field


class MissingFieldError(OutputParseError):
    """Raised when a marker line is absent from tool output."""


class DateParseError(OutputParseError):
    """Raised when a marker value is not a valid date."""


class UnsupportedCapabilityError(RuntimeError):
    def __init__(self, *, engine: str, capability: str) -> None:
        super().__init__(f"engine {engine} does not support {capability}")
        self.engine = engine
        self.capability = capability


class ConfigError(Exception):
    """Configuration loading or validation error."""


class MetricsPublishError(RuntimeError):
    """Raised when metric lines cannot be delivered to the pushgateway."""


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
