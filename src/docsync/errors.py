"""Failure kinds shared by the streaming and batch paths."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    DECODE = "decode-error"
    RESOLUTION = "resolution-error"
    EXTRACTION = "extraction-error"
    PERSISTENCE = "persistence-error"
    FATAL_CONFIG = "fatal-config-error"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({FailureKind.RESOLUTION, FailureKind.EXTRACTION, FailureKind.PERSISTENCE})


class ProcessingError(Exception):
    """A pipeline step failed; ``kind`` decides whether it is retried."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class JobLaunchError(Exception):
    """A batch run could not be started."""


class JobAlreadyRunningError(JobLaunchError):
    pass


class JobAlreadyCompleteError(JobLaunchError):
    pass


class InvalidJobParametersError(JobLaunchError):
    pass
