# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Optional

from .model import FailureCause


@dataclass
class CIError(Exception):
    """
    Structured, job-scoped error with enough context for:
      - clean CLI output
      - the per-job report row
      - debugging without full tracebacks
    """
    job: str
    message: str
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "ci_error"
    cause: ClassVar[FailureCause] = FailureCause.ERROR

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ProvisionError(CIError):
    kind: ClassVar[str] = "provision_error"
    cause: ClassVar[FailureCause] = FailureCause.PROVISION_FAILED


@dataclass
class ServiceStartError(CIError):
    kind: ClassVar[str] = "service_start_error"
    cause: ClassVar[FailureCause] = FailureCause.SERVICE_START_FAILED


@dataclass
class ServiceUnhealthyError(CIError):
    kind: ClassVar[str] = "service_unhealthy"
    cause: ClassVar[FailureCause] = FailureCause.SERVICE_UNHEALTHY


@dataclass
class PhaseFailure(CIError):
    phase: str = ""
    reason: FailureCause = FailureCause.NON_ZERO_EXIT
    exit_code: Optional[int] = None
    output: str = ""

    kind: ClassVar[str] = "phase_failure"

    def __str__(self) -> str:
        if self.reason is FailureCause.TIMEOUT:
            return f"[{self.job}] phase '{self.phase}' timed out: {self.message}"
        return f"[{self.job}] phase '{self.phase}' failed (exit={self.exit_code}): {self.message}"


@dataclass
class CacheIOError(CIError):
    """Cache read/write failure. Callers treat it as a miss."""
    kind: ClassVar[str] = "cache_io_error"
