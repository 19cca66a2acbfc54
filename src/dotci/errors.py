# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - telling failure kinds apart (config / engine / exit / timeout / artifact)
      - debugging without full tracebacks

    Every job-level failure is tagged with the job name.
    """
    job: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "ci_error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ConfigError(CIError):
    """Manifest / variable / condition problems. Raised before containers exist."""
    kind: ClassVar[str] = "config_error"


@dataclass
class EngineError(CIError):
    """The container engine refused or failed an operation."""
    kind: ClassVar[str] = "engine_error"


@dataclass
class ExitFailure(CIError):
    """The job's container ran to completion with a nonzero status."""
    exit_code: int = 1

    kind: ClassVar[str] = "exit_failure"

    def __str__(self) -> str:
        return f"{super().__str__()}\nexit_code={self.exit_code}"


@dataclass
class JobTimeout(CIError):
    """The job's deadline expired (or was cancelled) before it finished."""
    kind: ClassVar[str] = "timeout"


@dataclass
class ArtifactError(CIError):
    """Publishing or restoring an artifact failed."""
    kind: ClassVar[str] = "artifact_error"


# ----------------------------------------------------------------------
# Library-level errors (wrapped into CIError subclasses by callers)
# ----------------------------------------------------------------------

class EngineCallError(RuntimeError):
    """A container engine call returned an error."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class DeadlineExceeded(RuntimeError):
    """A suspension point gave up because its deadline expired or was cancelled."""


class ArchiveError(ValueError):
    """An archive entry is unsafe or the archive cannot be read."""
