from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class PipelineError(Exception):
    """Base class for every fatal error raised while loading a pipeline."""


@dataclass
class ConfigParseError(PipelineError):
    """
    Malformed pipeline source.

    `line` is 1-based and only set when it can be derived from the YAML
    parser or by locating the offending key in the source text.
    """
    message: str
    source_file: str = ""
    line: Optional[int] = None

    def __str__(self) -> str:
        where = self.source_file or "<input>"
        if self.line is not None:
            where = f"{where}:{self.line}"
        return f"{where}: {self.message}"


@dataclass
class UnknownJobReferenceError(PipelineError):
    job: str
    reference: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs unknown job '{self.reference}'. "
            f"Known jobs: {sorted(self.known)}"
        )


@dataclass
class CyclicDependencyError(PipelineError):
    """`cycle` lists the job names along the cycle, first name repeated at the end."""
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle detected: " + " -> ".join(self.cycle)


@dataclass
class UnsupportedProviderError(PipelineError):
    source_file: str
    detail: str = ""

    def __str__(self) -> str:
        msg = f"Unrecognized pipeline dialect: {self.source_file}"
        if self.detail:
            msg += f" ({self.detail})"
        return msg
