from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class Provider(str, Enum):
    GITHUB = "github-actions"
    GITLAB = "gitlab-ci"
    CIRCLECI = "circleci"
    BITBUCKET = "bitbucket-pipelines"
    AZURE = "azure-pipelines"


class StepKind(str, Enum):
    CHECKOUT = "checkout"
    SETUP = "setup"
    INSTALL = "install"
    CACHE = "cache"
    BUILD = "build"
    TEST = "test"
    LINT = "lint"
    DEPLOY = "deploy"
    ARTIFACT = "artifact"
    RUN = "run"


class Ecosystem(str, Enum):
    NPM = "npm"
    PIP = "pip"
    CARGO = "cargo"
    GRADLE = "gradle"
    DOCKER = "docker"
    # a cache whose paths could not be attributed to one ecosystem
    ANY = "any"


@dataclass(frozen=True)
class Step:
    """A single step inside a CI job. Owned by exactly one Job."""
    name: str
    kind: StepKind = StepKind.RUN
    run: Optional[str] = None
    uses: Optional[str] = None
    with_args: Dict[str, Any] = field(default_factory=dict)
    duration_secs: float = 0.0

    # checkout steps only: True when a depth/shallow parameter is present
    shallow: Optional[bool] = None

    # ecosystems this step restores a cache for
    caches: FrozenSet[Ecosystem] = frozenset()

    @property
    def text(self) -> str:
        """Command or action reference, whichever the step carries."""
        return self.run if self.run is not None else (self.uses or "")


@dataclass(frozen=True)
class MatrixStrategy:
    variables: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Dict[str, Any], ...] = ()
    exclude: Tuple[Dict[str, Any], ...] = ()
    total_combinations: int = 1

    @property
    def is_plain(self) -> bool:
        """A plain cartesian product: no include/exclude adjustments."""
        return not self.include and not self.exclude


@dataclass(frozen=True)
class Trigger:
    event: str
    branches: Optional[Tuple[str, ...]] = None
    paths: Optional[Tuple[str, ...]] = None
    paths_ignore: Optional[Tuple[str, ...]] = None

    @property
    def has_path_filter(self) -> bool:
        return bool(self.paths) or bool(self.paths_ignore)


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + the metadata the analyzers need.

    `needs` holds the names of jobs that must finish BEFORE this job. For
    GitLab jobs without an explicit `needs:` it is the previous stage, and
    `explicit_needs` is False.
    """
    name: str
    steps: Tuple[Step, ...] = ()
    needs: Tuple[str, ...] = ()
    display_name: str = ""
    runner: str = "ubuntu-latest"
    stage: Optional[str] = None
    matrix: Optional[MatrixStrategy] = None
    condition: Optional[str] = None
    environment: Optional[str] = None
    concurrency: Optional[str] = None
    explicit_needs: bool = True

    # artifact coupling
    produces: FrozenSet[str] = frozenset()
    consumes: FrozenSet[str] = frozenset()
    reads_outputs_of: FrozenSet[str] = frozenset()
    # needs entries declared with `artifacts: false` (GitLab)
    skips_artifacts_of: FrozenSet[str] = frozenset()

    @property
    def estimated_duration(self) -> float:
        return sum(s.duration_secs for s in self.steps)

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def step_text(self) -> str:
        """All commands and action references, lowercased, one per line."""
        return "\n".join(s.text for s in self.steps).lower()

    @property
    def is_gated(self) -> bool:
        """Deployment-like jobs whose ordering is a release gate, not a data dependency."""
        if self.environment or self.condition:
            return True
        return any(s.kind == StepKind.DEPLOY for s in self.steps)
