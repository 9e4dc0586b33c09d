"""
Step classification and duration estimation.

Every DAG is fully time-annotated before analysis: steps get a heuristic
default per kind, dependency-heavy steps that sit behind a matching cache get
the cached estimate, and when history statistics are supplied the job's steps
are rescaled so their sum matches the observed p50.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from . import ecosystems
from .model import Job, Step, StepKind

logger = logging.getLogger(__name__)

CHECKOUT_SECS = 10.0
SHALLOW_CHECKOUT_SECS = 5.0
SETUP_SECS = 15.0
CACHE_SECS = 10.0
ARTIFACT_SECS = 15.0
GENERIC_ACTION_SECS = 20.0
GENERIC_RUN_SECS = 30.0
EMPTY_STEP_SECS = 10.0

# A warm cache never brings a step below this share of its cold estimate.
CACHED_FLOOR_RATIO = 0.2

# (substring, kind, seconds); first match wins, so specific entries come first.
_RUN_TABLE: Tuple[Tuple[str, StepKind, float], ...] = (
    ("npm ci", StepKind.INSTALL, 180.0),
    ("npm install", StepKind.INSTALL, 180.0),
    ("yarn install", StepKind.INSTALL, 180.0),
    ("pnpm install", StepKind.INSTALL, 180.0),
    ("pip install", StepKind.INSTALL, 120.0),
    ("pip3 install", StepKind.INSTALL, 120.0),
    ("poetry install", StepKind.INSTALL, 120.0),
    ("pipenv install", StepKind.INSTALL, 120.0),
    ("cargo build", StepKind.BUILD, 300.0),
    ("cargo test", StepKind.TEST, 300.0),
    ("cargo clippy", StepKind.LINT, 120.0),
    ("./gradlew", StepKind.BUILD, 180.0),
    ("gradle ", StepKind.BUILD, 180.0),
    ("mvn ", StepKind.BUILD, 180.0),
    ("./mvnw", StepKind.BUILD, 180.0),
    ("docker build", StepKind.BUILD, 300.0),
    ("docker buildx", StepKind.BUILD, 300.0),
    ("docker push", StepKind.DEPLOY, 60.0),
    ("npm run build", StepKind.BUILD, 240.0),
    ("yarn build", StepKind.BUILD, 240.0),
    ("pnpm build", StepKind.BUILD, 240.0),
    ("make ", StepKind.BUILD, 240.0),
    ("npm test", StepKind.TEST, 300.0),
    ("npm run test", StepKind.TEST, 300.0),
    ("yarn test", StepKind.TEST, 300.0),
    ("pytest", StepKind.TEST, 300.0),
    ("jest", StepKind.TEST, 300.0),
    ("go test", StepKind.TEST, 300.0),
    ("npm run lint", StepKind.LINT, 60.0),
    ("eslint", StepKind.LINT, 60.0),
    ("ruff", StepKind.LINT, 60.0),
    ("flake8", StepKind.LINT, 60.0),
    ("prettier", StepKind.LINT, 60.0),
    ("kubectl", StepKind.DEPLOY, 120.0),
    ("terraform", StepKind.DEPLOY, 120.0),
    ("helm ", StepKind.DEPLOY, 120.0),
    ("deploy", StepKind.DEPLOY, 120.0),
)

_ACTION_TABLE: Tuple[Tuple[str, StepKind, float], ...] = (
    ("actions/checkout", StepKind.CHECKOUT, CHECKOUT_SECS),
    ("actions/setup-", StepKind.SETUP, SETUP_SECS),
    ("actions/cache", StepKind.CACHE, CACHE_SECS),
    ("swatinem/rust-cache", StepKind.CACHE, CACHE_SECS),
    ("satackey/action-docker-layer-caching", StepKind.CACHE, CACHE_SECS),
    ("gradle/actions/setup-gradle", StepKind.CACHE, CACHE_SECS),
    ("gradle/gradle-build-action", StepKind.CACHE, CACHE_SECS),
    ("actions/upload-artifact", StepKind.ARTIFACT, ARTIFACT_SECS),
    ("actions/download-artifact", StepKind.ARTIFACT, ARTIFACT_SECS),
    ("docker/build-push-action", StepKind.BUILD, 300.0),
    ("azure/webapps-deploy", StepKind.DEPLOY, 120.0),
    ("aws-actions/", StepKind.DEPLOY, 120.0),
)


def classify(run: Optional[str], uses: Optional[str]) -> Tuple[StepKind, float]:
    """Return (kind, default seconds) for a step."""
    if uses:
        name = uses.split("@", 1)[0].lower()
        for prefix, kind, secs in _ACTION_TABLE:
            if name.startswith(prefix):
                return kind, secs
        return StepKind.RUN, GENERIC_ACTION_SECS

    if run and run.strip():
        cmd = run.lower()
        for needle, kind, secs in _RUN_TABLE:
            if needle in cmd:
                return kind, secs
        return StepKind.RUN, GENERIC_RUN_SECS

    return StepKind.RUN, EMPTY_STEP_SECS


def make_step(
    name: str,
    *,
    run: Optional[str] = None,
    uses: Optional[str] = None,
    with_args: Optional[Dict] = None,
    shallow: Optional[bool] = None,
    caches=frozenset(),
    kind: Optional[StepKind] = None,
) -> Step:
    """Build a Step with its kind and default duration filled in."""
    default_kind, secs = classify(run, uses)
    kind = kind or default_kind
    if kind == StepKind.CHECKOUT:
        secs = SHALLOW_CHECKOUT_SECS if shallow else CHECKOUT_SECS
    elif kind == StepKind.CACHE and uses is None:
        secs = CACHE_SECS
    return Step(
        name=name,
        kind=kind,
        run=run,
        uses=uses,
        with_args=dict(with_args or {}),
        duration_secs=secs,
        shallow=shallow,
        caches=frozenset(caches),
    )


def apply_cache_discounts(steps: List[Step]) -> List[Step]:
    """
    Re-estimate dependency-heavy steps that run after a matching cache restore
    within the same job.
    """
    out: List[Step] = []
    restored: List[Step] = []
    for step in steps:
        matches = ecosystems.match_step(step)
        discount = 0.0
        for eco, _conf in matches:
            if any(ecosystems.cache_covers(c, eco) for c in restored):
                discount = max(discount, ecosystems.savings_for(eco))
        if discount:
            cold = step.duration_secs
            warm = max(cold - discount, cold * CACHED_FLOOR_RATIO)
            step = replace(step, duration_secs=warm)
        if step.caches:
            restored.append(step)
        out.append(step)
    return out


def calibration_factor(job: Job, observed_secs: Optional[float]) -> float:
    """Ratio of the observed p50 to the heuristic estimate (1.0 when unknown)."""
    estimate = job.estimated_duration
    if not observed_secs or observed_secs <= 0 or estimate <= 0:
        return 1.0
    return observed_secs / estimate


def scale(job: Job, factor: float) -> Job:
    """Rescale every step of a job by `factor`, preserving relative weights."""
    if factor == 1.0:
        return job
    logger.debug("Calibrating job %s by x%.2f", job.name, factor)
    steps = tuple(replace(s, duration_secs=s.duration_secs * factor) for s in job.steps)
    return replace(job, steps=steps)


