"""
Dependency ecosystem signatures.

Every dependency-heavy step is matched against a table of ecosystems. Each
ecosystem knows:

  - the commands that fetch/compile its dependencies (strict = the whole
    command line is the invocation, loose = the invocation appears somewhere
    in a longer script)
  - the actions that do the same work
  - the cache paths / cache actions that make that work incremental
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from . import settings
from .model import Ecosystem, Step

# Confidence for an exact action match or a command that is only the install.
CONFIDENCE_EXACT = 0.95
# Confidence for an invocation buried inside a longer script.
CONFIDENCE_LOOSE = 0.75


@dataclass(frozen=True)
class Signature:
    ecosystem: Ecosystem
    label: str
    command: re.Pattern
    actions: Tuple[str, ...] = ()
    cache_paths: Tuple[str, ...] = ()
    cache_actions: Tuple[str, ...] = ()
    # setup-* actions that restore this ecosystem's cache when `with.cache` is set
    setup_actions: Tuple[str, ...] = ()


SIGNATURES: Tuple[Signature, ...] = (
    Signature(
        Ecosystem.NPM,
        "npm/yarn/pnpm",
        re.compile(r"\b(npm\s+(ci|install|i)\b|yarn(\s+install)?\s*$|yarn\s+install\b|pnpm\s+(install|i)\b)", re.M),
        cache_paths=("node_modules", ".npm", ".yarn", "yarn-cache", ".pnpm-store"),
        setup_actions=("actions/setup-node",),
    ),
    Signature(
        Ecosystem.PIP,
        "pip",
        re.compile(r"\b(pip3?\s+install\b|python3?\s+-m\s+pip\s+install\b|poetry\s+install\b|pipenv\s+(install|sync)\b|uv\s+(pip\s+install|sync)\b)"),
        cache_paths=(".cache/pip", "pip-cache", ".cache/pypoetry", ".venv", "venv", ".cache/uv"),
        setup_actions=("actions/setup-python",),
    ),
    Signature(
        Ecosystem.CARGO,
        "Cargo",
        re.compile(r"\bcargo\s+(build|test|clippy|check)\b"),
        cache_paths=(".cargo", "target"),
        cache_actions=("swatinem/rust-cache",),
    ),
    Signature(
        Ecosystem.GRADLE,
        "Gradle/Maven",
        re.compile(r"(\./gradlew\b|\bgradle\s|\bmvn\s|\./mvnw\b)"),
        cache_paths=(".gradle", ".m2"),
        cache_actions=("gradle/actions/setup-gradle", "gradle/gradle-build-action"),
        setup_actions=("actions/setup-java",),
    ),
    Signature(
        Ecosystem.DOCKER,
        "Docker",
        re.compile(r"\bdocker\s+(build|buildx\s+build)\b"),
        actions=("docker/build-push-action",),
        cache_paths=(".buildx-cache", "docker-cache"),
        cache_actions=("satackey/action-docker-layer-caching",),
    ),
)

BY_ECOSYSTEM: Dict[Ecosystem, Signature] = {s.ecosystem: s for s in SIGNATURES}


def _action_name(uses: str) -> str:
    return uses.split("@", 1)[0].strip().lower()


def savings_for(ecosystem: Ecosystem) -> float:
    return settings.CACHE_SAVINGS_SECS.get(ecosystem.value, 0.0)


def match_step(step: Step) -> List[Tuple[Ecosystem, float]]:
    """
    Return (ecosystem, confidence) for every ecosystem whose dependency work
    this step performs. Empty for steps that do no such work.
    """
    out: List[Tuple[Ecosystem, float]] = []
    if step.uses:
        name = _action_name(step.uses)
        for sig in SIGNATURES:
            if name in sig.actions and not _action_self_cached(step):
                out.append((sig.ecosystem, CONFIDENCE_EXACT))
        return out

    cmd = (step.run or "").strip()
    if not cmd:
        return out
    lowered = cmd.lower()
    lines = [ln.strip() for ln in lowered.splitlines() if ln.strip()]
    for sig in SIGNATURES:
        if not sig.command.search(lowered):
            continue
        if sig.ecosystem == Ecosystem.DOCKER and "--cache-from" in lowered:
            continue
        exact = len(lines) == 1 and sig.command.match(lines[0]) is not None
        out.append((sig.ecosystem, CONFIDENCE_EXACT if exact else CONFIDENCE_LOOSE))
    return out


def _action_self_cached(step: Step) -> bool:
    w = {str(k).lower(): v for k, v in (step.with_args or {}).items()}
    return bool(w.get("cache-from"))


def classify_cache_paths(paths: Iterable[str]) -> FrozenSet[Ecosystem]:
    """Map cache paths to the ecosystems they serve; unknown paths map to ANY."""
    found = set()
    unknown = False
    for raw in paths:
        p = str(raw).strip().lower()
        if not p:
            continue
        hit = False
        for sig in SIGNATURES:
            if any(marker in p for marker in sig.cache_paths):
                found.add(sig.ecosystem)
                hit = True
        if not hit:
            unknown = True
    if unknown or not found:
        found.add(Ecosystem.ANY)
    return frozenset(found)


def restored_caches(uses: Optional[str], with_args: Dict) -> FrozenSet[Ecosystem]:
    """Ecosystems a GitHub action restores a cache for (empty if it is not a cache action)."""
    if not uses:
        return frozenset()
    name = _action_name(uses)
    w = {str(k).lower(): v for k, v in (with_args or {}).items()}

    if name == "actions/cache" or name == "actions/cache/restore":
        path = w.get("path") or ""
        return classify_cache_paths(str(path).splitlines())

    found = set()
    for sig in SIGNATURES:
        if name in sig.cache_actions:
            found.add(sig.ecosystem)
        if name in sig.setup_actions and w.get("cache"):
            found.add(sig.ecosystem)
    return frozenset(found)


def cache_covers(step: Step, ecosystem: Ecosystem) -> bool:
    """True when `step` restores a cache usable by `ecosystem`."""
    if not step.caches:
        return False
    if ecosystem in step.caches:
        return True
    # a generic cache does not help layered docker builds
    return Ecosystem.ANY in step.caches and ecosystem != Ecosystem.DOCKER
