"""Finds pipeline files under a path."""
from __future__ import annotations

from pathlib import Path
from typing import List, Union

from .errors import UnsupportedProviderError
from .parser import AZURE_FILENAMES, BITBUCKET_FILENAMES, CIRCLECI_CONFIG, GITLAB_FILENAMES

WORKFLOW_DIR = Path(".github") / "workflows"
WORKFLOW_SUFFIXES = (".yml", ".yaml")

# fixed-name configs looked up at the root, in this order
ROOT_CONFIGS = (*GITLAB_FILENAMES, str(CIRCLECI_CONFIG), *BITBUCKET_FILENAMES, *AZURE_FILENAMES)


def discover(path: Union[str, Path]) -> List[Path]:
    """
    A file is returned as-is. A directory yields every `*.yml`/`*.yaml` under
    `.github/workflows/`, then the GitLab, CircleCI, Bitbucket and Azure
    configs found at its root.
    """
    p = Path(path)
    if p.is_file():
        return [p]
    if not p.is_dir():
        raise UnsupportedProviderError(str(path), "no such file or directory")

    found: List[Path] = []
    workflows = p / WORKFLOW_DIR
    if workflows.is_dir():
        found.extend(
            f for f in sorted(workflows.iterdir())
            if f.is_file() and f.suffix in WORKFLOW_SUFFIXES
        )
    for name in ROOT_CONFIGS:
        candidate = p / name
        if candidate.is_file():
            found.append(candidate)

    if not found:
        raise UnsupportedProviderError(str(path), "no pipeline configuration found")
    return found
