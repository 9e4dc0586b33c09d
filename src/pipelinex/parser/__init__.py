"""
Provider parsers: pipeline source text -> PipelineDag.

Providers are a closed set (`Provider`); each maps to one parse function in
`_PARSERS`. A provider function turns the loaded YAML document into a
`ParsedPipeline`; everything after that (history calibration, DAG
construction and validation) is shared.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .. import durations, yamlio
from ..dag import PipelineDag, build_dag
from ..errors import ConfigParseError, UnsupportedProviderError
from ..model import Provider
from . import azure, bitbucket, circleci, github, gitlab
from .common import ParsedPipeline

logger = logging.getLogger(__name__)

_PARSERS: Dict[Provider, Callable[[dict, str, str], ParsedPipeline]] = {
    Provider.GITHUB: github.parse_document,
    Provider.GITLAB: gitlab.parse_document,
    Provider.CIRCLECI: circleci.parse_document,
    Provider.BITBUCKET: bitbucket.parse_document,
    Provider.AZURE: azure.parse_document,
}

GITLAB_FILENAMES = (".gitlab-ci.yml", ".gitlab-ci.yaml")
BITBUCKET_FILENAMES = ("bitbucket-pipelines.yml", "bitbucket-pipelines.yaml")
AZURE_FILENAMES = ("azure-pipelines.yml", "azure-pipelines.yaml")
CIRCLECI_CONFIG = Path(".circleci") / "config.yml"

_CIRCLECI_EXECUTORS = ("docker", "machine", "macos", "executor")


def detect_provider(path: Union[str, Path], text: Optional[str] = None) -> Provider:
    """
    Pick the provider from the file location first, then from the content.
    Raises UnsupportedProviderError when neither is conclusive.
    """
    p = Path(path)
    posix = f"/{p.as_posix()}"
    if p.name in GITLAB_FILENAMES:
        return Provider.GITLAB
    if p.name in BITBUCKET_FILENAMES:
        return Provider.BITBUCKET
    if p.name in AZURE_FILENAMES or "/.azure-pipelines/" in posix:
        return Provider.AZURE
    if "/.circleci/" in posix:
        return Provider.CIRCLECI
    if "/.github/workflows/" in posix:
        return Provider.GITHUB

    if text is None:
        raise UnsupportedProviderError(str(path), "cannot sniff content")

    doc = yamlio.load(text, str(path))
    jobs = doc.get("jobs")
    if isinstance(doc.get("pipelines"), dict):
        return Provider.BITBUCKET
    if "version" in doc and ("workflows" in doc or "orbs" in doc or isinstance(jobs, dict) and any(
        isinstance(j, dict) and any(k in j for k in _CIRCLECI_EXECUTORS) for j in jobs.values()
    )):
        return Provider.CIRCLECI
    if isinstance(jobs, dict) and ("on" in doc or any(
        isinstance(j, dict) and ("runs-on" in j or "steps" in j) for j in jobs.values()
    )):
        return Provider.GITHUB
    stages = doc.get("stages")
    if (
        isinstance(stages, list) and any(isinstance(s, dict) for s in stages)
        or isinstance(jobs, list)
        or isinstance(doc.get("steps"), list)
        or any(k in doc for k in ("pool", "trigger", "pr", "extends"))
    ):
        return Provider.AZURE
    if "stages" in doc or any(
        isinstance(v, dict) and "script" in v for v in doc.values()
    ):
        return Provider.GITLAB

    raise UnsupportedProviderError(str(path), "no known CI structure found")


def parse(
    text: str,
    provider: Provider,
    source_file: str = "",
    statistics=None,
    calibration: Optional[Dict[str, float]] = None,
    derived_from: Optional[PipelineDag] = None,
) -> PipelineDag:
    """
    Parse pipeline text into a fully time-annotated PipelineDag.

    `statistics` (PipelineStatistics) rescales each listed job to its
    historical p50. `calibration` reuses factors computed for another DAG
    instead; the optimizer passes the original's factors so a rewritten job
    keeps the same scale.
    """
    doc = yamlio.load(text, source_file)
    parsed = _PARSERS[provider](doc, text, source_file)

    jobs = parsed.jobs
    if calibration is None:
        calibration = {}
        if statistics is not None:
            for job in jobs:
                timing = statistics.timing_for(job.name, job.display_name)
                if timing is not None:
                    calibration[job.name] = durations.calibration_factor(job, timing.p50_duration_sec)
    jobs = [durations.scale(j, calibration.get(j.name, 1.0)) for j in jobs]

    dag = build_dag(
        jobs,
        name=parsed.name,
        source_file=source_file,
        provider=provider,
        triggers=parsed.triggers,
        concurrency=parsed.concurrency,
        has_path_filter=parsed.has_path_filter,
        document=doc,
        source_text=text,
        statistics=statistics,
        calibration=calibration,
        derived_from=derived_from,
    )
    logger.debug(
        "Parsed %s (%s): %d jobs, %d steps",
        source_file or "<input>", provider.value, dag.job_count, dag.step_count,
    )
    return dag


def parse_file(path: Union[str, Path], statistics=None) -> PipelineDag:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigParseError(f"not valid UTF-8 (byte {e.start})", str(path)) from e
    provider = detect_provider(p, text)
    return parse(text, provider, str(path), statistics=statistics)


__all__ = [
    "AZURE_FILENAMES",
    "BITBUCKET_FILENAMES",
    "CIRCLECI_CONFIG",
    "GITLAB_FILENAMES",
    "Provider",
    "detect_provider",
    "parse",
    "parse_file",
]
