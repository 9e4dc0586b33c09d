"""SARIF 2.1.0 output, for code scanning dashboards."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from .. import __version__, yamlio
from .report import AnalysisReport, Finding, Severity

SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"

_LEVELS = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
    Severity.INFO: "note",
}


def rule_id(index: int) -> str:
    return f"PX{index + 1:03d}"


def rule_key(finding: Finding) -> str:
    """Findings of the same kind share one SARIF rule."""
    return finding.rule or finding.category.value


def _rule(index: int, finding: Finding) -> Dict[str, Any]:
    key = rule_key(finding)
    return {
        "id": rule_id(index),
        "name": key,
        "shortDescription": {"text": key.replace("-", " ").capitalize()},
        "defaultConfiguration": {"level": _LEVELS[finding.severity]},
        "properties": {"category": finding.category.value},
    }


def _result(rule: str, finding: Finding, source_file: str, source_text: str) -> Dict[str, Any]:
    line = 1
    if finding.affected_jobs and source_text:
        line = yamlio.find_line(source_text, finding.affected_jobs[0]) or 1

    result: Dict[str, Any] = {
        "ruleId": rule,
        "level": _LEVELS[finding.severity],
        "message": {"text": f"{finding.title}\n\n{finding.description}\n\nRecommendation: {finding.recommendation}"},
        "locations": [{
            "physicalLocation": {
                "artifactLocation": {"uri": source_file},
                "region": {"startLine": line},
            },
        }],
        "properties": {
            "confidence": finding.confidence,
            "estimatedSavingsSeconds": finding.estimated_savings_secs,
        },
    }
    if finding.fix_command:
        result["fixes"] = [{"description": {"text": f"Run: {finding.fix_command}"}}]
    if finding.affected_jobs:
        result["relatedLocations"] = [
            {
                "id": i,
                "message": {"text": f"Affected job: {job}"},
                "physicalLocation": {"artifactLocation": {"uri": source_file}},
            }
            for i, job in enumerate(finding.affected_jobs)
        ]
    return result


def to_sarif(reports: Sequence[AnalysisReport], sources: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    One SARIF run covering every report. `sources` maps source_file to its
    text so results can point at the line of the first affected job.
    """
    sources = sources or {}
    rules: List[Dict[str, Any]] = []
    ids: Dict[str, str] = {}
    results: List[Dict[str, Any]] = []
    for report in reports:
        for finding in report.findings:
            key = rule_key(finding)
            if key not in ids:
                ids[key] = rule_id(len(rules))
                rules.append(_rule(len(rules), finding))
            results.append(_result(ids[key], finding, report.source_file, sources.get(report.source_file, "")))

    return {
        "$schema": SARIF_SCHEMA,
        "version": "2.1.0",
        "runs": [{
            "tool": {
                "driver": {
                    "name": "pipelinex",
                    "version": __version__,
                    "rules": rules,
                },
            },
            "results": results,
            "invocations": [{"executionSuccessful": True, "toolExecutionNotifications": []}],
        }],
    }


def dump_sarif(reports: Sequence[AnalysisReport], sources: Optional[Dict[str, str]] = None) -> str:
    return json.dumps(to_sarif(reports, sources), indent=2)
