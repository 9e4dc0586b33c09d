"""Premium runners (macOS, Windows) used by jobs that do nothing platform specific."""
from __future__ import annotations

from typing import List

from .. import settings
from ..cost import RUNNER_RATES, job_runner_labels, runner_family
from ..dag import PipelineDag
from ..model import Job
from .report import Category, Finding, Severity

# commands that only make sense on the platform they run on
_PLATFORM_MARKERS = {
    "macos": ("xcodebuild", "xcrun", "swift ", "pod install", "fastlane", "brew ", "codesign", "notarytool"),
    "windows": ("msbuild", "pwsh", "powershell", "choco ", ".exe", "signtool", "vstest", "nuget"),
}


def _platform_specific(job: Job, family: str) -> bool:
    text = job.step_text()
    return any(marker in text for marker in _PLATFORM_MARKERS.get(family, ()))


def detect_runner_costs(dag: PipelineDag) -> List[Finding]:
    findings: List[Finding] = []
    linux = RUNNER_RATES["linux"]
    for job in dag.jobs:
        families = sorted({runner_family(label) for label in job_runner_labels(job)} - {"linux"})
        for family in families:
            if _platform_specific(job, family):
                continue
            multiplier = RUNNER_RATES[family] / linux
            minutes = job.estimated_duration / 60.0
            monthly = minutes * (RUNNER_RATES[family] - linux) * settings.RUNS_PER_MONTH
            findings.append(Finding(
                severity=Severity.MEDIUM if family == "macos" else Severity.LOW,
                category=Category.COST,
                rule="expensive-runner",
                title=f"'{job.name}' runs on {family} ({multiplier:.0f}x the Linux rate)",
                description=(
                    f"Job '{job.name}' uses a {family} runner but none of its steps look "
                    f"{family}-specific. At {settings.RUNS_PER_MONTH} runs a month that is "
                    f"about ${monthly:.2f} over Linux."
                ),
                affected_jobs=(job.name,),
                recommendation=f"Move '{job.name}' to ubuntu-latest unless it really needs {family}.",
                confidence=0.6,
            ))
    return findings
