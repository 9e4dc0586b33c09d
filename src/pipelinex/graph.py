"""Pipeline DAG rendering: Mermaid, Graphviz DOT and plain-text levels."""
from __future__ import annotations

import re
from typing import Dict, List

from .analyzer.critical_path import longest_path
from .analyzer.report import format_duration
from .dag import PipelineDag

ROOT_COLOR = "#22c55e"
SINK_COLOR = "#3b82f6"
INNER_COLOR = "#f59e0b"
CRITICAL_COLOR = "#ef4444"


def node_ids(dag: PipelineDag) -> Dict[str, str]:
    """Identifier-safe, unique node id per job name."""
    ids: Dict[str, str] = {}
    taken = set()
    for i, name in enumerate(dag.job_names):
        node = re.sub(r"\W", "_", name) or f"job_{i}"
        if node[0].isdigit():
            node = f"j_{node}"
        if node in taken:
            node = f"{node}_{i}"
        taken.add(node)
        ids[name] = node
    return ids


def _quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def to_mermaid(dag: PipelineDag) -> str:
    ids = node_ids(dag)
    critical, _ = longest_path(dag)
    lines = ["graph LR"]
    for job in dag.jobs:
        label = f"{job.label}<br/>{format_duration(job.estimated_duration)}".replace('"', "#quot;")
        lines.append(f'    {ids[job.name]}["{label}"]')
    for dep, dependent in dag.edges():
        lines.append(f"    {ids[dep]} --> {ids[dependent]}")

    roots, sinks = dag.roots(), dag.sinks()
    if roots:
        lines.append(f"    style {','.join(ids[n] for n in roots)} fill:{ROOT_COLOR},color:#fff")
    if sinks:
        lines.append(f"    style {','.join(ids[n] for n in sinks)} fill:{SINK_COLOR},color:#fff")
    if critical:
        lines.append(f"    classDef critical stroke:{CRITICAL_COLOR},stroke-width:3px")
        lines.append(f"    class {','.join(ids[n] for n in critical)} critical")
    return "\n".join(lines) + "\n"


def to_dot(dag: PipelineDag) -> str:
    critical = set(longest_path(dag)[0])
    roots, sinks = set(dag.roots()), set(dag.sinks())
    lines = [
        f'digraph "{_quote(dag.name)}" {{',
        "    rankdir=LR;",
        '    node [shape=box, style="rounded,filled", fontname="Helvetica", fontcolor="#ffffff"];',
        '    edge [color="#666666"];',
        "",
    ]
    for job in dag.jobs:
        if job.name in roots:
            color = ROOT_COLOR
        elif job.name in sinks:
            color = SINK_COLOR
        else:
            color = INNER_COLOR
        label = f"{job.label}\\n{format_duration(job.estimated_duration)}"
        extra = f', color="{CRITICAL_COLOR}", penwidth=3' if job.name in critical else ""
        lines.append(f'    "{_quote(job.name)}" [label="{_quote(label)}", fillcolor="{color}"{extra}];')
    lines.append("")
    for dep, dependent in dag.edges():
        lines.append(f'    "{_quote(dep)}" -> "{_quote(dependent)}";')
    lines.append("}")
    return "\n".join(lines) + "\n"


def to_ascii(dag: PipelineDag) -> str:
    critical, duration = longest_path(dag)
    on_path = set(critical)
    levels = dag.levels()

    lines: List[str] = [
        f"Pipeline: {dag.name} ({dag.job_count} jobs, {len(levels)} levels)",
        "=" * 60,
        "",
    ]
    for i, level in enumerate(levels):
        prefix = "START" if i == 0 else f"L{i}"
        cells = []
        for name in level:
            mark = "*" if name in on_path else ""
            cells.append(f"[{name}{mark} ({format_duration(dag.job(name).estimated_duration)})]")
        if len(cells) == 1:
            lines.append(f"  {prefix:>5} ─── {cells[0]}")
            continue
        lines.append(f"  {prefix:>5} ─┬─ {cells[0]}")
        for cell in cells[1:-1]:
            lines.append(f"  {'':>5}  ├─ {cell}")
        lines.append(f"  {'':>5}  └─ {cells[-1]}")

    lines.append("")
    lines.append(f"Critical path (*): {' -> '.join(critical)} ({format_duration(duration)})")
    return "\n".join(lines) + "\n"


RENDERERS = {
    "mermaid": to_mermaid,
    "dot": to_dot,
    "ascii": to_ascii,
}


def render(dag: PipelineDag, fmt: str) -> str:
    return RENDERERS[fmt](dag)
