"""
YAML loading/emitting for pipeline documents.

PyYAML implements YAML 1.1, where `on`, `off`, `yes` and `no` are booleans.
GitHub's `on:` trigger key would come back as `True`, so both the loader and
the dumper here only treat true/false as booleans.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigParseError

_BOOL_TAG = "tag:yaml.org,2002:bool"
_BOOL_RE = re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$")

# plain scalars a YAML 1.1 consumer (GitLab runs on one) would read as booleans
_AMBIGUOUS = {"yes", "no", "y", "n", "off"}


def _strip_bool_resolver(cls) -> None:
    cls.yaml_implicit_resolvers = {
        first: [(tag, regexp) for tag, regexp in resolvers if tag != _BOOL_TAG]
        for first, resolvers in cls.yaml_implicit_resolvers.items()
    }
    cls.add_implicit_resolver(_BOOL_TAG, _BOOL_RE, list("tTfF"))


class PipelineLoader(yaml.SafeLoader):
    pass


class PipelineDumper(yaml.SafeDumper):
    def ignore_aliases(self, data):
        return True


_strip_bool_resolver(PipelineLoader)
_strip_bool_resolver(PipelineDumper)


def _represent_str(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    if data.lower() in _AMBIGUOUS:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="'")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


PipelineDumper.add_representer(str, _represent_str)


def load(text: str, source_file: str = "") -> Dict[str, Any]:
    """Parse a pipeline document; the top level must be a mapping."""
    try:
        doc = yaml.load(text, Loader=PipelineLoader)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None) or getattr(e, "context_mark", None)
        line = mark.line + 1 if mark is not None else None
        problem = getattr(e, "problem", None) or str(e)
        raise ConfigParseError(f"invalid YAML: {problem}", source_file, line) from e

    if doc is None:
        raise ConfigParseError("empty pipeline document", source_file)
    if not isinstance(doc, dict):
        raise ConfigParseError(
            f"top-level document must be a mapping, got {type(doc).__name__}",
            source_file,
            1,
        )
    return doc


def dump(doc: Dict[str, Any]) -> str:
    return yaml.dump(
        doc,
        Dumper=PipelineDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )


def find_line(text: str, key: str, after: int = 0) -> Optional[int]:
    """1-based line of the first `key:` at or after line `after`, if any."""
    pattern = re.compile(r"^\s*(?:-\s+)?['\"]?" + re.escape(str(key)) + r"['\"]?\s*:")
    for number, line in enumerate(text.splitlines(), start=1):
        if number >= after and pattern.match(line):
            return number
    return None
