__version__ = "0.4.0"

from .analyzer import analyze
from .cost import estimate_costs
from .dag import PipelineDag
from .errors import (
    ConfigParseError,
    CyclicDependencyError,
    PipelineError,
    UnknownJobReferenceError,
    UnsupportedProviderError,
)
from .optimizer import optimize
from .parser import Provider, detect_provider, parse, parse_file
from .simulator import simulate

__all__ = [
    "__version__",
    "analyze", "optimize", "simulate", "estimate_costs",
    "parse", "parse_file", "detect_provider", "Provider", "PipelineDag",
    "PipelineError", "ConfigParseError", "UnknownJobReferenceError",
    "CyclicDependencyError", "UnsupportedProviderError",
]
