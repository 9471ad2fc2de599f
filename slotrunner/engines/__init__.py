"""Engine processes, output parsing and the rate-limit fallback chain."""

from .base import EngineRunner, EngineRunOptions, EngineSpec
from .fallback import BackoffTracker, FallbackController
from .result_parser import EngineResult, ErrorKind, ParserKind
from .specs import ENGINE_SPECS, EngineName, create_engine

__all__ = [
    "BackoffTracker",
    "ENGINE_SPECS",
    "EngineName",
    "EngineResult",
    "EngineRunOptions",
    "EngineRunner",
    "EngineSpec",
    "ErrorKind",
    "FallbackController",
    "ParserKind",
    "create_engine",
]
