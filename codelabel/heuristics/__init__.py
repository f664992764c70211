"""Heuristics classification engine for codelabel."""

from .conditions import Combinator, evaluate, evaluate_conditions
from .defaults import DEFAULT_HEURISTICS, default_config
from .engine import ClassificationEngine
from .ruleset import HeuristicsConfig, Pattern, next_version
from .store import ConfigurationStore, FileConfigSource, HttpConfigSource, StoreState
from .tracker import PerformanceTracker, get_tracker, reset_tracker

__all__ = [
    "ClassificationEngine",
    "Combinator",
    "ConfigurationStore",
    "DEFAULT_HEURISTICS",
    "FileConfigSource",
    "HeuristicsConfig",
    "HttpConfigSource",
    "Pattern",
    "PerformanceTracker",
    "StoreState",
    "default_config",
    "evaluate",
    "evaluate_conditions",
    "get_tracker",
    "next_version",
    "reset_tracker",
]
