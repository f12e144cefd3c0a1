"""Dependency scanning, classification and report aggregation."""

from .analyzer import AnalysisOptions, analyze, build_report
from .classifier import StalenessThreshold, classify
from .matching import ExactField, MatchStrategy, SerializedContains, TextContains
from .scanner import DependencyScanner, scan

__all__ = [
    "AnalysisOptions",
    "analyze",
    "build_report",
    "StalenessThreshold",
    "classify",
    "ExactField",
    "MatchStrategy",
    "SerializedContains",
    "TextContains",
    "DependencyScanner",
    "scan",
]
