"""Session analysis and cross-session aggregation."""

from .aggregator import AnalysisAggregator
from .analyzer import GeminiSessionAnalyzer, SessionAnalyzer, SyntheticSessionAnalyzer
from .service import AnalysisService

__all__ = [
    "AnalysisAggregator",
    "AnalysisService",
    "GeminiSessionAnalyzer",
    "SessionAnalyzer",
    "SyntheticSessionAnalyzer",
]
