"""AI analysis: summary and task detection with a result cache."""

from discubot.analysis.cache import (
    AnalysisCache,
    CacheEntry,
    CacheStats,
    InMemoryAnalysisCache,
)
from discubot.analysis.engine import AnalysisEngine, AnalysisProvider, mock_analysis

__all__ = [
    "AnalysisCache",
    "AnalysisEngine",
    "AnalysisProvider",
    "CacheEntry",
    "CacheStats",
    "InMemoryAnalysisCache",
    "mock_analysis",
]
