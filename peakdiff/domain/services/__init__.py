"""
Business logic services package for the peakdiff pipeline.
"""

from .count_matrix_builder import CountMatrixBuilder
from .differential_tester import DifferentialTester
from .interval_merger import IntervalMerger
from .normalization import (
    BackgroundNormalization,
    CommonPeakNormalization,
    LibrarySizeNormalization,
    NormalizationContext,
    NormalizationService,
    NormalizationStrategy,
    build_strategy,
)

__all__ = [
    "BackgroundNormalization",
    "CommonPeakNormalization",
    "CountMatrixBuilder",
    "DifferentialTester",
    "IntervalMerger",
    "LibrarySizeNormalization",
    "NormalizationContext",
    "NormalizationService",
    "NormalizationStrategy",
    "build_strategy",
]
