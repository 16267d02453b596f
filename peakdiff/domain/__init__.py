"""
This package contains the domain layer for the peakdiff pipeline.

The domain layer is responsible for the interval, counting, normalization
and statistical logic of the pipeline.
"""

from .alignment import AlignedRead, AlignmentSource, InMemoryAlignmentSource
from .exceptions import (
    AlignmentAccessError,
    DegenerateNormalizationError,
    InputValidationError,
    NormalizationError,
    PeakDiffError,
)
from .models import (
    AnalysisConfig,
    AnalysisResult,
    AnalysisWarning,
    CountMatrix,
    DifferentialResult,
    DifferentialTestResult,
    DispersionModel,
    GenomicInterval,
    IntervalSet,
    NormalizationFactors,
    Sample,
)

__all__ = [
    "AlignedRead",
    "AlignmentAccessError",
    "AlignmentSource",
    "AnalysisConfig",
    "AnalysisResult",
    "AnalysisWarning",
    "CountMatrix",
    "DegenerateNormalizationError",
    "DifferentialResult",
    "DifferentialTestResult",
    "DispersionModel",
    "GenomicInterval",
    "InMemoryAlignmentSource",
    "InputValidationError",
    "IntervalSet",
    "NormalizationError",
    "NormalizationFactors",
    "PeakDiffError",
    "Sample",
]
