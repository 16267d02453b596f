"""
Error taxonomy for the differential analysis pipeline.
"""

from typing import Optional


class PeakDiffError(Exception):
    """Base class for all pipeline errors"""


class InputValidationError(PeakDiffError, ValueError):
    """Malformed input detected before any computation runs"""


class AlignmentAccessError(PeakDiffError):
    """An alignment source could not be opened or read"""

    def __init__(self, sample_id: str, reason: str):
        self.sample_id = sample_id
        self.reason = reason
        super().__init__(f"Cannot read alignments for sample '{sample_id}': {reason}")


class NormalizationError(PeakDiffError):
    """A normalization strategy could not produce factors"""

    def __init__(self, strategy: str, message: str):
        self.strategy = strategy
        super().__init__(f"[{strategy}] {message}")


class DegenerateNormalizationError(NormalizationError):
    """A factor is zero, negative, NaN, infinite or missing"""

    def __init__(self, strategy: str, sample_id: str, value: Optional[float]):
        self.sample_id = sample_id
        self.value = value
        super().__init__(
            strategy, f"degenerate factor {value!r} for sample '{sample_id}'"
        )
