"""
This package contains the application layer for the peakdiff pipeline.

The application layer is responsible for orchestrating a differential analysis run.
"""

from .differential_analysis_service import DifferentialAnalysisService

__all__ = ["DifferentialAnalysisService"]
