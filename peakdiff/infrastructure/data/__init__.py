"""
Data access package for the peakdiff pipeline.

This package contains the sample sheet and peak loaders, the BAM alignment
source and the result table writer.
"""

from .bam_source import BamAlignmentSource
from .data_loader import SampleSheetLoader
from .data_saver import ResultSaver

__all__ = ["BamAlignmentSource", "ResultSaver", "SampleSheetLoader"]
