"""
Data loading and initial validation for the peakdiff pipeline.
"""

import io
import os
from typing import Dict, List, Optional

import pandas as pd

from peakdiff.domain.exceptions import InputValidationError
from peakdiff.domain.models import AnalysisConfig, GenomicInterval, IntervalSet, Sample
from peakdiff.infrastructure.data.bam_source import BamAlignmentSource
from peakdiff.infrastructure.logger import Logger

REQUIRED_COLUMNS = ("sample", "group", "bam")
MISSING_VALUES = ("", "-", "NA", "na", "None")


class SampleSheetLoader:
    """Responsible for loading the sample sheet, peak files and genome sizes"""

    def __init__(self):
        self.logger = Logger()

    def load_sample_sheet(self, file_path: str) -> pd.DataFrame:
        """
        Load the sample sheet.

        Args:
            file_path: CSV or TSV file with ``sample``, ``group``, ``bam``
                and optional ``peaks`` columns

        Returns:
            pd.DataFrame: One row per sample, paths resolved relative to the sheet

        Raises:
            FileNotFoundError: If the sheet does not exist
            InputValidationError: If required columns or values are missing
        """
        if not os.path.exists(file_path):
            self.logger.log_error(
                FileNotFoundError(f"Sample sheet not found: {file_path}"), "Data loading"
            )
            raise FileNotFoundError(f"Sample sheet not found: {file_path}")

        separator = "," if file_path.endswith(".csv") else "\t"
        sheet = pd.read_csv(file_path, sep=separator, dtype=str, keep_default_na=False)
        sheet.columns = [column.strip().lower() for column in sheet.columns]

        missing = [column for column in REQUIRED_COLUMNS if column not in sheet.columns]
        if missing:
            raise InputValidationError(f"Sample sheet {file_path} lacks columns {missing}")

        for column in REQUIRED_COLUMNS:
            empty = sheet[column].str.strip().isin(MISSING_VALUES)
            if empty.any():
                rows = (sheet.index[empty] + 1).tolist()
                raise InputValidationError(f"Empty '{column}' in sample sheet rows {rows}")

        duplicated = sheet["sample"][sheet["sample"].duplicated()].tolist()
        if duplicated:
            raise InputValidationError(f"Duplicate sample ids in sample sheet: {duplicated}")

        base = os.path.dirname(os.path.abspath(file_path))
        for column in ("bam", "peaks"):
            if column in sheet.columns:
                # object dtype keeps None; a string dtype would turn it into NaN
                sheet[column] = pd.Series(
                    [self._resolve_path(base, value) for value in sheet[column]],
                    index=sheet.index,
                    dtype=object,
                )

        self.logger.log_success(f"Loaded {len(sheet)} samples from {file_path}")
        return sheet

    @staticmethod
    def _resolve_path(base: str, value) -> Optional[str]:
        """Path relative to the sheet directory, None for a missing entry"""
        if value is None or pd.isna(value) or str(value).strip() in MISSING_VALUES:
            return None
        return os.path.normpath(os.path.join(base, str(value).strip()))

    def load_peaks(self, file_path: str) -> IntervalSet:
        """
        Load a BED-like peak file (BED, narrowPeak, broadPeak).

        BED coordinates are 0-based half-open; they are converted to the
        closed 1-based convention used everywhere else.
        """
        with open(file_path) as handle:
            lines = [
                line
                for line in handle
                if line.strip() and not line.startswith(("track", "browser", "#"))
            ]
        if not lines:
            self.logger.log_warning(f"Peak file {file_path} is empty")
            return IntervalSet()

        frame = pd.read_csv(
            io.StringIO("".join(lines)),
            sep="\t",
            header=None,
            usecols=[0, 1, 2],
            dtype={0: str},
        )
        intervals = []
        for row_number, (chrom, start, end) in enumerate(frame.itertuples(index=False, name=None)):
            try:
                intervals.append(GenomicInterval(chrom, int(start) + 1, int(end)))
            except (InputValidationError, ValueError) as e:
                raise InputValidationError(f"{file_path} line {row_number + 1}: {e}") from e

        self.logger.log_step("Peak loading", f"{len(intervals)} peaks from {file_path}")
        return IntervalSet(tuple(intervals))

    def load_chrom_sizes(self, file_path: str) -> Dict[str, int]:
        """Load a two-column chromosome sizes file"""
        frame = pd.read_csv(file_path, sep="\t", header=None, usecols=[0, 1], dtype={0: str})
        sizes = {str(chrom): int(size) for chrom, size in frame.itertuples(index=False, name=None)}
        self.logger.log_step("Genome loading", f"{len(sizes)} chromosomes from {file_path}")
        return sizes

    def load_samples(self, config: AnalysisConfig) -> List[Sample]:
        """
        Build Sample records with BAM sources and peak sets attached.

        Args:
            config: Analysis configuration

        Returns:
            List[Sample]: Samples in sample sheet order
        """
        sheet = self.load_sample_sheet(config.sample_sheet)
        samples = []
        for row in sheet.itertuples(index=False):
            peaks: Optional[IntervalSet] = None
            peak_path = getattr(row, "peaks", None)
            if isinstance(peak_path, str) and peak_path:
                peaks = self.load_peaks(peak_path)
            if not isinstance(row.bam, str) or not row.bam:
                raise InputValidationError(f"Sample {row.sample!r} has no BAM path")
            source = BamAlignmentSource(row.bam, min_mapq=config.min_mapq, paired=config.paired)
            samples.append(
                Sample(
                    id=row.sample.strip(),
                    group=row.group.strip(),
                    alignment_source=source,
                    peaks=peaks,
                )
            )

        groups = sorted({sample.group for sample in samples})
        self.logger.log_step("Samples loaded", f"{len(samples)} samples in groups {groups}")
        return samples
