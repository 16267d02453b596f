"""
Consensus window construction for the peakdiff pipeline.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from peakdiff.domain.exceptions import InputValidationError
from peakdiff.domain.models import GenomicInterval, IntervalSet, chromosome_sort_key
from peakdiff.infrastructure.logger import Logger

# (start, end, source index)
_Span = Tuple[int, int, int]


class IntervalMerger:
    """Merges per-sample interval sets into one consensus set"""

    def __init__(self, max_workers: Optional[int] = None):
        self.logger = Logger()
        self.max_workers = max_workers

    def merge(
        self,
        sets: Sequence[Iterable[GenomicInterval]],
        keep_only_replicated: bool = False,
        min_sources: int = 2,
    ) -> IntervalSet:
        """
        Merge interval sets into sorted, non-overlapping, non-touching windows.

        Args:
            sets: One interval collection per source (sample or peak caller)
            keep_only_replicated: Keep only windows supported by at least
                ``min_sources`` distinct source sets
            min_sources: Support threshold used when filtering

        Returns:
            IntervalSet: Consensus windows with per-window support counts
        """
        if min_sources < 1:
            raise InputValidationError(f"min_sources must be >= 1, got {min_sources}")

        pooled: Dict[str, List[_Span]] = {}
        used_sources = 0
        for source_index, intervals in enumerate(sets):
            intervals = list(intervals)
            if not intervals:
                continue
            used_sources += 1
            for interval in intervals:
                pooled.setdefault(interval.chromosome, []).append(
                    (interval.start, interval.end, source_index)
                )

        self.logger.log_step(
            "Interval merging",
            f"{sum(len(v) for v in pooled.values())} intervals from {used_sources} sources "
            f"on {len(pooled)} chromosomes",
        )

        chromosomes = sorted(pooled, key=chromosome_sort_key)
        if self.max_workers and self.max_workers > 1 and len(chromosomes) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                swept = list(
                    pool.map(lambda c: self._sweep(c, pooled[c]), chromosomes)
                )
        else:
            swept = [self._sweep(c, pooled[c]) for c in chromosomes]

        windows: List[GenomicInterval] = []
        support: List[int] = []
        for chromosome_windows in swept:
            for window, count in chromosome_windows:
                if keep_only_replicated and count < min_sources:
                    continue
                windows.append(window)
                support.append(count)

        merged = IntervalSet(tuple(windows), tuple(support))
        self.logger.log_step(
            "Interval merging",
            f"{len(merged)} consensus windows"
            + (f" supported by >= {min_sources} sources" if keep_only_replicated else ""),
        )
        return merged

    @staticmethod
    def _sweep(chromosome: str, spans: List[_Span]) -> List[Tuple[GenomicInterval, int]]:
        """Single linear pass over one chromosome's spans sorted by start"""
        spans = sorted(spans)
        merged: List[Tuple[GenomicInterval, int]] = []

        current_start, current_end, first_source = spans[0]
        sources = {first_source}
        for start, end, source in spans[1:]:
            # closed coordinates: adjacent windows touch when start == end + 1
            if start <= current_end + 1:
                current_end = max(current_end, end)
                sources.add(source)
            else:
                merged.append(
                    (GenomicInterval(chromosome, current_start, current_end), len(sources))
                )
                current_start, current_end, sources = start, end, {source}
        merged.append((GenomicInterval(chromosome, current_start, current_end), len(sources)))
        return merged

    def merge_frames(
        self,
        frames: Sequence[pd.DataFrame],
        keep_only_replicated: bool = False,
        min_sources: int = 2,
    ) -> IntervalSet:
        """Merge interval tables with ``chrom``, ``start`` and ``end`` columns"""
        sets = [self.frame_to_intervals(frame) for frame in frames]
        return self.merge(sets, keep_only_replicated, min_sources)

    @staticmethod
    def frame_to_intervals(frame: pd.DataFrame) -> IntervalSet:
        missing = {"chrom", "start", "end"} - set(frame.columns)
        if missing:
            raise InputValidationError(f"Interval table is missing columns {sorted(missing)}")
        intervals = []
        for row_number, (chrom, start, end) in enumerate(
            frame[["chrom", "start", "end"]].itertuples(index=False, name=None)
        ):
            try:
                intervals.append(GenomicInterval(str(chrom), int(start), int(end)))
            except InputValidationError as e:
                raise InputValidationError(f"Row {row_number}: {e}") from e
        return IntervalSet(tuple(intervals))
