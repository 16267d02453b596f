"""
Per-window read counting for the peakdiff pipeline.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from peakdiff.domain.alignment import AlignedRead, AlignmentSource
from peakdiff.domain.exceptions import AlignmentAccessError, InputValidationError
from peakdiff.domain.models import AnalysisWarning, CountMatrix, IntervalSet, Sample
from peakdiff.infrastructure.logger import Logger

ON_ERROR_CHOICES = ("abort", "exclude")


class WindowIndex:
    """Sorted window starts/ends per chromosome for binary search"""

    def __init__(self, windows: IntervalSet):
        self.size = len(windows)
        self.chromosomes: Dict[str, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        for chromosome, indices in windows.by_chromosome().items():
            rows = np.asarray(indices, dtype=np.int64)
            starts = np.array([windows[i].start for i in indices], dtype=np.int64)
            ends = np.array([windows[i].end for i in indices], dtype=np.int64)
            self.chromosomes[chromosome] = (rows, starts, ends)

    def count(self, fragments: Dict[str, Tuple[List[int], List[int]]]) -> np.ndarray:
        """
        Count fragments per window.

        Windows are non-overlapping and sorted, so both starts and ends are
        monotonic: the windows hit by a fragment form the contiguous run
        ``[first end >= fragment start, last start <= fragment end]``.
        """
        counts = np.zeros(self.size, dtype=np.int64)
        for chromosome, (frag_starts, frag_ends) in fragments.items():
            if chromosome not in self.chromosomes or not frag_starts:
                continue
            rows, starts, ends = self.chromosomes[chromosome]
            lo = np.searchsorted(ends, np.asarray(frag_starts, dtype=np.int64), side="left")
            hi = np.searchsorted(starts, np.asarray(frag_ends, dtype=np.int64), side="right")
            n = rows.size
            # difference array: +1 at first hit window, -1 past the last one
            delta = np.bincount(lo, minlength=n + 1) - np.bincount(hi, minlength=n + 1)
            counts[rows] += np.cumsum(delta[:n])
        return counts

    def overlaps(self, chromosome: str, starts: np.ndarray, ends: np.ndarray) -> np.ndarray:
        """Boolean mask of the query intervals that hit at least one window"""
        if chromosome not in self.chromosomes:
            return np.zeros(len(starts), dtype=bool)
        _, window_starts, window_ends = self.chromosomes[chromosome]
        lo = np.searchsorted(window_ends, np.asarray(starts, dtype=np.int64), side="left")
        hi = np.searchsorted(window_starts, np.asarray(ends, dtype=np.int64), side="right")
        return hi > lo


def iter_fragments(reads: Iterable[AlignedRead], paired: bool) -> Iterator[Tuple[str, int, int]]:
    """
    Yield counting units as (chromosome, start, end).

    In paired mode mates sharing a pair_id collapse into one fragment
    spanning both; a mate whose partner never shows up is its own fragment.
    """
    if not paired:
        for read in reads:
            yield read.chromosome, read.start, read.end
        return

    pending: Dict[str, AlignedRead] = {}
    for read in reads:
        if read.pair_id is None:
            yield read.chromosome, read.start, read.end
            continue
        mate = pending.pop(read.pair_id, None)
        if mate is None:
            pending[read.pair_id] = read
        elif mate.chromosome == read.chromosome:
            yield read.chromosome, min(mate.start, read.start), max(mate.end, read.end)
        else:
            yield mate.chromosome, mate.start, mate.end
    for orphan in pending.values():
        yield orphan.chromosome, orphan.start, orphan.end


class CountMatrixBuilder:
    """Builds the windows x samples count matrix from alignment sources"""

    def __init__(self, max_workers: Optional[int] = None, on_error: str = "abort"):
        if on_error not in ON_ERROR_CHOICES:
            raise InputValidationError(
                f"on_error must be one of {ON_ERROR_CHOICES}, got {on_error!r}"
            )
        self.logger = Logger()
        self.max_workers = max_workers
        self.on_error = on_error
        self.warnings: List[AnalysisWarning] = []

    def count_intervals(
        self,
        source: AlignmentSource,
        windows: IntervalSet,
        paired: bool = False,
        sample_id: str = "<unnamed>",
    ) -> Tuple[np.ndarray, int]:
        """
        Count one alignment source against a set of merged windows.

        Args:
            source: Alignment source, opened and closed here
            windows: Sorted, non-overlapping windows
            paired: Count read pairs once per pair
            sample_id: Used in error messages

        Returns:
            Tuple[np.ndarray, int]: Per-window counts and total depth

        Raises:
            AlignmentAccessError: If the source cannot be opened or read
        """
        if not windows.is_merged:
            raise InputValidationError("Windows must be sorted and non-overlapping")
        if source is None:
            raise AlignmentAccessError(sample_id, "no alignment source attached")

        index = WindowIndex(windows)
        fragments: Dict[str, Tuple[List[int], List[int]]] = {}
        depth = 0
        try:
            with source:
                for chromosome, start, end in iter_fragments(source.reads(), paired):
                    depth += 1
                    if chromosome in index.chromosomes:
                        starts, ends = fragments.setdefault(chromosome, ([], []))
                        starts.append(start)
                        ends.append(end)
        except (InputValidationError, AlignmentAccessError):
            raise
        except (OSError, ValueError, RuntimeError, KeyError) as e:
            raise AlignmentAccessError(sample_id, str(e)) from e

        return index.count(fragments), depth

    def count_regions(
        self,
        source: AlignmentSource,
        regions: IntervalSet,
        paired: bool = False,
        sample_id: str = "<unnamed>",
    ) -> np.ndarray:
        """
        Count reads overlapping each region through positional fetches.

        Only the reads overlapping a region are visited, so a small set of
        regions is cheap to count on an indexed source. In paired mode mates
        sharing a pair_id count once per region.
        """
        if source is None:
            raise AlignmentAccessError(sample_id, "no alignment source attached")

        counts = np.zeros(len(regions), dtype=np.int64)
        try:
            with source:
                for row, region in enumerate(regions):
                    reads = source.fetch(region.chromosome, region.start, region.end)
                    if paired:
                        seen = set()
                        for read in reads:
                            if read.pair_id is None:
                                counts[row] += 1
                            elif read.pair_id not in seen:
                                seen.add(read.pair_id)
                                counts[row] += 1
                    else:
                        counts[row] = sum(1 for _ in reads)
        except (InputValidationError, AlignmentAccessError):
            raise
        except (OSError, ValueError, RuntimeError, KeyError) as e:
            raise AlignmentAccessError(sample_id, str(e)) from e
        return counts

    def build(
        self,
        samples: Sequence[Sample],
        windows: IntervalSet,
        paired: bool = False,
    ) -> CountMatrix:
        """
        Count reads of every sample in every window.

        Args:
            samples: Samples with an alignment source attached
            windows: Consensus windows
            paired: Count read pairs once per pair instead of once per mate

        Returns:
            CountMatrix: Integer counts plus per-sample depth
        """
        self.warnings = []
        ids = [sample.id for sample in samples]
        if not samples:
            raise InputValidationError("No samples to count")
        if len(set(ids)) != len(ids):
            raise InputValidationError(f"Duplicate sample ids: {ids}")
        if not windows.is_merged:
            raise InputValidationError("Windows must be sorted and non-overlapping")

        self.logger.log_step(
            "Read counting",
            f"{len(samples)} samples x {len(windows)} windows ({'paired' if paired else 'single'}-end)",
        )

        def count_sample(sample: Sample):
            try:
                return self.count_intervals(
                    sample.alignment_source, windows, paired, sample.id
                ), None
            except AlignmentAccessError as e:
                if self.on_error == "abort":
                    self.logger.log_error(e, f"Counting sample {sample.id}")
                    raise
                return None, e

        if self.max_workers and self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                outcomes = list(pool.map(count_sample, samples))
        else:
            outcomes = [count_sample(sample) for sample in samples]

        columns, depths, kept, excluded = [], [], [], []
        for sample, (counted, error) in zip(samples, outcomes):
            if error is not None:
                excluded.append(sample.id)
                self.logger.log_excluded_sample(sample.id, error.reason)
                self.warnings.append(
                    AnalysisWarning(
                        "sample_excluded",
                        str(error),
                        {"sample": sample.id, "reason": error.reason},
                    )
                )
                continue
            sample_counts, depth = counted
            columns.append(sample_counts)
            depths.append(depth)
            kept.append(sample.id)
            self.logger.log_sample_counts(sample.id, depth, int(sample_counts.sum()))

        if not kept:
            raise InputValidationError("Every sample was excluded; nothing to count")

        counts = (
            np.column_stack(columns)
            if columns
            else np.zeros((len(windows), 0), dtype=np.int64)
        )
        matrix = CountMatrix(windows, tuple(kept), counts, np.asarray(depths), tuple(excluded))
        self.logger.log_matrix_shape("Count matrix", matrix.shape)
        return matrix
