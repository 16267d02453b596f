"""
Core domain models for the peakdiff differential analysis pipeline.
Contains data structures for genomic intervals, samples, count matrices,
normalization factors, dispersion estimates and differential results.

All genomic coordinates use the closed, 1-based convention.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from peakdiff.domain.exceptions import DegenerateNormalizationError, InputValidationError

STRANDS = ("+", "-", ".")


def chromosome_sort_key(chromosome: str) -> Tuple[int, int, str]:
    """Canonical ordering: chr1..chr22, chrX, chrY, chrM, then the rest by name"""
    name = chromosome[3:] if chromosome.lower().startswith("chr") else chromosome
    if name.isdigit():
        return 0, int(name), ""
    special = {"X": 0, "Y": 1, "M": 2, "MT": 2}
    if name.upper() in special:
        return 1, special[name.upper()], ""
    return 2, 0, chromosome


@dataclass(frozen=True)
class GenomicInterval:
    """A closed 1-based genomic interval"""

    chromosome: str
    start: int
    end: int
    strand: Optional[str] = None

    def __post_init__(self):
        if not self.chromosome:
            raise InputValidationError("Interval has an empty chromosome name")
        if self.start < 0:
            raise InputValidationError(f"Interval {self.label} has a negative start")
        if self.end <= self.start:
            raise InputValidationError(
                f"Interval {self.label} must satisfy start < end"
            )
        if self.strand is not None and self.strand not in STRANDS:
            raise InputValidationError(
                f"Interval {self.label} has unknown strand {self.strand!r}"
            )

    @property
    def label(self) -> str:
        return f"{self.chromosome}:{self.start}-{self.end}"

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def sort_key(self) -> Tuple[Tuple[int, int, str], int, int]:
        return chromosome_sort_key(self.chromosome), self.start, self.end

    def overlaps(self, other: "GenomicInterval") -> bool:
        return (
            self.chromosome == other.chromosome
            and self.start <= other.end
            and other.start <= self.end
        )

    def touches(self, other: "GenomicInterval") -> bool:
        """True when the intervals overlap or are directly adjacent"""
        return (
            self.chromosome == other.chromosome
            and self.start <= other.end + 1
            and other.start <= self.end + 1
        )

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class IntervalSet:
    """
    Ordered, immutable collection of GenomicInterval.

    Intervals are sorted by canonical chromosome order and start on
    construction. ``support`` optionally records, per interval, how many
    distinct source sets contributed to it.
    """

    intervals: Tuple[GenomicInterval, ...] = ()
    support: Optional[Tuple[int, ...]] = None

    def __post_init__(self):
        intervals = tuple(self.intervals)
        support = None if self.support is None else tuple(int(s) for s in self.support)
        if support is not None and len(support) != len(intervals):
            raise InputValidationError(
                f"Support has {len(support)} entries for {len(intervals)} intervals"
            )
        order = sorted(range(len(intervals)), key=lambda i: intervals[i].sort_key())
        object.__setattr__(self, "intervals", tuple(intervals[i] for i in order))
        if support is not None:
            object.__setattr__(self, "support", tuple(support[i] for i in order))

    def __len__(self) -> int:
        return len(self.intervals)

    def __iter__(self) -> Iterator[GenomicInterval]:
        return iter(self.intervals)

    def __getitem__(self, index: int) -> GenomicInterval:
        return self.intervals[index]

    @property
    def labels(self) -> List[str]:
        return [interval.label for interval in self.intervals]

    @property
    def is_merged(self) -> bool:
        """True when no two intervals overlap or touch"""
        return all(
            not previous.touches(current)
            for previous, current in zip(self.intervals, self.intervals[1:])
        )

    def chromosomes(self) -> List[str]:
        seen: Dict[str, None] = {}
        for interval in self.intervals:
            seen.setdefault(interval.chromosome, None)
        return list(seen)

    def by_chromosome(self) -> Dict[str, List[int]]:
        """Map chromosome to the indices of its intervals, in sorted order"""
        index: Dict[str, List[int]] = {}
        for i, interval in enumerate(self.intervals):
            index.setdefault(interval.chromosome, []).append(i)
        return index

    def total_span(self) -> int:
        return sum(interval.length for interval in self.intervals)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "chrom": [i.chromosome for i in self.intervals],
                "start": [i.start for i in self.intervals],
                "end": [i.end for i in self.intervals],
            }
        )
        if self.support is not None:
            frame["support"] = list(self.support)
        return frame


@dataclass(frozen=True)
class Sample:
    """A sequenced sample and its group assignment"""

    id: str
    group: str
    alignment_source: Any = None
    depth: Optional[int] = None
    peaks: Optional[IntervalSet] = None
    normalization_factor: Optional[float] = None

    def __post_init__(self):
        if not self.id:
            raise InputValidationError("Sample id must not be empty")
        if not self.group:
            raise InputValidationError(f"Sample '{self.id}' has no group label")

    def with_depth(self, depth: int) -> "Sample":
        return replace(self, depth=int(depth))

    def with_normalization_factor(self, factor: float) -> "Sample":
        return replace(self, normalization_factor=float(factor))


@dataclass(frozen=True)
class CountMatrix:
    """Integer read counts, windows x samples, with per-sample depth"""

    windows: IntervalSet
    sample_ids: Tuple[str, ...]
    counts: np.ndarray
    depths: np.ndarray
    excluded: Tuple[str, ...] = ()

    def __post_init__(self):
        sample_ids = tuple(self.sample_ids)
        counts = np.array(self.counts, dtype=np.int64, copy=True)
        depths = np.array(self.depths, dtype=np.int64, copy=True)

        if len(set(sample_ids)) != len(sample_ids):
            raise InputValidationError(f"Duplicate sample ids: {sample_ids}")
        if counts.ndim != 2 or counts.shape != (len(self.windows), len(sample_ids)):
            raise InputValidationError(
                f"Count matrix shape {counts.shape} does not match "
                f"{len(self.windows)} windows x {len(sample_ids)} samples"
            )
        if depths.shape != (len(sample_ids),):
            raise InputValidationError(
                f"Expected {len(sample_ids)} depths, got shape {depths.shape}"
            )
        if (counts < 0).any():
            raise InputValidationError("Count matrix contains negative cells")
        if counts.size and (counts > depths[None, :]).any():
            column = int(np.argmax((counts > depths[None, :]).any(axis=0)))
            raise InputValidationError(
                f"Counts of sample '{sample_ids[column]}' exceed its depth"
            )

        counts.setflags(write=False)
        depths.setflags(write=False)
        object.__setattr__(self, "sample_ids", sample_ids)
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "depths", depths)
        object.__setattr__(self, "excluded", tuple(self.excluded))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.counts.shape

    def column(self, sample_id: str) -> np.ndarray:
        return self.counts[:, self.sample_ids.index(sample_id)]

    def depth(self, sample_id: str) -> int:
        return int(self.depths[self.sample_ids.index(sample_id)])

    def depth_map(self) -> Dict[str, int]:
        return {s: int(d) for s, d in zip(self.sample_ids, self.depths)}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.counts, index=self.windows.labels, columns=list(self.sample_ids)
        )


@dataclass(frozen=True)
class NormalizationFactors:
    """One strictly positive, finite scale factor per sample"""

    strategy: str
    factors: Mapping[str, float]
    diagnostics: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        checked = {}
        for sample_id, value in self.factors.items():
            if value is None:
                raise DegenerateNormalizationError(self.strategy, sample_id, value)
            value = float(value)
            if not math.isfinite(value) or value <= 0:
                raise DegenerateNormalizationError(self.strategy, sample_id, value)
            checked[sample_id] = value
        object.__setattr__(self, "factors", checked)

    def __getitem__(self, sample_id: str) -> float:
        return self.factors[sample_id]

    def __contains__(self, sample_id: str) -> bool:
        return sample_id in self.factors

    def items(self):
        return self.factors.items()

    def as_array(self, sample_ids: Sequence[str]) -> np.ndarray:
        return np.array([self.factors[s] for s in sample_ids], dtype=float)


@dataclass(frozen=True)
class DispersionModel:
    """Negative-binomial dispersion estimates"""

    common: float
    trended: np.ndarray
    tagwise: np.ndarray
    method: str
    prior_df: float
    residual_df: int

    def for_testing(self) -> np.ndarray:
        if self.method == "tagwise":
            return self.tagwise
        return np.full(self.tagwise.shape, self.common, dtype=float)


@dataclass(frozen=True)
class DifferentialResult:
    """Test outcome for one window"""

    window: GenomicInterval
    log_fc: float
    pvalue: float
    fdr: float
    conc: float = 0.0
    conc_a: float = 0.0
    conc_b: float = 0.0
    log_fc_defined: bool = True
    index: int = 0


@dataclass(frozen=True)
class AnalysisWarning:
    """Non-fatal condition collected during a run"""

    category: str
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class DifferentialTestResult:
    """Ranked results of one differential test invocation"""

    results: List[DifferentialResult]
    dispersion: DispersionModel
    reference_group: str
    contrast_group: str
    warnings: List[AnalysisWarning] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "chrom": [r.window.chromosome for r in self.results],
                "start": [r.window.start for r in self.results],
                "end": [r.window.end for r in self.results],
                "conc": [r.conc for r in self.results],
                f"conc_{self.reference_group}": [r.conc_a for r in self.results],
                f"conc_{self.contrast_group}": [r.conc_b for r in self.results],
                "log_fc": [r.log_fc for r in self.results],
                "pvalue": [r.pvalue for r in self.results],
                "fdr": [r.fdr for r in self.results],
                "log_fc_defined": [r.log_fc_defined for r in self.results],
            }
        )

    def significant(
        self, fdr_threshold: float = 0.05, min_abs_log_fc: float = 0.0
    ) -> List[DifferentialResult]:
        return [
            r
            for r in self.results
            if r.fdr <= fdr_threshold and abs(r.log_fc) >= min_abs_log_fc
        ]

    def top(self, n: int) -> List[DifferentialResult]:
        return self.results[:n]


@dataclass
class AnalysisConfig:
    """Configuration for a differential analysis run"""

    sample_sheet: str
    out_dir: str
    name: str = "peakdiff"
    paired: bool = False
    min_overlap: int = 2
    normalization: List[str] = field(default_factory=lambda: ["library"])
    test_normalization: Optional[str] = None
    seed: int = 42
    background_chromosomes: Optional[List[str]] = None
    background_regions: int = 1000
    background_region_size: int = 5000
    chrom_sizes: Optional[str] = None
    min_mapq: int = 0
    fdr_threshold: float = 0.05
    reference_group: Optional[str] = None
    threads: int = 1
    exclude_unreadable: bool = False
    log_file: Optional[str] = None

    @property
    def keep_only_replicated(self) -> bool:
        return self.min_overlap > 1

    @property
    def chosen_normalization(self) -> str:
        return self.test_normalization or self.normalization[0]


@dataclass
class AnalysisResult:
    """Everything produced by one analysis run"""

    samples: List[Sample]
    consensus: IntervalSet
    count_matrix: CountMatrix
    factors: Dict[str, NormalizationFactors]
    failed_normalizations: Dict[str, str]
    normalization: str
    test: DifferentialTestResult
    warnings: List[AnalysisWarning] = field(default_factory=list)
