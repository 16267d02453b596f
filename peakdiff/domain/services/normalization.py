"""
Normalization strategies for the peakdiff pipeline.

Every strategy turns a NormalizationContext into one positive scale factor
per sample. Factors are rescaled to a geometric mean of 1 and applied as
``count / factor``: samples with more technical signal get larger factors
and are scaled down.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import statsmodels.api as sm

from peakdiff.domain.exceptions import (
    AlignmentAccessError,
    DegenerateNormalizationError,
    InputValidationError,
    NormalizationError,
)
from peakdiff.domain.models import (
    CountMatrix,
    GenomicInterval,
    IntervalSet,
    NormalizationFactors,
    Sample,
    chromosome_sort_key,
)
from peakdiff.domain.services.count_matrix_builder import CountMatrixBuilder, WindowIndex
from peakdiff.domain.services.interval_merger import IntervalMerger
from peakdiff.infrastructure.logger import Logger


@dataclass
class NormalizationContext:
    """Inputs shared by all normalization strategies"""

    count_matrix: CountMatrix
    samples: Sequence[Sample]
    peak_sets: Optional[Mapping[str, IntervalSet]] = None
    chromosome_sizes: Optional[Mapping[str, int]] = None
    chromosomes: Optional[Sequence[str]] = None
    paired: bool = False

    def __post_init__(self):
        known = {sample.id for sample in self.samples}
        missing = [s for s in self.count_matrix.sample_ids if s not in known]
        if missing:
            raise InputValidationError(f"Count matrix samples without metadata: {missing}")

    @property
    def sample_ids(self) -> Tuple[str, ...]:
        return self.count_matrix.sample_ids

    def sample(self, sample_id: str) -> Sample:
        for sample in self.samples:
            if sample.id == sample_id:
                return sample
        raise KeyError(sample_id)

    def peaks_for(self, sample_id: str) -> Optional[IntervalSet]:
        if self.peak_sets is not None and sample_id in self.peak_sets:
            return self.peak_sets[sample_id]
        return self.sample(sample_id).peaks


def rescale_to_unit_geomean(raw: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        return raw / np.exp(np.mean(np.log(raw)))


def validate_factors(
    factors: NormalizationFactors, sample_ids: Sequence[str]
) -> NormalizationFactors:
    """
    Check a factor vector before it reaches the differential test.

    Raises:
        DegenerateNormalizationError: For a missing sample or a value that
            is not strictly positive and finite
    """
    for sample_id in sample_ids:
        if sample_id not in factors:
            raise DegenerateNormalizationError(factors.strategy, sample_id, None)
        value = factors[sample_id]
        if not np.isfinite(value) or value <= 0:
            raise DegenerateNormalizationError(factors.strategy, sample_id, value)
    return factors


class NormalizationStrategy(ABC):
    """Computes per-sample normalization factors from a context"""

    name = "strategy"

    @abstractmethod
    def compute(self, context: NormalizationContext) -> NormalizationFactors:
        """Return one positive finite factor per sample in the count matrix"""

    def _finalize(
        self,
        context: NormalizationContext,
        raw: np.ndarray,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> NormalizationFactors:
        raw = np.asarray(raw, dtype=float)
        for sample_id, value in zip(context.sample_ids, raw):
            if not np.isfinite(value) or value <= 0:
                raise DegenerateNormalizationError(self.name, sample_id, float(value))
        scaled = rescale_to_unit_geomean(raw)
        factors = NormalizationFactors(
            self.name,
            {s: float(v) for s, v in zip(context.sample_ids, scaled)},
            diagnostics or {},
        )
        return validate_factors(factors, context.sample_ids)


class LibrarySizeNormalization(NormalizationStrategy):
    """Scale by total aligned reads (or pairs) per sample"""

    name = "library"

    def compute(self, context: NormalizationContext) -> NormalizationFactors:
        depths = context.count_matrix.depths.astype(float)
        return self._finalize(context, depths, {"depths": context.count_matrix.depth_map()})


class CommonPeakNormalization(NormalizationStrategy):
    """
    MA-style normalization on windows called as peaks in every sample.

    For each sample, M is the log2 ratio of its depth-scaled counts to the
    per-window mean over samples and A the average log intensity. A robust
    centre of M (doubly trimmed mean, or a Huber regression of M on A
    evaluated at the median A) gives the composition offset.
    """

    name = "common_peak"
    methods = ("trimmed", "rlm")

    def __init__(
        self,
        method: str = "trimmed",
        min_samples: Optional[int] = None,
        logratio_trim: float = 0.3,
        sum_trim: float = 0.05,
        min_common: int = 10,
        pseudocount: float = 0.5,
    ):
        if method not in self.methods:
            raise InputValidationError(f"Unknown MA method {method!r}; use one of {self.methods}")
        self.method = method
        self.min_samples = min_samples
        self.logratio_trim = logratio_trim
        self.sum_trim = sum_trim
        self.min_common = min_common
        self.pseudocount = pseudocount

    def common_windows(self, context: NormalizationContext) -> np.ndarray:
        """Boolean mask of consensus windows overlapped by peaks of enough samples"""
        matrix = context.count_matrix
        index = WindowIndex(matrix.windows)
        hits = np.zeros(len(matrix.windows), dtype=np.int64)
        for sample_id in matrix.sample_ids:
            peaks = context.peaks_for(sample_id)
            if peaks is None:
                raise NormalizationError(self.name, f"no peak set for sample '{sample_id}'")
            spans: Dict[str, Tuple[List[int], List[int]]] = {}
            for peak in peaks:
                starts, ends = spans.setdefault(peak.chromosome, ([], []))
                starts.append(peak.start)
                ends.append(peak.end)
            hits += index.count(spans) > 0
        required = self.min_samples or len(matrix.sample_ids)
        return hits >= required

    def compute(self, context: NormalizationContext) -> NormalizationFactors:
        matrix = context.count_matrix
        mask = self.common_windows(context)
        n_common = int(mask.sum())
        if n_common < self.min_common:
            raise NormalizationError(
                self.name,
                f"only {n_common} common windows, need at least {self.min_common}",
            )

        counts = matrix.counts[mask].astype(float)
        depths = matrix.depths.astype(float)
        if (depths <= 0).any():
            bad = matrix.sample_ids[int(np.argmin(depths))]
            raise DegenerateNormalizationError(self.name, bad, 0.0)

        log_counts = np.log2((counts + self.pseudocount) / depths[None, :] * 1e6)
        reference = log_counts.mean(axis=1)

        offsets = []
        for column in range(log_counts.shape[1]):
            m_values = log_counts[:, column] - reference
            a_values = (log_counts[:, column] + reference) / 2
            if self.method == "rlm":
                offsets.append(self._rlm_offset(m_values, a_values))
            else:
                offsets.append(self._trimmed_offset(m_values, a_values))
        offsets = np.asarray(offsets)

        return self._finalize(
            context,
            depths * np.power(2.0, offsets),
            {"common_windows": n_common, "method": self.method, "offsets": offsets.tolist()},
        )

    def _trimmed_offset(self, m_values: np.ndarray, a_values: np.ndarray) -> float:
        m_low, m_high = np.quantile(m_values, [self.logratio_trim, 1 - self.logratio_trim])
        a_low, a_high = np.quantile(a_values, [self.sum_trim, 1 - self.sum_trim])
        keep = (
            (m_values >= m_low) & (m_values <= m_high)
            & (a_values >= a_low) & (a_values <= a_high)
        )
        if not keep.any():
            return float(np.median(m_values))
        return float(m_values[keep].mean())

    @staticmethod
    def _rlm_offset(m_values: np.ndarray, a_values: np.ndarray) -> float:
        if np.ptp(a_values) == 0:
            return float(np.median(m_values))
        design = sm.add_constant(a_values, has_constant="add")
        fit = sm.RLM(m_values, design, M=sm.robust.norms.HuberT()).fit()
        intercept, slope = fit.params
        return float(intercept + slope * np.median(a_values))


class BackgroundNormalization(NormalizationStrategy):
    """
    Equalize coverage in randomly drawn background regions.

    The random state is owned by the strategy and seeded explicitly, so the
    same seed and inputs reproduce the same factors.
    """

    name = "background"

    def __init__(
        self,
        seed: int,
        n_regions: int = 1000,
        region_size: int = 5000,
        chromosomes: Optional[Sequence[str]] = None,
        exclude_windows: bool = True,
        builder: Optional[CountMatrixBuilder] = None,
    ):
        if n_regions < 1:
            raise InputValidationError("n_regions must be positive")
        if region_size < 2:
            raise InputValidationError(f"region_size must be at least 2 bp, got {region_size}")
        self.seed = seed
        self.n_regions = n_regions
        self.region_size = region_size
        self.chromosomes = list(chromosomes) if chromosomes else None
        self.exclude_windows = exclude_windows
        self.builder = builder or CountMatrixBuilder()
        self.logger = Logger()

    def genome(self, context: NormalizationContext) -> Dict[str, int]:
        """Chromosome sizes the background is drawn from"""
        if context.chromosome_sizes:
            sizes = dict(context.chromosome_sizes)
        else:
            sizes = {}
            for sample_id in context.sample_ids:
                source = context.sample(sample_id).alignment_source
                if source is None:
                    continue
                try:
                    for chromosome, length in source.chromosome_sizes().items():
                        sizes[chromosome] = max(sizes.get(chromosome, 0), int(length))
                except (OSError, ValueError) as e:
                    raise AlignmentAccessError(sample_id, str(e)) from e

        restriction = self.chromosomes or context.chromosomes
        if restriction:
            unknown = [c for c in restriction if c not in sizes]
            if unknown:
                self.logger.log_warning(f"Background chromosomes not in genome: {unknown}")
            sizes = {c: sizes[c] for c in restriction if c in sizes}

        sizes = {c: n for c, n in sizes.items() if n >= self.region_size}
        if not sizes:
            raise NormalizationError(
                self.name, f"no chromosome can hold a {self.region_size} bp background region"
            )
        return sizes

    def sample_regions(self, context: NormalizationContext) -> IntervalSet:
        sizes = self.genome(context)
        chromosomes = sorted(sizes, key=chromosome_sort_key)
        lengths = np.array([sizes[c] for c in chromosomes], dtype=np.int64)

        rng = np.random.default_rng(self.seed)
        picks = rng.choice(len(chromosomes), size=self.n_regions, p=lengths / lengths.sum())
        starts = rng.integers(1, lengths[picks] - self.region_size + 2)
        ends = starts + self.region_size - 1

        keep = np.ones(self.n_regions, dtype=bool)
        if self.exclude_windows:
            index = WindowIndex(context.count_matrix.windows)
            for i, chromosome in enumerate(chromosomes):
                on_chromosome = picks == i
                if on_chromosome.any():
                    keep[on_chromosome] &= ~index.overlaps(
                        chromosome, starts[on_chromosome], ends[on_chromosome]
                    )

        regions = [
            GenomicInterval(chromosomes[p], int(s), int(e))
            for p, s, e, k in zip(picks, starts, ends, keep)
            if k
        ]
        if not regions:
            raise NormalizationError(self.name, "every background region overlapped a window")
        return IntervalMerger().merge([regions])

    def compute(self, context: NormalizationContext) -> NormalizationFactors:
        regions = self.sample_regions(context)
        self.logger.log_step(
            "Background normalization",
            f"{len(regions)} background regions, seed {self.seed}",
        )

        columns = []
        for sample_id in context.sample_ids:
            counts = self.builder.count_regions(
                context.sample(sample_id).alignment_source,
                regions,
                context.paired,
                sample_id,
            )
            columns.append(counts)
        background = np.column_stack(columns).astype(float)

        informative = (background > 0).all(axis=1)
        if informative.any():
            log_counts = np.log(background[informative])
            log_ratios = log_counts - log_counts.mean(axis=1, keepdims=True)
            raw = np.exp(np.median(log_ratios, axis=0))
            basis = "median_ratio"
        else:
            raw = background.sum(axis=0)
            basis = "total"

        return self._finalize(
            context,
            raw,
            {
                "regions": len(regions),
                "informative_regions": int(informative.sum()),
                "basis": basis,
                "seed": self.seed,
            },
        )


STRATEGIES = {
    LibrarySizeNormalization.name: LibrarySizeNormalization,
    CommonPeakNormalization.name: CommonPeakNormalization,
    BackgroundNormalization.name: BackgroundNormalization,
}


def build_strategy(name: str, **options) -> NormalizationStrategy:
    """Instantiate a strategy by its registered name"""
    try:
        strategy_class = STRATEGIES[name]
    except KeyError:
        raise InputValidationError(
            f"Unknown normalization {name!r}; choose from {sorted(STRATEGIES)}"
        ) from None
    return strategy_class(**options)


class NormalizationService:
    """Runs several strategies against one count matrix"""

    def __init__(self, max_workers: Optional[int] = None):
        self.logger = Logger()
        self.max_workers = max_workers

    def compute_all(
        self,
        strategies: Sequence[NormalizationStrategy],
        context: NormalizationContext,
    ) -> Tuple[Dict[str, NormalizationFactors], Dict[str, str]]:
        """
        Compute every strategy independently.

        Returns:
            Tuple of factor vectors by strategy name and error messages of
            the strategies whose output was discarded
        """

        def run(strategy: NormalizationStrategy):
            try:
                return strategy.compute(context), None
            except (NormalizationError, AlignmentAccessError, InputValidationError) as e:
                return None, e

        if self.max_workers and self.max_workers > 1 and len(strategies) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                outcomes = list(pool.map(run, strategies))
        else:
            outcomes = [run(strategy) for strategy in strategies]

        factors: Dict[str, NormalizationFactors] = {}
        errors: Dict[str, str] = {}
        for strategy, (result, error) in zip(strategies, outcomes):
            if error is not None:
                self.logger.log_strategy_failure(strategy.name, error)
                errors[strategy.name] = str(error)
                continue
            self.logger.log_factors(strategy.name, result.factors)
            factors[strategy.name] = result
        return factors, errors
