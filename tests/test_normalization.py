"""Tests for the normalization strategy framework."""

import numpy as np
import pytest

from peakdiff.domain.alignment import AlignedRead, InMemoryAlignmentSource
from peakdiff.domain.exceptions import (
    DegenerateNormalizationError,
    InputValidationError,
    NormalizationError,
)
from peakdiff.domain.models import CountMatrix, GenomicInterval, IntervalSet, NormalizationFactors, Sample
from peakdiff.domain.services.count_matrix_builder import CountMatrixBuilder
from peakdiff.domain.services.normalization import (
    BackgroundNormalization,
    CommonPeakNormalization,
    LibrarySizeNormalization,
    NormalizationContext,
    NormalizationService,
    build_strategy,
    validate_factors,
)


class FetchOnlySource(InMemoryAlignmentSource):
    """Source that only serves positional fetches."""

    def reads(self, chromosome=None):
        raise OSError("full scan not allowed")


class RejectingStrategy(LibrarySizeNormalization):
    """Strategy whose inputs fail validation."""

    name = "rejecting"

    def compute(self, context):
        raise InputValidationError("Interval chr1:5-5 is empty")


def context_from_counts(windows, counts, depths, peaks=None):
    ids = tuple(f"s{i}" for i in range(len(depths)))
    matrix = CountMatrix(windows, ids, counts, depths)
    samples = [Sample(sample_id, "G", peaks=peaks) for sample_id in ids]
    return NormalizationContext(matrix, samples)


@pytest.fixture
def replicate_context(rng, spaced_windows, make_sample):
    """Two replicates of one condition with identical underlying rates"""
    windows = spaced_windows(30)
    rates = rng.uniform(50, 150, size=len(windows))
    samples = [
        make_sample(
            name,
            "CTRL",
            windows,
            rng.poisson(rates),
            peaks=windows,
            background=3000,
            genome_size=200_000,
        )
        for name in ("rep1", "rep2")
    ]
    matrix = CountMatrixBuilder().build(samples, windows)
    return NormalizationContext(matrix, samples)


class TestLibrarySize:
    """Tests for library-size normalization."""

    def test_depth_ratio_of_two(self, spaced_windows):
        windows = spaced_windows(3)
        context = context_from_counts(
            windows, [[100, 200], [50, 100], [10, 20]], [1_000_000, 2_000_000]
        )
        factors = LibrarySizeNormalization().compute(context)
        assert factors["s1"] / factors["s0"] == pytest.approx(2.0)
        assert factors["s0"] * factors["s1"] == pytest.approx(1.0)
        assert factors.strategy == "library"

    def test_zero_depth_is_degenerate(self, spaced_windows):
        context = context_from_counts(spaced_windows(1), [[0, 5]], [0, 10])
        with pytest.raises(DegenerateNormalizationError) as info:
            LibrarySizeNormalization().compute(context)
        assert info.value.sample_id == "s0"


class TestCommonPeak:
    """Tests for MA-style common-peak normalization."""

    @pytest.mark.parametrize("method", ["trimmed", "rlm"])
    def test_corrects_composition_bias(self, rng, spaced_windows, method):
        windows = spaced_windows(40)
        counts = rng.poisson(100, size=(len(windows), 2))
        # second library is twice as deep only because of signal outside the common peaks
        context = context_from_counts(windows, counts, [10_000, 20_000], peaks=windows)
        factors = CommonPeakNormalization(method=method).compute(context)
        library = LibrarySizeNormalization().compute(context)
        assert factors["s1"] / factors["s0"] == pytest.approx(1.0, rel=0.15)
        assert library["s1"] / library["s0"] == pytest.approx(2.0)
        assert factors.diagnostics["common_windows"] == 40

    def test_scales_with_common_signal(self, rng, spaced_windows):
        windows = spaced_windows(40)
        base = rng.poisson(200, size=len(windows))
        counts = np.column_stack([base, 2 * base])
        context = context_from_counts(windows, counts, [50_000, 50_000], peaks=windows)
        factors = CommonPeakNormalization().compute(context)
        assert factors["s1"] / factors["s0"] == pytest.approx(2.0, rel=0.01)

    def test_common_windows_require_every_sample(self, spaced_windows):
        windows = spaced_windows(20)
        half = IntervalSet(windows.intervals[:10])
        matrix = CountMatrix(windows, ("a", "b"), np.full((20, 2), 50), [5000, 5000])
        samples = [Sample("a", "G", peaks=windows), Sample("b", "G", peaks=half)]
        context = NormalizationContext(matrix, samples)
        assert CommonPeakNormalization().common_windows(context).sum() == 10
        assert CommonPeakNormalization(min_samples=1).common_windows(context).sum() == 20

    def test_peak_sets_override_sample_peaks(self, spaced_windows):
        windows = spaced_windows(12)
        matrix = CountMatrix(windows, ("a", "b"), np.full((12, 2), 30), [1000, 1000])
        samples = [Sample("a", "G"), Sample("b", "G")]
        context = NormalizationContext(matrix, samples, peak_sets={"a": windows, "b": windows})
        factors = CommonPeakNormalization().compute(context)
        assert factors["a"] == pytest.approx(factors["b"])

    def test_peak_overlapping_window_edge_counts(self, spaced_windows):
        windows = spaced_windows(1)
        edge = IntervalSet((GenomicInterval("chr1", windows[0].end, windows[0].end + 100),))
        matrix = CountMatrix(windows, ("a",), [[5]], [10])
        context = NormalizationContext(matrix, [Sample("a", "G", peaks=edge)])
        assert CommonPeakNormalization().common_windows(context).tolist() == [True]

    def test_missing_peaks(self, spaced_windows):
        context = context_from_counts(spaced_windows(12), np.full((12, 2), 10), [100, 100])
        with pytest.raises(NormalizationError, match="no peak set"):
            CommonPeakNormalization().compute(context)

    def test_too_few_common_windows(self, spaced_windows):
        windows = spaced_windows(5)
        context = context_from_counts(windows, np.full((5, 2), 10), [100, 100], peaks=windows)
        with pytest.raises(NormalizationError, match="common windows"):
            CommonPeakNormalization(min_common=10).compute(context)

    def test_unknown_method(self):
        with pytest.raises(InputValidationError):
            CommonPeakNormalization(method="loess")


class TestBackground:
    """Tests for background normalization."""

    @pytest.fixture
    def depth_context(self, spaced_windows, make_sample):
        windows = spaced_windows(10)
        samples = [
            make_sample(name, "CTRL", windows, [40] * 10, background=n, genome_size=200_000)
            for name, n in (("shallow", 4000), ("deep", 8000))
        ]
        matrix = CountMatrixBuilder().build(samples, windows)
        return NormalizationContext(matrix, samples)

    def test_equalizes_background_coverage(self, depth_context):
        strategy = BackgroundNormalization(seed=7, n_regions=80, region_size=2000)
        factors = strategy.compute(depth_context)
        assert factors["deep"] / factors["shallow"] == pytest.approx(2.0, rel=0.15)
        assert factors.diagnostics["basis"] == "median_ratio"

    def test_same_seed_is_reproducible(self, depth_context):
        first = BackgroundNormalization(seed=123, n_regions=50, region_size=2000).compute(depth_context)
        second = BackgroundNormalization(seed=123, n_regions=50, region_size=2000).compute(depth_context)
        assert first.factors == second.factors

    def test_seed_changes_regions(self, depth_context):
        a = BackgroundNormalization(seed=1, n_regions=50, region_size=2000).sample_regions(depth_context)
        b = BackgroundNormalization(seed=2, n_regions=50, region_size=2000).sample_regions(depth_context)
        assert a != b

    def test_regions_avoid_windows(self, depth_context):
        regions = BackgroundNormalization(seed=3, n_regions=200, region_size=2000).sample_regions(
            depth_context
        )
        windows = depth_context.count_matrix.windows
        assert not any(region.overlaps(window) for region in regions for window in windows)

    def test_chromosome_restriction(self, depth_context):
        context = NormalizationContext(
            depth_context.count_matrix,
            depth_context.samples,
            chromosome_sizes={"chr1": 200_000, "chr2": 150_000},
        )
        regions = BackgroundNormalization(
            seed=5, n_regions=30, region_size=1000, chromosomes=["chr2"]
        ).sample_regions(context)
        assert regions.chromosomes() == ["chr2"]

    def test_restriction_to_unknown_chromosome(self, depth_context):
        strategy = BackgroundNormalization(seed=5, chromosomes=["chr22"])
        with pytest.raises(NormalizationError):
            strategy.compute(depth_context)

    @pytest.mark.parametrize("region_size", [0, 1])
    def test_region_size_below_two_rejected(self, region_size):
        with pytest.raises(InputValidationError, match="at least 2 bp"):
            BackgroundNormalization(seed=1, region_size=region_size)

    def test_counts_by_positional_fetch(self, rng, spaced_windows):
        windows = spaced_windows(10)
        samples = []
        for name, n in (("shallow", 4000), ("deep", 8000)):
            starts = rng.integers(1, 200_000 - 50, size=n)
            reads = [AlignedRead("chr1", int(s), int(s) + 49) for s in starts]
            samples.append(Sample(name, "CTRL", FetchOnlySource(reads, {"chr1": 200_000})))
        matrix = CountMatrix(
            windows, ("shallow", "deep"), np.zeros((10, 2), dtype=np.int64), [4000, 8000]
        )
        strategy = BackgroundNormalization(seed=7, n_regions=80, region_size=2000)
        factors = strategy.compute(NormalizationContext(matrix, samples))
        assert factors["deep"] / factors["shallow"] == pytest.approx(2.0, rel=0.15)

    def test_no_background_reads_is_degenerate(self, spaced_windows, make_sample):
        windows = spaced_windows(5)
        samples = [make_sample(n, "G", windows, [20] * 5) for n in ("a", "b")]
        matrix = CountMatrixBuilder().build(samples, windows)
        context = NormalizationContext(matrix, samples, chromosome_sizes={"chr1": 500_000})
        with pytest.raises(DegenerateNormalizationError):
            BackgroundNormalization(seed=1, n_regions=20, region_size=1000).compute(context)


class TestReplicates:
    """Replicates of one condition get factors close to each other."""

    @pytest.mark.parametrize(
        "strategy",
        [
            LibrarySizeNormalization(),
            CommonPeakNormalization(),
            CommonPeakNormalization(method="rlm"),
            BackgroundNormalization(seed=11, n_regions=100, region_size=2000),
        ],
        ids=["library", "common_peak", "common_peak_rlm", "background"],
    )
    def test_replicate_ratio_close_to_one(self, replicate_context, strategy):
        factors = strategy.compute(replicate_context)
        values = factors.as_array(replicate_context.sample_ids)
        assert np.all(np.isfinite(values)) and np.all(values > 0)
        assert values[1] / values[0] == pytest.approx(1.0, abs=0.15)


class TestFramework:
    """Tests for validation, the registry and the service."""

    def test_validate_missing_sample(self):
        factors = NormalizationFactors("custom", {"a": 1.0})
        with pytest.raises(DegenerateNormalizationError) as info:
            validate_factors(factors, ["a", "b"])
        assert info.value.sample_id == "b"

    def test_build_strategy(self):
        assert isinstance(build_strategy("library"), LibrarySizeNormalization)
        background = build_strategy("background", seed=9, n_regions=10)
        assert isinstance(background, BackgroundNormalization)
        assert background.seed == 9
        with pytest.raises(InputValidationError):
            build_strategy("quantile")

    def test_context_rejects_unknown_samples(self, spaced_windows):
        matrix = CountMatrix(spaced_windows(1), ("a",), [[1]], [1])
        with pytest.raises(InputValidationError):
            NormalizationContext(matrix, [Sample("b", "G")])

    @pytest.mark.parametrize("workers", [None, 3])
    def test_failed_strategy_is_discarded(self, spaced_windows, make_sample, workers):
        windows = spaced_windows(12)
        samples = [make_sample(n, "G", windows, [30] * 12, peaks=windows) for n in ("a", "b")]
        matrix = CountMatrixBuilder().build(samples, windows)
        context = NormalizationContext(matrix, samples, chromosome_sizes={"chr1": 400_000})
        factors, errors = NormalizationService(max_workers=workers).compute_all(
            [
                LibrarySizeNormalization(),
                BackgroundNormalization(seed=4, n_regions=20, region_size=1000),
                CommonPeakNormalization(),
            ],
            context,
        )
        assert sorted(factors) == ["common_peak", "library"]
        assert list(errors) == ["background"]

    def test_invalid_input_is_discarded(self, spaced_windows, make_sample):
        windows = spaced_windows(4)
        samples = [make_sample(n, "G", windows, [10, 20, 30, 40]) for n in ("a", "b")]
        context = NormalizationContext(CountMatrixBuilder().build(samples, windows), samples)
        factors, errors = NormalizationService().compute_all(
            [RejectingStrategy(), LibrarySizeNormalization()], context
        )
        assert list(factors) == ["library"]
        assert "chr1:5-5" in errors["rejecting"]
