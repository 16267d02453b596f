"""Tests for consensus window merging."""

import numpy as np
import pandas as pd
import pytest

from peakdiff.domain.exceptions import InputValidationError
from peakdiff.domain.models import GenomicInterval, IntervalSet
from peakdiff.domain.services.interval_merger import IntervalMerger


def covered(intervals):
    positions = set()
    for interval in intervals:
        positions.update((interval.chromosome, p) for p in range(interval.start, interval.end + 1))
    return positions


def random_sets(seed, n_sets=4, per_set=30):
    generator = np.random.default_rng(seed)
    sets = []
    for _ in range(n_sets):
        intervals = []
        for _ in range(per_set):
            chromosome = str(generator.choice(["chr1", "chr2", "chr10"]))
            start = int(generator.integers(1, 2000))
            intervals.append(GenomicInterval(chromosome, start, start + int(generator.integers(1, 80))))
        sets.append(IntervalSet(tuple(intervals)))
    return sets


@pytest.fixture
def merger():
    return IntervalMerger()


class TestMerge:
    """Tests for IntervalMerger.merge."""

    def test_trivial_merge(self, merger):
        sets = [
            IntervalSet((GenomicInterval("chr9", 100, 200),)),
            IntervalSet((GenomicInterval("chr9", 150, 250), GenomicInterval("chr9", 500, 600))),
        ]
        merged = merger.merge(sets)
        assert merged.labels == ["chr9:100-250", "chr9:500-600"]
        assert merged.support == (2, 1)

    def test_touching_intervals_merge(self, merger):
        merged = merger.merge(
            [IntervalSet((GenomicInterval("chr1", 1, 10), GenomicInterval("chr1", 11, 20)))]
        )
        assert merged.labels == ["chr1:1-20"]

    def test_gap_of_one_base_kept_apart(self, merger):
        merged = merger.merge(
            [IntervalSet((GenomicInterval("chr1", 1, 10), GenomicInterval("chr1", 12, 20)))]
        )
        assert len(merged) == 2

    def test_contained_interval(self, merger):
        merged = merger.merge(
            [
                IntervalSet((GenomicInterval("chr1", 1, 100),)),
                IntervalSet((GenomicInterval("chr1", 20, 30),)),
            ]
        )
        assert merged.labels == ["chr1:1-100"]

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_sorted_disjoint_and_union_preserved(self, merger, seed):
        sets = random_sets(seed)
        merged = merger.merge(sets)
        assert merged.is_merged
        keys = [interval.sort_key() for interval in merged]
        assert keys == sorted(keys)
        assert covered(merged) == covered(i for s in sets for i in s)

    def test_idempotent(self, merger):
        merged = merger.merge(random_sets(7))
        again = merger.merge([merged])
        assert again.intervals == merged.intervals

    def test_replicate_filter_is_subset(self, merger):
        sets = random_sets(11)
        unfiltered = merger.merge(sets)
        filtered = merger.merge(sets, keep_only_replicated=True)
        assert set(filtered.intervals) <= set(unfiltered.intervals)
        assert all(s > 1 for s in filtered.support)

    def test_replicate_filter_counts_distinct_sources(self, merger):
        # two overlapping peaks from the same sample are one source
        same_sample = IntervalSet((GenomicInterval("chr1", 1, 50), GenomicInterval("chr1", 40, 90)))
        other = IntervalSet((GenomicInterval("chr2", 1, 50),))
        assert len(merger.merge([same_sample, other], keep_only_replicated=True)) == 0

    def test_min_sources(self, merger):
        sets = [IntervalSet((GenomicInterval("chr1", 10 * i + 1, 100),)) for i in range(3)]
        assert len(merger.merge(sets, keep_only_replicated=True, min_sources=3)) == 1
        assert len(merger.merge(sets, keep_only_replicated=True, min_sources=4)) == 0
        with pytest.raises(InputValidationError):
            merger.merge(sets, min_sources=0)

    def test_empty_sets_ignored(self, merger):
        single = IntervalSet((GenomicInterval("chr3", 5, 9),))
        merged = merger.merge([IntervalSet(), single, []])
        assert merged.labels == ["chr3:5-9"]
        assert len(merger.merge([])) == 0

    def test_canonical_chromosome_order(self, merger):
        merged = merger.merge(
            [
                IntervalSet(
                    (
                        GenomicInterval("chrX", 1, 5),
                        GenomicInterval("chr10", 1, 5),
                        GenomicInterval("chr2", 1, 5),
                    )
                )
            ]
        )
        assert merged.chromosomes() == ["chr2", "chr10", "chrX"]

    def test_threaded_matches_serial(self):
        sets = random_sets(5)
        serial = IntervalMerger().merge(sets)
        threaded = IntervalMerger(max_workers=3).merge(sets)
        assert serial == threaded


class TestMergeFrames:
    """Tests for merging interval tables."""

    def test_merge_frames(self, merger):
        frames = [
            pd.DataFrame({"chrom": ["chr9"], "start": [100], "end": [200]}),
            pd.DataFrame({"chrom": ["chr9", "chr9"], "start": [150, 500], "end": [250, 600]}),
        ]
        assert merger.merge_frames(frames).labels == ["chr9:100-250", "chr9:500-600"]

    def test_missing_column(self, merger):
        with pytest.raises(InputValidationError):
            merger.merge_frames([pd.DataFrame({"chrom": ["chr1"], "start": [1]})])

    def test_malformed_row(self, merger):
        frame = pd.DataFrame({"chrom": ["chr1", "chr1"], "start": [1, 50], "end": [10, 40]})
        with pytest.raises(InputValidationError, match="Row 1"):
            merger.merge_frames([frame])
