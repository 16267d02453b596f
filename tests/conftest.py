"""Shared fixtures for the peakdiff test-suite."""

import numpy as np
import pytest

from peakdiff.domain.alignment import AlignedRead, InMemoryAlignmentSource
from peakdiff.domain.models import GenomicInterval, IntervalSet, Sample


def reads_in_window(window: GenomicInterval, count: int, rng, length: int = 50):
    """Reads of a fixed length placed entirely inside a window"""
    span = window.end - window.start + 1 - length
    starts = window.start + rng.integers(0, max(span, 1), size=count)
    return [AlignedRead(window.chromosome, int(s), int(s) + length - 1) for s in starts]


@pytest.fixture
def rng():
    return np.random.default_rng(20240501)


@pytest.fixture
def spaced_windows():
    """Factory for evenly spaced 500 bp windows on chr1"""

    def build(n: int, spacing: int = 5000) -> IntervalSet:
        return IntervalSet(
            tuple(
                GenomicInterval("chr1", 10_000 + i * spacing, 10_000 + i * spacing + 499)
                for i in range(n)
            )
        )

    return build


@pytest.fixture
def make_sample(rng):
    """
    Factory for a sample whose in-memory reads follow per-window counts.

    ``background`` extra reads are spread uniformly over ``genome_size``.
    """

    def build(
        sample_id,
        group,
        windows,
        counts,
        peaks=None,
        background=0,
        genome_size=None,
    ):
        reads = []
        for window, count in zip(windows, counts):
            reads.extend(reads_in_window(window, int(count), rng))
        sizes = None
        if genome_size is not None:
            sizes = {"chr1": genome_size}
            starts = rng.integers(1, genome_size - 50, size=background)
            reads.extend(AlignedRead("chr1", int(s), int(s) + 49) for s in starts)
        return Sample(
            id=sample_id,
            group=group,
            alignment_source=InMemoryAlignmentSource(reads, sizes),
            peaks=peaks,
        )

    return build


@pytest.fixture
def nb_counts():
    """Factory for negative-binomial count matrices"""

    def draw(means, n_samples, dispersion, seed, scale=None):
        generator = np.random.default_rng(seed)
        means = np.asarray(means, dtype=float)[:, None]
        if scale is not None:
            means = means * np.asarray(scale, dtype=float)[None, :]
        else:
            means = np.repeat(means, n_samples, axis=1)
        size = 1.0 / dispersion
        return generator.negative_binomial(size, size / (size + means))

    return draw
