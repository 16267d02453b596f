"""
Aligned-read sources consumed by the count matrix builder and by
background normalization.
"""

from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from peakdiff.domain.exceptions import InputValidationError


@dataclass(frozen=True)
class AlignedRead:
    """One alignment in closed 1-based coordinates; mates share a pair_id"""

    chromosome: str
    start: int
    end: int
    pair_id: Optional[str] = None

    def __post_init__(self):
        if self.end < self.start:
            raise InputValidationError(
                f"Read {self.chromosome}:{self.start}-{self.end} ends before it starts"
            )


class AlignmentSource(ABC):
    """
    Read-only, addressable source of aligned reads.

    Sources are context managers. Callers open them for the duration of a
    pass over the reads and the source releases its resources on exit.
    """

    def __enter__(self) -> "AlignmentSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Acquire the underlying resource"""

    def close(self) -> None:
        """Release the underlying resource"""

    @abstractmethod
    def reads(self, chromosome: Optional[str] = None) -> Iterator[AlignedRead]:
        """Stream all reads, optionally restricted to one chromosome"""

    @abstractmethod
    def fetch(self, chromosome: str, start: int, end: int) -> Iterator[AlignedRead]:
        """Stream reads overlapping a closed interval"""

    @abstractmethod
    def chromosome_sizes(self) -> Dict[str, int]:
        """Reference sequence lengths known to the source"""


class InMemoryAlignmentSource(AlignmentSource):
    """Alignment source backed by a list of reads held in memory"""

    def __init__(
        self,
        reads: Iterable[AlignedRead],
        chromosome_sizes: Optional[Dict[str, int]] = None,
    ):
        self._reads: List[AlignedRead] = list(reads)
        self._sizes = dict(chromosome_sizes or {})
        self.is_open = False

        # per chromosome: reads sorted by start, their starts, longest read
        self._by_chromosome: Dict[str, Tuple[List[AlignedRead], List[int], int]] = {}
        grouped: Dict[str, List[AlignedRead]] = {}
        for read in self._reads:
            grouped.setdefault(read.chromosome, []).append(read)
        for chromosome, chromosome_reads in grouped.items():
            chromosome_reads.sort(key=lambda r: (r.start, r.end))
            self._by_chromosome[chromosome] = (
                chromosome_reads,
                [r.start for r in chromosome_reads],
                max(r.end - r.start for r in chromosome_reads),
            )

    @classmethod
    def from_positions(cls, chromosome: str, positions: Iterable[int], length: int = 1):
        """Build single-end reads of a fixed length starting at each position"""
        return cls(
            AlignedRead(chromosome, position, position + length - 1)
            for position in positions
        )

    def open(self) -> None:
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def reads(self, chromosome: Optional[str] = None) -> Iterator[AlignedRead]:
        for read in self._reads:
            if chromosome is None or read.chromosome == chromosome:
                yield read

    def fetch(self, chromosome: str, start: int, end: int) -> Iterator[AlignedRead]:
        if chromosome not in self._by_chromosome:
            return
        reads, starts, longest = self._by_chromosome[chromosome]
        first = bisect_left(starts, start - longest)
        last = bisect_right(starts, end)
        for read in reads[first:last]:
            if read.end >= start:
                yield read

    def chromosome_sizes(self) -> Dict[str, int]:
        if self._sizes:
            return dict(self._sizes)
        sizes: Dict[str, int] = {}
        for read in self._reads:
            sizes[read.chromosome] = max(sizes.get(read.chromosome, 0), read.end)
        return sizes
