"""
BAM-backed alignment source.
"""

from typing import Dict, Iterator, Optional

import pysam

from peakdiff.domain.alignment import AlignedRead, AlignmentSource


class BamAlignmentSource(AlignmentSource):
    """
    Streams reads from a BAM file through pysam.

    Unmapped, secondary, supplementary, QC-failed and duplicate-flagged
    (when ``skip_duplicates``) reads are skipped. Coordinates are converted
    from pysam's 0-based half-open to closed 1-based.

    In paired mode mates share their query name as pair_id. A mapped read
    whose mate is unmapped keeps no pair_id and counts as one fragment.
    """

    def __init__(
        self,
        path: str,
        min_mapq: int = 0,
        paired: bool = False,
        skip_duplicates: bool = False,
    ):
        self.path = path
        self.min_mapq = min_mapq
        self.paired = paired
        self.skip_duplicates = skip_duplicates
        self._handle: Optional[pysam.AlignmentFile] = None

    def __repr__(self):
        return f"BamAlignmentSource(path={self.path!r}, min_mapq={self.min_mapq})"

    def open(self) -> None:
        if self._handle is None:
            self._handle = pysam.AlignmentFile(self.path, "rb")

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _keep(self, read: pysam.AlignedSegment) -> bool:
        if read.is_unmapped or read.is_secondary or read.is_supplementary or read.is_qcfail:
            return False
        if self.skip_duplicates and read.is_duplicate:
            return False
        return read.mapping_quality >= self.min_mapq

    def _convert(self, read: pysam.AlignedSegment) -> AlignedRead:
        paired = self.paired and read.is_paired and not read.mate_is_unmapped
        pair_id = read.query_name if paired else None
        return AlignedRead(
            read.reference_name,
            read.reference_start + 1,
            read.reference_end if read.reference_end is not None else read.reference_start + 1,
            pair_id,
        )

    def reads(self, chromosome: Optional[str] = None) -> Iterator[AlignedRead]:
        self.open()
        if chromosome is None:
            iterator = self._handle.fetch(until_eof=True)
        else:
            iterator = self._handle.fetch(chromosome)
        for read in iterator:
            if self._keep(read):
                yield self._convert(read)

    def fetch(self, chromosome: str, start: int, end: int) -> Iterator[AlignedRead]:
        self.open()
        for read in self._handle.fetch(chromosome, start - 1, end):
            if self._keep(read):
                yield self._convert(read)

    def chromosome_sizes(self) -> Dict[str, int]:
        with pysam.AlignmentFile(self.path, "rb") as handle:
            return dict(zip(handle.references, handle.lengths))
