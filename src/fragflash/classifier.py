"""Alignment-pair -> fragment classification.

A read-name group (normally the two mates of one pair) runs through an ordered
filter chain. Each filter assumes its predecessors passed; the first filter
that fires increments exactly one counter in :class:`FragStats` and stops the
chain. Groups that pass everything become one :class:`BarcodeFragment`.
"""

from __future__ import annotations

import itertools
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pysam

from .barcode import cb_string_to_u64
from .codec import FragmentWriter
from .config import PROGRESS_EVERY, ClassifierConfig
from .errors import FatalConfigError, FatalInputError, require_distinct_output, require_file
from .models import BarcodeFragment, FragStats
from .utils import progress

logger = logging.getLogger(__name__)

_SOFT_CLIP = 4
_HARD_CLIP = 5


def soft_clips(aln: pysam.AlignedSegment) -> Tuple[int, int]:
    """Leading and trailing soft-clip lengths (hard clips are skipped over)."""
    cigar = aln.cigartuples or []
    ops = [(op, n) for op, n in cigar if op != _HARD_CLIP]
    leading = ops[0][1] if ops and ops[0][0] == _SOFT_CLIP else 0
    trailing = ops[-1][1] if len(ops) > 1 and ops[-1][0] == _SOFT_CLIP else 0
    return leading, trailing


def soft_clip_pos(aln: pysam.AlignedSegment) -> int:
    """Outer fragment coordinate of a read with its soft clips restored."""
    leading, trailing = soft_clips(aln)
    if aln.is_reverse:
        return int(aln.reference_end) + trailing
    return int(aln.reference_start) - leading


class BarcodeExtractor:
    """Pulls the packed cell barcode out of an alignment record."""

    requires_tag = False

    def __init__(self, length: int) -> None:
        self.length = length

    def __call__(self, aln: pysam.AlignedSegment) -> int:
        raise NotImplementedError


class ReadNameSuffixExtractor(BarcodeExtractor):
    """Barcode is the trailing ``length`` characters of the query name."""

    def __call__(self, aln: pysam.AlignedSegment) -> int:
        qname = aln.query_name or ""
        if len(qname) < self.length:
            raise FatalInputError(f"read name {qname!r} is shorter than the barcode length {self.length}")
        return cb_string_to_u64(qname[-self.length :])


class TagExtractor(BarcodeExtractor):
    """Barcode is the first ``length`` characters of an auxiliary tag (10x ``CB:Z``), ``-N`` suffix removed."""

    requires_tag = True

    def __init__(self, length: int, tag: str = "CB") -> None:
        super().__init__(length)
        self.tag = tag

    def __call__(self, aln: pysam.AlignedSegment) -> int:
        # 10x appends a GEM-well suffix ("-1")
        value = str(aln.get_tag(self.tag)).split("-", 1)[0]
        if len(value) < self.length:
            raise FatalInputError(
                f"read {aln.query_name!r}: {self.tag} tag {value!r} is shorter than the barcode length {self.length}"
            )
        try:
            return cb_string_to_u64(value[: self.length])
        except FatalConfigError as err:
            raise FatalInputError(f"read {aln.query_name!r}: bad {self.tag} tag: {err}") from err


def make_extractor(source: str, config: ClassifierConfig) -> BarcodeExtractor:
    if source == "name":
        return ReadNameSuffixExtractor(config.barcode.length)
    if source == "tag":
        return TagExtractor(config.barcode.length, config.barcode_tag)
    raise FatalConfigError(f"Unknown barcode source: {source!r} (expected 'name' or 'tag')")


class AlignmentClassifier:
    """Ordered filter chain over one read-name group.

    Parameters
    ----------
    config:
        Thresholds and Tn5 offsets.
    extractor:
        Barcode extraction strategy, fixed for the whole run.
    mito_tid:
        Reference id of the mitochondrial contig, or None to keep every contig.
    stats_only:
        Update counters but never emit fragments.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        extractor: BarcodeExtractor,
        *,
        mito_tid: Optional[int] = None,
        stats_only: bool = False,
    ) -> None:
        self.config = config
        self.extractor = extractor
        self.mito_tid = mito_tid
        self.stats_only = stats_only
        self.stats = FragStats()

    def _is_unmapped(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        no_map = sum(1 for aln in alignments if aln.is_unmapped)
        if no_map == 0:
            return False
        self.stats.unmap_skip += 1
        if no_map != len(alignments):
            self.stats.unmap_orphan += 1
        return True

    def _is_multi_mapping(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        tag = self.config.secondary_tag
        if len(alignments) > 2 or alignments[0].has_tag(tag) or alignments[-1].has_tag(tag):
            self.stats.mm_reads += 1
            return True
        return False

    def _is_mitochondrial(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        if self.mito_tid is not None and alignments[0].reference_id == self.mito_tid:
            self.stats.mito_skip += 1
            return True
        return False

    def _is_low_quality(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        if min(aln.mapping_quality for aln in alignments) < self.config.min_mapq:
            self.stats.mapq_skip += 1
            return True
        return False

    def _is_unpaired(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        if len(alignments) != 2:
            self.stats.unpaired_skip += 1
            return True
        return False

    def _is_chimeric(self, up: pysam.AlignedSegment, down: pysam.AlignedSegment) -> bool:
        if up.reference_id != down.reference_id:
            self.stats.chimeric_tids += 1
            return True
        # after canonicalisation the upstream mate must be forward, the other reverse
        if up.is_reverse or not down.is_reverse:
            self.stats.chimeric_strand += 1
            return True
        if abs(up.reference_start - down.reference_start) > self.config.mate_max_distance:
            self.stats.chimeric_max_distance += 1
            return True
        if soft_clip_pos(up) + self.config.mate_min_distance > soft_clip_pos(down):
            self.stats.chimeric_min_distance += 1
            return True
        return False

    def _is_missing_barcode(self, alignments: Sequence[pysam.AlignedSegment]) -> bool:
        if not self.extractor.requires_tag:
            return False
        tag = getattr(self.extractor, "tag", self.config.barcode_tag)
        if all(aln.has_tag(tag) for aln in alignments):
            return False
        self.stats.cb_skip += 1
        return True

    def classify(self, alignments: Sequence[pysam.AlignedSegment]) -> Optional[BarcodeFragment]:
        """Run the filter chain on one read-name group."""
        if len(alignments) == 0:
            raise FatalInputError("empty alignment group passed to the classifier")

        self.stats.total_reads += 1
        if (
            self._is_unmapped(alignments)
            or self._is_multi_mapping(alignments)
            or self._is_mitochondrial(alignments)
            or self._is_low_quality(alignments)
            or self._is_unpaired(alignments)
        ):
            return None

        up, down = alignments[0], alignments[-1]
        if up.is_reverse:
            up, down = down, up

        if self._is_chimeric(up, down) or self._is_missing_barcode(alignments):
            return None

        start = max(0, soft_clip_pos(up) + self.config.tn5_left_offset)
        end = max(0, soft_clip_pos(down) - self.config.tn5_right_offset)
        if start >= end:
            # only reachable when clamping at 0 collapses the pair
            self.stats.chimeric_min_distance += 1
            return None
        if self.stats_only:
            return None
        return BarcodeFragment(chr=int(up.reference_id), start=start, end=end, cb=self.extractor(up))


def group_by_name(alignments: Iterable[pysam.AlignedSegment]) -> Iterator[List[pysam.AlignedSegment]]:
    """Group consecutive records sharing a query name (name-sorted/grouped BAM)."""
    for _, grp in itertools.groupby(alignments, key=lambda aln: aln.query_name):
        yield list(grp)


def resolve_mito_tid(bam: pysam.AlignmentFile, mito_name: Optional[str]) -> Optional[int]:
    if not mito_name:
        return None
    tid = bam.get_tid(mito_name)
    if tid < 0:
        raise FatalConfigError(
            f"Mitochondrial contig {mito_name!r} not found in BAM header. "
            "Use --mito-name to set it (or --mito-name '' to disable)."
        )
    logger.info("Using %s as mitochondrial chromosome with id %d", mito_name, tid)
    return tid


def reference_names(bam_path: str | Path) -> Dict[int, str]:
    """Reference id -> name table from a BAM header."""
    with pysam.AlignmentFile(str(require_file(bam_path, "BAM file")), "rb") as bam:
        return {tid: name for tid, name in enumerate(bam.references)}


def filter_bam(
    *,
    bam_path: str | Path,
    out_path: Optional[str | Path],
    config: ClassifierConfig,
    barcode_source: str = "name",
    stats_only: bool = False,
    threads: int = 1,
    progress_bar: bool = True,
) -> FragStats:
    """Classify every read-name group of a BAM and write the passing fragments."""
    t0 = time.time()
    bam_p = require_file(bam_path, "BAM file")
    if out_path is None and not stats_only:
        raise FatalConfigError("An output path is required unless running in stats-only mode")
    if out_path is not None:
        require_distinct_output(bam_p, Path(out_path))

    extractor = make_extractor(barcode_source, config)
    writer: Optional[FragmentWriter] = None

    with pysam.AlignmentFile(str(bam_p), "rb", threads=threads) as bam:
        classifier = AlignmentClassifier(
            config,
            extractor,
            mito_tid=resolve_mito_tid(bam, config.mito_name),
            stats_only=stats_only,
        )
        if not stats_only:
            writer = FragmentWriter(out_path)  # type: ignore[arg-type]
            logger.info("Writing fragments to %s", out_path)

        try:
            groups = progress(
                group_by_name(bam.fetch(until_eof=True)),
                desc="Filtering read groups",
                unit="pair",
                enabled=progress_bar,
            )
            for alignments in groups:
                frag = classifier.classify(alignments)
                if classifier.stats.total_reads % PROGRESS_EVERY == 0:
                    logger.info("Done processing %dM read groups", classifier.stats.total_reads // PROGRESS_EVERY)
                if frag is not None and writer is not None:
                    writer.write(frag)
                    classifier.stats.fragments_written += 1
        finally:
            if writer is not None:
                writer.close()

    stats = classifier.stats
    for line in stats.summary_lines():
        logger.info(line)
    logger.info("Filtering finished in %.1fs", time.time() - t0)
    return stats
