from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict

from .utils import percent


@dataclass(frozen=True)
class Fragment:
    """One 28-byte fragment record.

    Coordinates are 0-based half-open. The meaning of ``cb`` depends on the
    pipeline stage, so stages read and write one of the subclasses below
    instead of the bare record.

    Attributes
    ----------
    chr:
        Reference-sequence index from the BAM header (not a name).
    start, end:
        Tn5-adjusted fragment bounds, ``start < end``.
    cb:
        Stage-specific 64-bit payload.
    """

    chr: int
    start: int
    end: int
    cb: int

    def with_cb(self, cb: int) -> "Fragment":
        return type(self)(chr=self.chr, start=self.start, end=self.end, cb=cb)


@dataclass(frozen=True)
class BarcodeFragment(Fragment):
    """``cb`` is a 2-bit packed cell barcode (filter, correct, group --all-barcodes)."""


@dataclass(frozen=True)
class SupportFragment(Fragment):
    """``cb`` is the number of distinct barcodes supporting the range (group)."""

    @property
    def support(self) -> int:
        return self.cb


@dataclass(frozen=True)
class PeakFragment(Fragment):
    """``cb`` is the peak confidence score in [0, 100] (callpeak)."""

    @property
    def score(self) -> int:
        return self.cb


@dataclass(frozen=True)
class Feature:
    start: int
    end: int
    count: int


@dataclass(frozen=True)
class Interval:
    start: int
    end: int


@dataclass
class FragStats:
    """Counters of one alignment-filter run; read-only once the run is over."""

    total_reads: int = 0
    unmap_skip: int = 0
    unmap_orphan: int = 0
    mm_reads: int = 0
    mito_skip: int = 0
    mapq_skip: int = 0
    unpaired_skip: int = 0
    chimeric_tids: int = 0
    chimeric_strand: int = 0
    chimeric_max_distance: int = 0
    chimeric_min_distance: int = 0
    cb_skip: int = 0
    fragments_written: int = 0

    @property
    def num_chimeric(self) -> int:
        return (
            self.chimeric_tids
            + self.chimeric_strand
            + self.chimeric_max_distance
            + self.chimeric_min_distance
        )

    @property
    def num_skipped(self) -> int:
        return (
            self.unmap_skip
            + self.mm_reads
            + self.mito_skip
            + self.mapq_skip
            + self.unpaired_skip
            + self.num_chimeric
            + self.cb_skip
        )

    @property
    def num_passed(self) -> int:
        return self.total_reads - self.num_skipped

    def percent_total(self, num: int) -> float:
        return percent(num, self.total_reads)

    def to_dict(self) -> Dict[str, int]:
        out = asdict(self)
        out["num_chimeric"] = self.num_chimeric
        out["num_skipped"] = self.num_skipped
        out["num_passed"] = self.num_passed
        return out

    def summary_lines(self) -> list[str]:
        def row(label: str, n: int) -> str:
            return f"STATS: {label}: {n:,} ({self.percent_total(n):.2f}%)"

        return [
            f"STATS: Total Reads: {self.total_reads:,}",
            row("Unmapped skip", self.unmap_skip)
            + f" with {self.unmap_orphan:,} ({self.percent_total(self.unmap_orphan):.2f}%) orphan",
            row("MultiMapping Reads", self.mm_reads),
            row("Mitochondrial Reads", self.mito_skip),
            row("MAPQ skip", self.mapq_skip),
            row("Unpaired Reads", self.unpaired_skip),
            row("Chimeric Reads", self.num_chimeric),
            row("Missing barcode tag", self.cb_skip),
            row("Reads skipped", self.num_skipped),
        ]
