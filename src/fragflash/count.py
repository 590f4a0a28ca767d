"""Peak x barcode count matrix.

Peaks are indexed per chromosome; every grouped fragment range that overlaps
exactly one peak adds one count per barcode observed on that range. Ranges
overlapping zero or several peaks are dropped rather than split.
"""

from __future__ import annotations

import bisect
import itertools
import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
from scipy.io import mmwrite
from scipy.sparse import coo_matrix

from .barcode import u64_to_cb_string
from .codec import iter_fragments
from .config import CountMatrixConfig
from .errors import FatalInputError, require_file
from .models import BarcodeFragment, Interval, PeakFragment
from .utils import ensure_outdir, progress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeakIndex:
    """Per-chromosome peak lookup (half-open intervals, sorted by start)."""

    starts: List[int]
    ends: List[int]
    max_end: List[int]  # running max of ends, for early termination
    peak_ids: List[int]

    @classmethod
    def build(cls, peaks: Iterable[Tuple[int, Interval]]) -> "PeakIndex":
        ordered = sorted(peaks, key=lambda p: (p[1].start, p[1].end))
        starts = [iv.start for _, iv in ordered]
        ends = [iv.end for _, iv in ordered]
        running = list(itertools.accumulate(ends, max))
        return cls(starts=starts, ends=ends, max_end=running, peak_ids=[pid for pid, _ in ordered])

    def find(self, start: int, end: int) -> List[int]:
        """Ids of peaks overlapping [start, end)."""
        hits: List[int] = []
        i = bisect.bisect_left(self.starts, end) - 1
        while i >= 0 and self.max_end[i] > start:
            if self.ends[i] > start:
                hits.append(self.peak_ids[i])
            i -= 1
        return hits


@dataclass
class CountStats:
    total_ranges: int = 0
    assigned_ranges: int = 0
    unassigned_ranges: int = 0
    ambiguous_ranges: int = 0
    total_counts: int = 0
    peaks_total: int = 0
    peaks_kept: int = 0
    barcodes_kept: int = 0


@dataclass
class CountMatrix:
    peaks: List[Tuple[int, Interval]]  # (chr, interval), row order
    barcodes: List[int]  # packed barcodes, column order
    rows: np.ndarray
    cols: np.ndarray
    data: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.peaks), len(self.barcodes)

    def to_coo(self) -> coo_matrix:
        return coo_matrix((self.data, (self.rows, self.cols)), shape=self.shape)


class CountMatrixBuilder:
    def __init__(self, config: CountMatrixConfig = CountMatrixConfig()) -> None:
        self.config = config
        self.stats = CountStats()

    @staticmethod
    def index_peaks(peaks: Iterable[PeakFragment]) -> Tuple[List[Tuple[int, Interval]], Dict[int, PeakIndex]]:
        peak_list: List[Tuple[int, Interval]] = []
        by_chr: Dict[int, List[Tuple[int, Interval]]] = {}
        for peak in peaks:
            pid = len(peak_list)
            iv = Interval(peak.start, peak.end)
            peak_list.append((peak.chr, iv))
            by_chr.setdefault(peak.chr, []).append((pid, iv))
        return peak_list, {chrom: PeakIndex.build(lst) for chrom, lst in by_chr.items()}

    def build(self, peaks: Iterable[PeakFragment], frags: Iterable[BarcodeFragment]) -> CountMatrix:
        """Assemble the matrix from peaks and all-barcodes grouped fragments (sorted by chr)."""
        peak_list, index = self.index_peaks(peaks)
        self.stats.peaks_total = len(peak_list)

        counts: Dict[int, Counter] = {}
        seen_chroms = set()
        for chrom, chr_group in itertools.groupby(frags, key=lambda f: f.chr):
            seen_chroms.add(chrom)
            peak_index = index.get(chrom)
            if peak_index is None:
                logger.debug("No peaks on chromosome %d; skipping its fragments", chrom)
            for (start, end), ranged in itertools.groupby(chr_group, key=lambda f: (f.start, f.end)):
                self.stats.total_ranges += 1
                cbs = [f.cb for f in ranged]
                hits = peak_index.find(start, end) if peak_index is not None else []
                if len(hits) != 1:
                    if hits:
                        self.stats.ambiguous_ranges += 1
                    else:
                        self.stats.unassigned_ranges += 1
                    continue
                self.stats.assigned_ranges += 1
                row = counts.setdefault(hits[0], Counter())
                row.update(cbs)
                self.stats.total_counts += len(cbs)

        missing = sorted(set(index) - seen_chroms)
        if missing:
            raise FatalInputError(
                "Peak and fragment files disagree on chromosomes: peaks present on "
                f"{missing} which have no fragments. Were both derived from the same run?"
            )

        kept_peaks = [pid for pid in sorted(counts) if len(counts[pid]) >= self.config.min_cells]
        col_of: Dict[int, int] = {}
        rows: List[int] = []
        cols: List[int] = []
        data: List[int] = []
        for row_id, pid in enumerate(kept_peaks):
            for cb, n in counts[pid].items():
                col = col_of.setdefault(cb, len(col_of))
                rows.append(row_id)
                cols.append(col)
                data.append(n)

        self.stats.peaks_kept = len(kept_peaks)
        self.stats.barcodes_kept = len(col_of)
        barcodes = sorted(col_of, key=col_of.__getitem__)
        return CountMatrix(
            peaks=[peak_list[pid] for pid in kept_peaks],
            barcodes=barcodes,
            rows=np.asarray(rows, dtype=np.int64),
            cols=np.asarray(cols, dtype=np.int64),
            data=np.asarray(data, dtype=np.int64),
        )


def row_label(chrom: int, iv: Interval, chrom_names: Optional[Mapping[int, str]] = None) -> str:
    name = chrom_names.get(chrom, str(chrom)) if chrom_names is not None else str(chrom)
    return f"{name}_{iv.start}:{iv.end}"


def write_matrix(
    matrix: CountMatrix,
    outdir: str | Path,
    *,
    barcode_length: int,
    chrom_names: Optional[Mapping[int, str]] = None,
) -> Dict[str, Path]:
    """Write counts.mtx plus counts_rows.txt / counts_cols.txt into ``outdir``."""
    out = ensure_outdir(outdir)
    mtx_path = out / "counts.mtx"
    rows_path = out / "counts_rows.txt"
    cols_path = out / "counts_cols.txt"

    logger.info("Creating output MTX file %s with shape %s", mtx_path, matrix.shape)
    mmwrite(str(mtx_path), matrix.to_coo(), field="integer")

    with open(rows_path, "wt", encoding="utf-8") as fh:
        for chrom, iv in matrix.peaks:
            fh.write(row_label(chrom, iv, chrom_names) + "\n")
    with open(cols_path, "wt", encoding="utf-8") as fh:
        for cb in matrix.barcodes:
            fh.write(u64_to_cb_string(cb, barcode_length) + "\n")

    return {"mtx": mtx_path, "rows": rows_path, "cols": cols_path}


def count_matrix(
    *,
    peaks_path: str | Path,
    fragments_path: str | Path,
    outdir: str | Path,
    config: CountMatrixConfig = CountMatrixConfig(),
    chrom_names: Optional[Mapping[int, str]] = None,
    progress_bar: bool = True,
) -> Tuple[Dict[str, Path], CountStats]:
    peaks_p = require_file(peaks_path, "peak file")
    frags_p = require_file(fragments_path, "grouped fragment file")
    logger.info("Counting fragments of %s in peaks of %s", frags_p, peaks_p)

    builder = CountMatrixBuilder(config)
    frags = progress(iter_fragments(frags_p, BarcodeFragment), desc="Counting", enabled=progress_bar)
    matrix = builder.build(iter_fragments(peaks_p, PeakFragment), frags)

    s = builder.stats
    logger.info(
        "Found total %d counts in the matrix (%d ranges assigned, %d ambiguous, %d outside peaks)",
        s.total_counts,
        s.assigned_ranges,
        s.ambiguous_ranges,
        s.unassigned_ranges,
    )
    logger.info("Kept %d of %d peaks with >= %d cells", s.peaks_kept, s.peaks_total, config.min_cells)
    paths = write_matrix(matrix, outdir, barcode_length=config.barcode.length, chrom_names=chrom_names)
    return paths, s
