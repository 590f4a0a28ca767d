"""External sort of a fragment file by (chromosome, start).

Two full passes over the input: one to discover the chromosome ids, one to
route every record into a per-chromosome partition file. Each partition is
then sorted in memory and appended to the output, so peak memory is bounded
by the largest chromosome rather than the whole file.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set

import numpy as np

from .codec import FragmentWriter, count_records, iter_fragments, load_partition
from .errors import require_file
from .utils import derived_path, progress

logger = logging.getLogger(__name__)


def discover_chromosomes(path: str | Path, *, progress_bar: bool = False) -> Set[int]:
    """Distinct chromosome ids of the whole file (no early cut-off)."""
    chroms: Set[int] = set()
    for frag in progress(iter_fragments(path), desc="Scanning chromosomes", enabled=progress_bar):
        chroms.add(frag.chr)
    return chroms


def _partition_path(out_path: Path, chrom: int) -> Path:
    return out_path.with_name(f"{out_path.name}.part{chrom}")


def sort_partition(arr: np.ndarray) -> np.ndarray:
    # Stable on equal starts; ordering among them is not semantically relevant.
    return arr[np.argsort(arr["start"], kind="stable")]


def sort_fragments(
    in_path: str | Path,
    out_path: Optional[str | Path] = None,
    *,
    progress_bar: bool = True,
) -> Path:
    """Sort a binary fragment file by chromosome id, then start.

    Returns the output path (default ``<stem>.sorted<ext>`` next to the input).
    """
    in_p = require_file(in_path, "fragment file")
    out_p = Path(out_path) if out_path is not None else derived_path(in_p, ".sorted")
    num_records = count_records(in_p)

    logger.info("Finding unique chromosome ids in %s", in_p)
    chroms: List[int] = sorted(discover_chromosomes(in_p, progress_bar=progress_bar))
    logger.info("Found %d unique chromosome ids in %d records", len(chroms), num_records)

    part_paths: Dict[int, Path] = {c: _partition_path(out_p, c) for c in chroms}
    writers: Dict[int, FragmentWriter] = {}
    try:
        for chrom, p in part_paths.items():
            writers[chrom] = FragmentWriter(p)
        for frag in progress(
            iter_fragments(in_p), desc="Partitioning", total=num_records, enabled=progress_bar
        ):
            writers[frag.chr].write(frag)
        for w in writers.values():
            w.close()

        logger.info("Merging %d partitions into %s", len(chroms), out_p)
        with FragmentWriter(out_p) as out:
            for chrom in chroms:
                arr = load_partition(part_paths[chrom])
                out.write_array(sort_partition(arr))
                os.remove(part_paths[chrom])
                logger.debug("Chromosome %d: %d records", chrom, arr.shape[0])
    finally:
        for w in writers.values():
            w.close()
        for p in part_paths.values():
            if p.exists():
                p.unlink()

    if not chroms:
        logger.warning("Input %s is empty; wrote an empty sorted file", in_p)
    return out_p
