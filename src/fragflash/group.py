from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .codec import FragmentWriter, iter_fragments
from .errors import require_distinct_output, require_file
from .models import BarcodeFragment, Fragment, SupportFragment
from .utils import derived_path, progress

logger = logging.getLogger(__name__)

GROUP_MODES = ("count", "all-barcodes")


@dataclass
class GroupStats:
    total_fragments: int = 0
    total_classes: int = 0
    total_deduplicated: int = 0
    chromosomes: int = 0


def group_chromosome(
    chrom: int,
    frags: Iterable[Fragment],
    *,
    mode: str,
    stats: GroupStats,
) -> Iterator[Fragment]:
    """Collapse fragments of one chromosome sharing an exact (start, end).

    Keys are flushed in ascending (start, end) order so the output stays sorted.
    """
    joint_class: Dict[Tuple[int, int], List[int]] = {}
    for frag in frags:
        joint_class.setdefault((frag.start, frag.end), []).append(frag.cb)

    for (start, end) in sorted(joint_class):
        cbs = joint_class[(start, end)]
        stats.total_fragments += len(cbs)
        distinct = sorted(set(cbs))
        stats.total_classes += 1
        stats.total_deduplicated += len(distinct)

        if mode == "count":
            yield SupportFragment(chr=chrom, start=start, end=end, cb=len(distinct))
        else:
            for cb in distinct:
                yield BarcodeFragment(chr=chrom, start=start, end=end, cb=cb)


def group_fragments(
    frags: Iterable[Fragment], *, mode: str = "count", stats: Optional[GroupStats] = None
) -> Iterator[Fragment]:
    """Group a (chr, start)-sorted fragment stream chromosome by chromosome."""
    if mode not in GROUP_MODES:
        raise ValueError(f"Unknown group mode {mode!r}; expected one of {GROUP_MODES}")
    stats = stats if stats is not None else GroupStats()
    for chrom, chr_group in itertools.groupby(frags, key=lambda f: f.chr):
        stats.chromosomes += 1
        logger.debug("Grouping chromosome %d", chrom)
        yield from group_chromosome(chrom, chr_group, mode=mode, stats=stats)


def group_file(
    *,
    in_path: str | Path,
    out_path: Optional[str | Path] = None,
    mode: str = "count",
    progress_bar: bool = True,
) -> Tuple[Path, GroupStats]:
    in_p = require_file(in_path, "fragment file")
    out_p = Path(out_path) if out_path is not None else derived_path(in_p, ".grouped")
    require_distinct_output(in_p, out_p)
    logger.info("Creating grouped fragment file %s (mode=%s)", out_p, mode)

    stats = GroupStats()
    frags = progress(iter_fragments(in_p, BarcodeFragment), desc="Grouping", enabled=progress_bar)
    with FragmentWriter(out_p) as out:
        for frag in group_fragments(frags, mode=mode, stats=stats):
            out.write(frag)

    logger.info(
        "Saw total %d fragments and grouped into %d classes w/ %d deduplicated fragments",
        stats.total_fragments,
        stats.total_classes,
        stats.total_deduplicated,
    )
    return out_p, stats
