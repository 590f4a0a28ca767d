from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, Mapping, Optional

from .codec import TEXT_MODES, count_records, iter_fragments, render_text
from .errors import FatalConfigError, require_distinct_output, require_file
from .models import Fragment
from .utils import progress

logger = logging.getLogger(__name__)


def text_output_path(in_path: str | Path) -> Path:
    p = Path(in_path)
    return p.with_name(p.stem + ".text.bed")


def convert_to_text(
    *,
    in_path: str | Path,
    out_path: Optional[str | Path] = None,
    mode: str = "numeric",
    chrom_names: Optional[Mapping[int, str]] = None,
    barcode_length: int = 16,
    progress_bar: bool = True,
) -> Path:
    """Render a binary fragment file as tab-separated text.

    mode:
        ``numeric`` (cb as an integer), ``barcode`` (cb decoded to nucleotides)
        or ``binary`` (byte-for-byte copy, for debugging).
    """
    if mode not in TEXT_MODES:
        raise FatalConfigError(f"Unknown text mode {mode!r}; expected one of {TEXT_MODES}")
    in_p = require_file(in_path, "fragment file")
    out_p = Path(out_path) if out_path is not None else text_output_path(in_p)
    require_distinct_output(in_p, out_p)
    logger.info("Creating text fragment file %s (mode=%s)", out_p, mode)

    if mode == "binary":
        count_records(in_p)
        shutil.copyfile(in_p, out_p)
        return out_p

    with open(out_p, "wt", encoding="utf-8") as fh:
        for frag in progress(iter_fragments(in_p), desc="Converting", enabled=progress_bar):
            fh.write(render_text(frag, mode, chrom_names=chrom_names, barcode_length=barcode_length))
    return out_p


def fragment_stats(in_path: str | Path, *, progress_bar: bool = True) -> Dict[str, object]:
    """Record count plus per-chromosome record counts of a fragment file."""
    in_p = require_file(in_path, "fragment file")
    per_chr: Dict[int, int] = {}
    num_records = 0
    frag: Fragment
    for frag in progress(iter_fragments(in_p), desc="Counting records", enabled=progress_bar):
        num_records += 1
        per_chr[frag.chr] = per_chr.get(frag.chr, 0) + 1

    logger.info("Saw total %d records in %s", num_records, in_p)
    return {
        "path": str(in_p),
        "records": num_records,
        "chromosomes": len(per_chr),
        "records_per_chromosome": {str(k): v for k, v in sorted(per_chr.items())},
    }
