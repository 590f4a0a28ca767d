from __future__ import annotations

import gzip
import random
from pathlib import Path
from typing import Dict, List, Optional

import pysam

from .utils import ensure_outdir, write_json

READ_LEN = 50

_FLAG_PAIRED = 0x1
_FLAG_PROPER = 0x2
_FLAG_UNMAPPED = 0x4
_FLAG_MATE_UNMAPPED = 0x8
_FLAG_REVERSE = 0x10
_FLAG_MATE_REVERSE = 0x20
_FLAG_READ1 = 0x40
_FLAG_READ2 = 0x80


def _random_barcode(rng: random.Random, length: int = 16) -> str:
    return "".join(rng.choice("ACGT") for _ in range(length))


def _substitute_last(cb: str) -> str:
    last = cb[-1]
    for alt in "ACGT":
        if alt != last:
            return cb[:-1] + alt
    return cb


def make_segment(
    name: str,
    *,
    tid: int,
    start0: int,
    reverse: bool = False,
    read1: bool = True,
    mapq: int = 60,
    unmapped: bool = False,
    cigar: Optional[List[tuple]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> pysam.AlignedSegment:
    """Build one paired-end alignment record."""
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = "A" * READ_LEN
    flag = _FLAG_PAIRED | (_FLAG_READ1 if read1 else _FLAG_READ2)
    if unmapped:
        flag |= _FLAG_UNMAPPED
    else:
        flag |= _FLAG_PROPER
    if reverse:
        flag |= _FLAG_REVERSE
    else:
        flag |= _FLAG_MATE_REVERSE
    a.flag = flag
    a.reference_id = tid
    a.reference_start = start0
    a.mapping_quality = 0 if unmapped else mapq
    if not unmapped:
        a.cigartuples = cigar if cigar is not None else [(0, READ_LEN)]
    a.query_qualities = pysam.qualitystring_to_array("I" * READ_LEN)
    for key, value in (tags or {}).items():
        a.set_tag(key, value, value_type="Z")
    return a


def make_pair(
    name: str,
    *,
    tid: int,
    start0: int,
    length: int,
    mapq: int = 60,
    mate_tid: Optional[int] = None,
) -> List[pysam.AlignedSegment]:
    """Forward read at ``start0`` and a reverse mate ending at ``start0 + length``."""
    fwd = make_segment(name, tid=tid, start0=start0, mapq=mapq)
    rev = make_segment(
        name,
        tid=tid if mate_tid is None else mate_tid,
        start0=start0 + length - READ_LEN,
        reverse=True,
        read1=False,
        mapq=mapq,
    )
    return [fwd, rev]


def make_toy_data(*, outdir: str | Path, n_barcodes: int = 12) -> Dict[str, str]:
    """Create a tiny name-grouped BAM and a matching whitelist for demos/tests.

    The BAM holds one strong accessible site on chr1 (``n_barcodes`` cells,
    three pairs each, plus one PCR duplicate), a weak site on chr2 and one
    pair for each filter outcome (unmapped, orphan, mitochondrial, low MAPQ,
    chimeric, off-whitelist).

    Returns
    -------
    dict
        Paths to the generated files and the barcodes used.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(7)
    barcodes = sorted({_random_barcode(rng) for _ in range(n_barcodes)})

    header = {
        "HD": {"VN": "1.6", "SO": "queryname"},
        "SQ": [
            {"SN": "chr1", "LN": 50_000},
            {"SN": "chr2", "LN": 50_000},
            {"SN": "chrM", "LN": 16_569},
        ],
    }

    groups: List[List[pysam.AlignedSegment]] = []
    for b, cb in enumerate(barcodes):
        for k in range(3):
            groups.append(make_pair(f"site1_{b}_{k}:{cb}", tid=0, start0=1000 + 5 * k + b, length=180 + 4 * b))
    for k in range(2):
        groups.append(make_pair(f"site2_{k}:{barcodes[k]}", tid=1, start0=20_000 + k, length=150))

    cb0 = barcodes[0]
    # PCR duplicate of site1_0_0: same coordinates and barcode
    groups.append(make_pair(f"dup_0:{cb0}", tid=0, start0=1000, length=180))
    groups.append(make_pair(f"offlist_0:{_substitute_last(cb0)}", tid=0, start0=1010, length=200))
    groups.append(make_pair(f"mito_0:{cb0}", tid=2, start0=500, length=200))
    groups.append(make_pair(f"lowq_0:{cb0}", tid=0, start0=3000, length=200, mapq=5))
    groups.append(make_pair(f"chimeric_0:{cb0}", tid=0, start0=4000, length=200, mate_tid=1))
    groups.append(
        [
            make_segment(f"unmapped_0:{cb0}", tid=-1, start0=-1, unmapped=True),
            make_segment(f"unmapped_0:{cb0}", tid=-1, start0=-1, unmapped=True, read1=False),
        ]
    )
    orphan = make_pair(f"orphan_0:{cb0}", tid=0, start0=5000, length=200)
    orphan[1] = make_segment(f"orphan_0:{cb0}", tid=0, start0=5000, unmapped=True, read1=False)
    orphan[0].flag |= _FLAG_MATE_UNMAPPED
    groups.append(orphan)

    bam_path = outdir_p / "toy.bam"
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for grp in groups:
            for seg in grp:
                bam.write(seg)

    whitelist_path = outdir_p / "whitelist.txt.gz"
    with gzip.open(whitelist_path, "wt") as fh:
        for cb in barcodes:
            fh.write(cb + "\n")

    summary = {
        "bam": str(bam_path),
        "whitelist": str(whitelist_path),
        "outdir": str(outdir_p),
        "barcodes": ",".join(barcodes),
    }
    write_json(outdir_p / "toy_summary.json", summary)
    return summary
