from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Tuple

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)

_FILTER_OUTCOMES: List[Tuple[str, str]] = [
    ("num_passed", "Passed"),
    ("unmap_skip", "Unmapped"),
    ("mm_reads", "Multi-mapping"),
    ("mito_skip", "Mitochondrial"),
    ("mapq_skip", "Low MAPQ"),
    ("unpaired_skip", "Unpaired"),
    ("num_chimeric", "Chimeric"),
    ("cb_skip", "No barcode tag"),
]


def plot_filter_outcomes(
    *,
    stats: Dict[str, int],
    out_png: str | Path,
    title: str = "Read-group filter outcomes",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = [label for _, label in _FILTER_OUTCOMES]
    values = [int(stats.get(key, 0)) for key, _ in _FILTER_OUTCOMES]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Read groups")
    plt.title(title)
    plt.xticks(rotation=30, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_chimeric_breakdown(
    *,
    stats: Dict[str, int],
    out_png: str | Path,
    title: str = "Chimeric pairs by reason",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    keys = ["chimeric_tids", "chimeric_strand", "chimeric_max_distance", "chimeric_min_distance"]
    labels = ["Different contigs", "Strand", "Too far", "Too close"]
    values = [int(stats.get(k, 0)) for k in keys]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Read groups")
    plt.title(title)
    plt.xticks(rotation=15, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
