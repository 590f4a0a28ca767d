"""Pileup-based peak calling on count-mode grouped fragments.

Per chromosome:

1. Overlapping grouped fragments are merged into regions.
2. Regions whose total support is below ``min_region_support`` are noise.
3. Each surviving region is rasterised into a per-base pileup. Positions are
   visited from the highest pileup down (ties by position); a fixed window
   centred on the position becomes a peak when little of its mass sits in the
   two outer eighths ("shoulders"). Accepted windows are claimed; rejected
   positions are not revisited.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from .codec import FragmentWriter, iter_fragments
from .config import PeakCallerConfig
from .errors import require_distinct_output, require_file
from .models import Feature, Interval, PeakFragment, SupportFragment
from .utils import derived_path, progress

logger = logging.getLogger(__name__)


@dataclass
class PeakStats:
    total_groups: int = 0
    total_regions: int = 0
    noise_regions: int = 0
    noise_mass: int = 0
    accepted_regions: int = 0
    rejected_windows: int = 0
    total_peaks: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def merge_regions(features: Iterable[Feature]) -> Iterator[Tuple[Interval, List[Feature]]]:
    """Sweep start-sorted features into maximal overlapping regions."""
    region_start = region_end = -1
    members: List[Feature] = []
    for feat in features:
        if members and feat.start < region_end:
            region_end = max(region_end, feat.end)
            members.append(feat)
            continue
        if members:
            yield Interval(region_start, region_end), members
        region_start, region_end = feat.start, feat.end
        members = [feat]
    if members:
        yield Interval(region_start, region_end), members


def build_pileup(region: Interval, members: Iterable[Feature]) -> np.ndarray:
    """Per-base sum of member counts over ``region``."""
    span = region.end - region.start
    delta = np.zeros(span + 1, dtype=np.int64)
    for feat in members:
        delta[feat.start - region.start] += feat.count
        delta[feat.end - region.start] -= feat.count
    return np.cumsum(delta[:-1])


def shoulder_ratio(prefix: np.ndarray, w0: int, w1: int, shoulder: int) -> Tuple[float, int]:
    """(shoulder mass / window mass, window mass) for window [w0, w1).

    ``prefix`` is the zero-led cumulative pileup; window bounds may fall
    outside the region, where the pileup is zero.
    """
    span = prefix.shape[0] - 1

    def mass(a: int, b: int) -> int:
        a = min(max(a, 0), span)
        b = min(max(b, 0), span)
        return int(prefix[b] - prefix[a])

    total = mass(w0, w1)
    if total <= 0:
        return 1.0, 0
    outer = mass(w0, w0 + shoulder) + mass(w1 - shoulder, w1)
    return outer / total, total


class PeakCaller:
    def __init__(self, config: PeakCallerConfig) -> None:
        self.config = config
        self.stats = PeakStats()

    def extract_peaks(self, region: Interval, pileup: np.ndarray) -> List[Tuple[int, int, int]]:
        """Greedy non-overlapping window selection inside one region.

        Returns (start, end, confidence) in genomic coordinates.
        """
        cfg = self.config
        span = pileup.shape[0]
        half = cfg.window_size // 2
        claimed = np.zeros(span, dtype=bool)
        prefix = np.concatenate(([0], np.cumsum(pileup)))

        peaks: List[Tuple[int, int, int]] = []
        # stable sort on the negated pileup keeps lower positions first among ties
        for pos in np.argsort(-pileup, kind="stable"):
            pos = int(pos)
            if pileup[pos] < cfg.min_pileup:
                break
            if claimed[pos]:
                continue

            w0 = pos - half
            w1 = w0 + cfg.window_size
            lo, hi = max(w0, 0), min(w1, span)
            if claimed[lo:hi].any():
                self.stats.rejected_windows += 1
                continue

            ratio, _ = shoulder_ratio(prefix, w0, w1, cfg.shoulder_size)
            if ratio > cfg.max_shoulder_ratio:
                self.stats.rejected_windows += 1
                continue

            claimed[lo:hi] = True
            confidence = int(round(100.0 * (1.0 - ratio)))
            peaks.append((region.start + lo, region.start + hi, confidence))
        return peaks

    def call_chromosome(self, chrom: int, frags: Iterable[SupportFragment]) -> List[PeakFragment]:
        features = []
        for frag in frags:
            self.stats.total_groups += 1
            features.append(Feature(start=frag.start, end=frag.end, count=frag.cb))
        features.sort(key=lambda f: (f.start, f.end))

        out: List[PeakFragment] = []
        for region, members in merge_regions(features):
            self.stats.total_regions += 1
            support = sum(m.count for m in members)
            if support < self.config.min_region_support:
                self.stats.noise_regions += 1
                self.stats.noise_mass += support
                continue
            self.stats.accepted_regions += 1

            pileup = build_pileup(region, members)
            for start, end, confidence in self.extract_peaks(region, pileup):
                out.append(PeakFragment(chr=chrom, start=start, end=end, cb=confidence))

        out.sort(key=lambda p: p.start)
        self.stats.total_peaks += len(out)
        return out

    def call(self, frags: Iterable[SupportFragment]) -> Iterator[PeakFragment]:
        for chrom, chr_group in itertools.groupby(frags, key=lambda f: f.chr):
            logger.debug("Calling peaks on chromosome %d", chrom)
            yield from self.call_chromosome(chrom, chr_group)


def call_peaks(
    *,
    in_path: str | Path,
    out_path: Optional[str | Path] = None,
    config: PeakCallerConfig = PeakCallerConfig(),
    progress_bar: bool = True,
) -> Tuple[Path, PeakStats]:
    """Call peaks from a count-mode grouped file and write them as PeakFragments."""
    in_p = require_file(in_path, "grouped fragment file")
    out_p = Path(out_path) if out_path is not None else derived_path(in_p, ".peaks")
    require_distinct_output(in_p, out_p)
    logger.info("Creating peak file %s", out_p)

    caller = PeakCaller(config)
    frags = progress(iter_fragments(in_p, SupportFragment), desc="Calling peaks", enabled=progress_bar)
    with FragmentWriter(out_p) as out:
        for peak in caller.call(frags):
            out.write(peak)

    s = caller.stats
    logger.info(
        "Found %d peaks from %d groups in %d regions (%d noise regions with %d support discarded)",
        s.total_peaks,
        s.total_groups,
        s.total_regions,
        s.noise_regions,
        s.noise_mass,
    )
    return out_p, s
