"""Whitelist barcode correction.

Three acceptance policies are supported and none is the default; callers
must pick one:

- ``exact``: the fragment barcode is in the whitelist.
- ``complement``: exact, or the bitwise complement of the barcode is.
- ``edit1``: exact, or exactly one single-substitution neighbour is.

Accepted fragments are relabelled to the whitelist barcode they matched.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from .barcode import bitwise_complement, cb_string_to_u64, hamming_neighbors, reverse_complement
from .codec import FragmentWriter, iter_fragments
from .config import PROGRESS_EVERY, BarcodeConfig
from .errors import FatalConfigError, require_distinct_output, require_file
from .models import BarcodeFragment
from .utils import derived_path, open_textmaybe_gzip, percent, progress

logger = logging.getLogger(__name__)


class CorrectionPolicy(str, enum.Enum):
    EXACT = "exact"
    COMPLEMENT = "complement"
    EDIT1 = "edit1"


def load_whitelist(
    path: str | Path,
    *,
    barcode: BarcodeConfig = BarcodeConfig(),
    forward: bool = True,
) -> Set[int]:
    """Read a newline-delimited (optionally gzipped) whitelist into packed barcodes.

    forward:
        If False, every entry is reverse-complemented before packing
        (whitelists listed in the opposite read orientation).
    """
    p = require_file(path, "whitelist")
    out: Set[int] = set()
    with open_textmaybe_gzip(p, "rt") as fh:
        for lineno, line in enumerate(fh, start=1):
            cb = line.strip()
            if not cb:
                continue
            if len(cb) != barcode.length:
                raise FatalConfigError(
                    f"{p}:{lineno}: whitelist barcode {cb!r} has length {len(cb)}, expected {barcode.length}"
                )
            if not forward:
                cb = reverse_complement(cb)
            out.add(cb_string_to_u64(cb))
    if not out:
        raise FatalConfigError(f"Whitelist {p} contains no barcodes")
    logger.info("Loaded %d whitelist barcodes from %s", len(out), p)
    return out


@dataclass
class CorrectionStats:
    total: int = 0
    exact: int = 0
    corrected: int = 0
    ambiguous: int = 0
    rejected: int = 0

    @property
    def accepted(self) -> int:
        return self.exact + self.corrected

    def to_dict(self) -> Dict[str, float]:
        return {
            "total": self.total,
            "exact": self.exact,
            "corrected": self.corrected,
            "ambiguous": self.ambiguous,
            "rejected": self.rejected,
            "accepted": self.accepted,
            "percent_accepted": percent(self.accepted, self.total),
        }


@dataclass
class BarcodeCorrector:
    whitelist: Set[int]
    policy: CorrectionPolicy
    barcode: BarcodeConfig = BarcodeConfig()
    stats: CorrectionStats = field(default_factory=CorrectionStats)

    def __post_init__(self) -> None:
        if not isinstance(self.policy, CorrectionPolicy):
            try:
                self.policy = CorrectionPolicy(self.policy)
            except ValueError:
                choices = ", ".join(p.value for p in CorrectionPolicy)
                raise FatalConfigError(
                    f"Unknown correction policy {self.policy!r}; choose one of: {choices}"
                ) from None

    def match(self, cb: int) -> Optional[int]:
        """Whitelist barcode accepted for ``cb`` under the policy, or None."""
        if cb in self.whitelist:
            self.stats.exact += 1
            return cb

        if self.policy is CorrectionPolicy.COMPLEMENT:
            comp = bitwise_complement(cb, self.barcode.length)
            if comp in self.whitelist:
                self.stats.corrected += 1
                return comp
        elif self.policy is CorrectionPolicy.EDIT1:
            hits = [n for n in hamming_neighbors(cb, self.barcode.length) if n in self.whitelist]
            if len(hits) == 1:
                self.stats.corrected += 1
                return hits[0]
            if len(hits) > 1:
                self.stats.ambiguous += 1

        self.stats.rejected += 1
        return None

    def correct(self, frag: BarcodeFragment) -> Optional[BarcodeFragment]:
        self.stats.total += 1
        cb = self.match(frag.cb)
        if cb is None:
            return None
        return frag if cb == frag.cb else frag.with_cb(cb)


def correct_fragments(
    *,
    in_path: str | Path,
    out_path: Optional[str | Path],
    corrector: BarcodeCorrector,
    progress_bar: bool = True,
) -> Path:
    """Rewrite a fragment file keeping only whitelist-accepted barcodes."""
    in_p = require_file(in_path, "fragment file")
    out_p = Path(out_path) if out_path is not None else derived_path(in_p, ".corrected")
    require_distinct_output(in_p, out_p)
    logger.info("Creating barcode corrected fragment file %s (policy=%s)", out_p, corrector.policy.value)

    with FragmentWriter(out_p) as out:
        for frag in progress(iter_fragments(in_p, BarcodeFragment), desc="Correcting", enabled=progress_bar):
            fixed = corrector.correct(frag)
            if fixed is not None:
                out.write(fixed)
            if corrector.stats.total % PROGRESS_EVERY == 0:
                logger.info("Done processing %dM fragments", corrector.stats.total // PROGRESS_EVERY)

    s = corrector.stats
    logger.info(
        "Total fragments passed %d out of %d (%.2f%%): %d exact, %d corrected, %d ambiguous, %d rejected",
        s.accepted,
        s.total,
        percent(s.accepted, s.total),
        s.exact,
        s.corrected,
        s.ambiguous,
        s.rejected,
    )
    return out_p
