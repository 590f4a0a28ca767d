from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, TextIO, TypeVar

from tqdm import tqdm

logger = logging.getLogger(__name__)

T = TypeVar("T")


def percent(num: float, denom: float) -> float:
    # Zero denominators report 0% rather than NaN.
    if denom == 0:
        return 0.0
    return 100.0 * float(num) / float(denom)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def derived_path(path: str | Path, suffix: str) -> Path:
    """``dir/sample.frag`` + ``.sorted`` -> ``dir/sample.sorted.frag``."""
    p = Path(path)
    ext = p.suffix or ".frag"
    return p.with_name(p.stem + suffix + ext)


def progress(
    iterable: Iterable[T],
    *,
    desc: str,
    unit: str = "rec",
    enabled: bool = True,
    total: Optional[int] = None,
) -> Iterator[T]:
    if not enabled:
        return iter(iterable)
    return iter(tqdm(iterable, desc=desc, unit=unit, total=total, unit_scale=True))
