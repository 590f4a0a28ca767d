"""Fixed-width binary fragment codec.

Wire format, shared by every stage: ``chr:u32 | start:u64 | end:u64 | cb:u64``,
little-endian, 28 bytes per record, no header and no padding.
"""

from __future__ import annotations

import logging
import os
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, Mapping, Optional, Type, TypeVar

import numpy as np

from .barcode import u64_to_cb_string
from .errors import FatalCorruptionError, require_file
from .models import Fragment

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Fragment)

RECORD = struct.Struct("<IQQQ")
RECORD_SIZE = RECORD.size  # 28

FRAGMENT_DTYPE = np.dtype(
    [("chr", "<u4"), ("start", "<u8"), ("end", "<u8"), ("cb", "<u8")]
)

TEXT_MODES = ("numeric", "barcode", "binary")

_READ_CHUNK = 4096


def encode(frag: Fragment) -> bytes:
    return RECORD.pack(frag.chr, frag.start, frag.end, frag.cb)


def decode(buf: bytes, cls: Type[F] = Fragment) -> F:  # type: ignore[assignment]
    if len(buf) != RECORD_SIZE:
        raise FatalCorruptionError(f"fragment record must be {RECORD_SIZE} bytes, got {len(buf)}")
    chrom, start, end, cb = RECORD.unpack(buf)
    return cls(chr=chrom, start=start, end=end, cb=cb)


def read_next(stream: BinaryIO, cls: Type[F] = Fragment) -> Optional[F]:  # type: ignore[assignment]
    """Return the next record, or None when the stream is cleanly exhausted.

    A partial record (1-27 bytes) raises FatalCorruptionError.
    """
    buf = stream.read(RECORD_SIZE)
    if not buf:
        return None
    # Buffered streams may return short reads before EOF.
    while len(buf) < RECORD_SIZE:
        more = stream.read(RECORD_SIZE - len(buf))
        if not more:
            offset = None
            try:
                offset = stream.tell() - len(buf)
            except (OSError, ValueError):
                pass
            raise FatalCorruptionError(
                f"truncated fragment record ({len(buf)} of {RECORD_SIZE} bytes)",
                path=getattr(stream, "name", None),
                offset=offset,
            )
        buf += more
    return decode(buf, cls)


def iter_fragments(path: str | Path, cls: Type[F] = Fragment) -> Iterator[F]:  # type: ignore[assignment]
    """Stream records from a binary fragment file."""
    p = require_file(path, "fragment file")
    with open(p, "rb", buffering=RECORD_SIZE * _READ_CHUNK) as fh:
        while True:
            frag = read_next(fh, cls)
            if frag is None:
                return
            yield frag


class FragmentWriter:
    """Append fragments to a binary file; use as a context manager."""

    def __init__(self, path: str | Path, *, append: bool = False) -> None:
        self.path = Path(path)
        self.count = 0
        self._fh: BinaryIO = open(self.path, "ab" if append else "wb")

    def write(self, frag: Fragment) -> None:
        self._fh.write(encode(frag))
        self.count += 1

    def write_array(self, arr: np.ndarray) -> None:
        if arr.dtype != FRAGMENT_DTYPE:
            arr = arr.astype(FRAGMENT_DTYPE)
        self._fh.write(arr.tobytes())
        self.count += int(arr.shape[0])

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self) -> "FragmentWriter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def count_records(path: str | Path) -> int:
    """Record count derived from file size; raises on a partial trailing record."""
    p = require_file(path, "fragment file")
    size = os.path.getsize(p)
    if size % RECORD_SIZE:
        raise FatalCorruptionError(
            f"file size {size} is not a multiple of {RECORD_SIZE}", path=p, offset=size - size % RECORD_SIZE
        )
    return size // RECORD_SIZE


def load_partition(path: str | Path) -> np.ndarray:
    """Load a whole fragment file as a structured array (one chromosome partition)."""
    count_records(path)
    return np.fromfile(str(path), dtype=FRAGMENT_DTYPE)


def render_text(
    frag: Fragment,
    mode: str = "numeric",
    *,
    chrom_names: Optional[Mapping[int, str]] = None,
    barcode_length: int = 16,
) -> str:
    """Render one record as a BED-like tab-separated line (with trailing newline)."""
    if chrom_names is not None:
        chrom = chrom_names.get(frag.chr, str(frag.chr))
    else:
        chrom = str(frag.chr)

    if mode == "numeric":
        last = str(frag.cb)
    elif mode == "barcode":
        last = u64_to_cb_string(frag.cb, barcode_length)
    else:
        raise ValueError(f"Unknown text mode: {mode!r} (binary passthrough is not a text rendering)")
    return f"{chrom}\t{frag.start}\t{frag.end}\t{last}\n"
