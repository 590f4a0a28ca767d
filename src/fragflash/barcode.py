"""2-bit cell-barcode packing.

A barcode of length L is packed into an int by scanning it from the last
nucleotide backwards: the base at reverse index ``idx`` occupies bits
``2*idx`` and ``2*idx + 1``. A and N both map to ``00`` so the packing is
lossy for N; it is an encoding, not a hash.
"""

from __future__ import annotations

from typing import Iterator

from .errors import FatalConfigError

_NT_TO_BITS = {"A": 0, "N": 0, "C": 1, "G": 2, "T": 3}
_BITS_TO_NT = "ACGT"
_COMPLEMENT = str.maketrans("ACGTNacgtn", "TGCANtgcan")


def cb_string_to_u64(cb: str | bytes) -> int:
    """Pack a nucleotide string into its 2-bit integer form."""
    if isinstance(cb, bytes):
        cb = cb.decode("ascii")
    if len(cb) > 32:
        raise FatalConfigError(f"barcode longer than 32 nt cannot be packed: {cb!r}")
    cb_id = 0
    for idx, nt in enumerate(reversed(cb.upper())):
        bits = _NT_TO_BITS.get(nt)
        if bits is None:
            raise FatalConfigError(f"unknown nucleotide {nt!r} in barcode {cb!r}")
        cb_id |= bits << (idx * 2)
    return cb_id


def u64_to_cb_string(cb_id: int, length: int) -> str:
    """Expand a packed barcode back into ``length`` nucleotides."""
    if cb_id < 0 or cb_id >> (2 * length):
        raise FatalConfigError(f"value {cb_id} does not fit a {length}-nt barcode")
    chars = []
    for idx in range(length - 1, -1, -1):
        chars.append(_BITS_TO_NT[(cb_id >> (idx * 2)) & 3])
    return "".join(chars)


def reverse_complement(seq: str) -> str:
    return seq.translate(_COMPLEMENT)[::-1]


def barcode_mask(length: int) -> int:
    return (1 << (2 * length)) - 1


def bitwise_complement(cb_id: int, length: int) -> int:
    """Complement every base (A<->T, C<->G) without reversing."""
    return ~cb_id & barcode_mask(length)


def hamming_neighbors(cb_id: int, length: int) -> Iterator[int]:
    """Yield the 3 * ``length`` single-substitution neighbours of a packed barcode."""
    for idx in range(length):
        offset = idx * 2
        current = (cb_id >> offset) & 3
        cleared = cb_id & ~(3 << offset)
        for bits in range(4):
            if bits != current:
                yield cleared | (bits << offset)
