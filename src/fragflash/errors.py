"""Typed errors for fragflash.

Only fatal conditions are exceptions. Classification outcomes of the
alignment filter (unmapped, chimeric, ...) are counters in
:class:`fragflash.models.FragStats` and never raise.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class FragFlashError(RuntimeError):
    """Base class for all fatal fragflash errors."""


class FatalConfigError(FragFlashError, ValueError):
    """Missing input file, invalid configuration value or malformed whitelist entry."""


class FatalInputError(FragFlashError):
    """Input violates a precondition (e.g. an empty alignment group)."""


class FatalCorruptionError(FragFlashError):
    """A binary fragment file is truncated or otherwise malformed."""

    def __init__(self, message: str, *, path: Optional[str | Path] = None, offset: Optional[int] = None) -> None:
        details = message
        if path is not None:
            details += f" (file: {path}"
            if offset is not None:
                details += f", byte offset {offset}"
            details += ")"
        super().__init__(details)
        self.path = str(path) if path is not None else None
        self.offset = offset


def require_file(path: str | Path, what: str = "input file") -> Path:
    """Return ``path`` as a Path or raise FatalConfigError if it does not exist."""
    p = Path(path)
    if not p.is_file():
        raise FatalConfigError(f"Missing {what}: {p}")
    return p


def require_distinct_output(in_path: Path, out_path: Path) -> Path:
    """Refuse to write a stage's output over its own input."""
    if out_path.resolve() == in_path.resolve():
        raise FatalConfigError(f"Output {out_path} would overwrite the input file; choose another --out")
    return out_path
