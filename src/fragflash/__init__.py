"""fragflash: fast fragment, peak and count-matrix helpers for single-cell ATAC / CUT&Tag.

Public API is intentionally small; most users should use the CLI:

    fragflash filter --bam possorted.bam --out sample.frag
    fragflash sort --input sample.frag

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
