"""Run configuration.

Every component receives one of these frozen dataclasses in its constructor;
nothing reads module-level state at run time. The module constants are the
defaults the CLI exposes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import FatalConfigError

PROGRESS_EVERY = 1_000_000

CB_LENGTH = 16
MIN_MAPQ = 30
MATE_MIN_DISTANCE = 20
MATE_MAX_DISTANCE = 662
TN5_LEFT_OFFSET = 4
TN5_RIGHT_OFFSET = 5
MITO_NAME = "chrM"
SECONDARY_TAG = "XA"
BARCODE_TAG = "CB"

MIN_REGION_SUPPORT = 5
MIN_PILEUP = 15
WINDOW_SIZE = 500
MAX_SHOULDER_RATIO = 0.1

MIN_CELLS_PER_PEAK = 10


@dataclass(frozen=True)
class BarcodeConfig:
    length: int = CB_LENGTH

    def __post_init__(self) -> None:
        # 2 bits per base must fit into the u64 cb slot.
        if not 1 <= self.length <= 32:
            raise FatalConfigError(f"barcode length must be in [1, 32], got {self.length}")


@dataclass(frozen=True)
class ClassifierConfig:
    """Thresholds of the alignment-pair filter chain."""

    min_mapq: int = MIN_MAPQ
    mate_min_distance: int = MATE_MIN_DISTANCE
    mate_max_distance: int = MATE_MAX_DISTANCE
    tn5_left_offset: int = TN5_LEFT_OFFSET
    tn5_right_offset: int = TN5_RIGHT_OFFSET
    mito_name: Optional[str] = MITO_NAME
    secondary_tag: str = SECONDARY_TAG
    barcode_tag: str = BARCODE_TAG
    barcode: BarcodeConfig = BarcodeConfig()

    def __post_init__(self) -> None:
        if self.min_mapq < 0:
            raise FatalConfigError("min_mapq must be >= 0")
        if self.mate_max_distance < 0:
            raise FatalConfigError("mate_max_distance must be >= 0")
        if self.mate_min_distance < 0:
            raise FatalConfigError("mate_min_distance must be >= 0")
        if self.tn5_left_offset < 0 or self.tn5_right_offset < 0:
            raise FatalConfigError("Tn5 offsets must be >= 0")


@dataclass(frozen=True)
class PeakCallerConfig:
    """Parameters of the pileup peak caller.

    max_shoulder_ratio:
        Upper bound on (mass in the two outer eighths of the window) / (window
        mass). A perfectly flat window scores 0.25, so useful values are below it.
    """

    min_region_support: int = MIN_REGION_SUPPORT
    min_pileup: int = MIN_PILEUP
    window_size: int = WINDOW_SIZE
    max_shoulder_ratio: float = MAX_SHOULDER_RATIO

    def __post_init__(self) -> None:
        if self.window_size < 8:
            raise FatalConfigError(f"window_size must be >= 8, got {self.window_size}")
        if not 0.0 <= self.max_shoulder_ratio <= 1.0:
            raise FatalConfigError("max_shoulder_ratio must be in [0, 1]")
        if self.min_pileup < 1:
            raise FatalConfigError("min_pileup must be >= 1")

    @property
    def shoulder_size(self) -> int:
        return self.window_size // 8


@dataclass(frozen=True)
class CountMatrixConfig:
    min_cells: int = MIN_CELLS_PER_PEAK
    barcode: BarcodeConfig = BarcodeConfig()

    def __post_init__(self) -> None:
        if self.min_cells < 1:
            raise FatalConfigError("min_cells must be >= 1")
