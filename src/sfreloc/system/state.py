from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .candidate import RelocalisationResult


class TrackingResult(str, Enum):
    GOOD = "good"
    POOR = "poor"
    FAILED = "failed"


@dataclass
class FrameData:
    idx: int
    ts: float
    rgb: np.ndarray    # (H,W,3) uint8
    depth: np.ndarray  # (H,W) float32, metres, <= 0 where missing

@dataclass
class SystemState:
    T_w_c: np.ndarray = field(default_factory=lambda: np.eye(4))
    tracking_result: TrackingResult = TrackingResult.GOOD
    cur: FrameData | None = None

    last_reloc: RelocalisationResult | None = None
    nb_relocalisations: int = 0
