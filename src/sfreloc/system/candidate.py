from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

# (pixel_index, mode_index); mode_index == -1 means "pick the best mode when scoring".
Correspondence = tuple[int, int]
UNRESOLVED_MODE = -1


class RelocStatus(str, Enum):
    SUCCESS = "success"
    NOT_ATTEMPTED = "not_attempted"
    NO_POSE_FOUND = "no_pose_found"


@dataclass
class PoseCandidate:
    pose: np.ndarray  # 4x4, camera -> world
    correspondences: list[Correspondence] = field(default_factory=list)
    energy: float = 0.0
    candidate_id: int = -1


@dataclass
class RelocalisationResult:
    status: RelocStatus
    candidate: PoseCandidate | None = None
    reason: str = ""
    nb_valid_pixels: int = 0
    nb_initial_candidates: int = 0
    nb_rounds: int = 0

    @property
    def success(self) -> bool:
        return self.status is RelocStatus.SUCCESS and self.candidate is not None

    @property
    def pose(self) -> np.ndarray | None:
        return None if self.candidate is None else self.candidate.pose
