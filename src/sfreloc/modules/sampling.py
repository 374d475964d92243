# src/sfreloc/modules/sampling.py
from __future__ import annotations

import logging

import numpy as np

from ..system.buffers import FeatureImage, PredictionImage
from ..system.candidate import UNRESOLVED_MODE, Correspondence, PoseCandidate

logger = logging.getLogger(__name__)


def sample_pixels_for_ransac(
    features: FeatureImage,
    predictions: PredictionImage,
    rng: np.random.Generator,
    batch_size: int,
    *,
    sampled_mask: np.ndarray | None = None,
    max_attempts: int = 50,
) -> np.ndarray:
    """
    Draw up to batch_size random usable pixels (valid feature, >= 1 mode).

    Args:
        sampled_mask: optional flat bool array of pixels already taken during
            this attempt. Marked pixels are rejected and newly drawn ones are
            marked, which gives sampling without replacement across rounds.
        max_attempts: consecutive failed draws after which the batch ends early.

    Returns:
        (K,) flat pixel indices, K <= batch_size, in draw order.
    """
    n_pixels = features.size
    valid = features.flat_valid
    nb_modes = predictions.flat_nb_modes

    sampled: list[int] = []
    for _ in range(batch_size):
        found = False
        for _attempt in range(max_attempts):
            idx = int(rng.integers(0, n_pixels))
            if not valid[idx] or nb_modes[idx] <= 0:
                continue
            if sampled_mask is not None:
                if sampled_mask[idx]:
                    continue
                sampled_mask[idx] = True
            sampled.append(idx)
            found = True
            break

        if not found:
            logger.warning("Couldn't sample a valid pixel. Returning %d/%d", len(sampled), batch_size)
            break

    return np.asarray(sampled, dtype=np.int64)


def update_inliers_for_optimization(candidates: list[PoseCandidate], pixel_idx: np.ndarray) -> None:
    """Append every sampled pixel to every candidate as an unresolved correspondence."""
    pending: list[Correspondence] = [(int(p), UNRESOLVED_MODE) for p in pixel_idx]
    for candidate in candidates:
        candidate.correspondences.extend(pending)
