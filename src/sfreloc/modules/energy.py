# src/sfreloc/modules/energy.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from ..geom.se3 import transform_points
from ..system.buffers import FeatureImage, PredictionImage
from ..system.candidate import PoseCandidate

logger = logging.getLogger(__name__)

_LN10 = float(np.log(10.0))


class InvariantViolation(RuntimeError):
    """A sampled pixel reached scoring without a usable mode."""


def best_modes(
    predictions: PredictionImage,
    pixel_idx: np.ndarray,
    points_world: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Pick, for each pixel, the mode that best explains a world-space point.

    The score of mode m is support_m * N(x; mean_m, cov_m), evaluated in the
    log domain so that far-away points keep a usable ranking.

    Returns:
        argmax: (N,) chosen mode index per pixel
        log_score: (N,) natural log of the chosen mode's score
    """
    nb = predictions.flat_nb_modes[pixel_idx]
    if np.any(nb <= 0):
        bad = int(pixel_idx[np.flatnonzero(nb <= 0)[0]])
        raise InvariantViolation(f"prediction has no valid modes (pixel {bad})")

    means = predictions.flat_means[pixel_idx].astype(np.float64)             # (N,M,3)
    inv_cov = predictions.flat_inv_covariances[pixel_idx].astype(np.float64)  # (N,M,3,3)
    support = predictions.flat_supports[pixel_idx]                             # (N,M)

    diff = points_world[:, None, :] - means
    maha2 = np.einsum("nmi,nmij,nmj->nm", diff, inv_cov, diff)

    with np.errstate(divide="ignore"):
        log_support = np.log(support.astype(np.float64))
    log_score = log_support + predictions.flat_log_normalisers[pixel_idx] - 0.5 * maha2

    slot = np.arange(predictions.max_modes)[None, :]
    log_score = np.where(slot < nb[:, None], log_score, -np.inf)

    argmax = np.argmax(log_score, axis=1)
    rows = np.arange(pixel_idx.shape[0])
    return argmax, log_score[rows, argmax]


def compute_pose_energy(
    pose: np.ndarray,
    correspondences,
    features: FeatureImage,
    predictions: PredictionImage,
    *,
    min_score: float = 1e-6,
) -> float:
    """
    Mean negative log10 score of a pose over a set of correspondences.

    Each point's best-mode score is divided by (nb_modes * support of the
    chosen mode), clamped to min_score, then turned into -log10. Lower is
    better. The stored mode index of a correspondence is not used: the best
    mode under `pose` is always chosen.

    Raises:
        InvariantViolation: a pixel has no modes, or its best mode has no support.
    """
    if len(correspondences) == 0:
        raise ValueError("cannot score a pose without correspondences.")

    pixel_idx = np.fromiter((c[0] for c in correspondences), dtype=np.int64, count=len(correspondences))
    local = features.flat_positions[pixel_idx].astype(np.float64)
    projected = transform_points(pose, local)

    argmax, log_score = best_modes(predictions, pixel_idx, projected)

    support = predictions.flat_supports[pixel_idx, argmax]
    if np.any(support <= 0):
        bad = int(pixel_idx[np.flatnonzero(support <= 0)[0]])
        raise InvariantViolation(f"mode has no inliers (pixel {bad})")

    nb = predictions.flat_nb_modes[pixel_idx].astype(np.float64)
    log_norm_score = log_score - np.log(nb) - np.log(support.astype(np.float64))

    log10_score = np.maximum(log_norm_score / _LN10, np.log10(min_score))
    return float(np.mean(-log10_score))


def compute_and_sort_energies(
    candidates: list[PoseCandidate],
    features: FeatureImage,
    predictions: PredictionImage,
    *,
    executor: ThreadPoolExecutor,
    min_score: float = 1e-6,
) -> None:
    """
    Score every candidate on the worker pool, then sort ascending by energy.

    Each task writes only the energy of its own candidate. The sort is stable,
    so equal energies keep their relative order.
    """
    def _score(candidate: PoseCandidate) -> None:
        candidate.energy = compute_pose_energy(
            candidate.pose, candidate.correspondences, features, predictions, min_score=min_score
        )

    for future in [executor.submit(_score, c) for c in candidates]:
        future.result()

    candidates.sort(key=lambda c: c.energy)
