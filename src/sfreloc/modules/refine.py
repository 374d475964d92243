# src/sfreloc/modules/refine.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy.optimize import least_squares

from ..geom.se3 import exp_se3, log_se3, transform_points
from ..system.buffers import FeatureImage, PredictionImage
from ..system.candidate import UNRESOLVED_MODE, PoseCandidate
from ..system.config import RefineConfig
from .energy import best_modes

logger = logging.getLogger(__name__)

# Fewer points than this leave the 6-dof problem too weakly constrained.
MIN_POINTS_FOR_REFINEMENT = 4


def gather_refinement_points(
    pose: np.ndarray,
    correspondences,
    features: FeatureImage,
    predictions: PredictionImage,
    *,
    inlier_radius: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Resolve a mode for every correspondence and keep the nearby ones.

    Stored mode indices are used as-is; unresolved ones (-1) take the best
    mode under `pose`. A correspondence is kept when its mode mean lies within
    inlier_radius of the transformed point.

    Returns:
        local: (N,3) camera-space points
        means: (N,3) mode means
        inv_cov: (N,3,3) mode inverse covariances
    """
    pixel_idx = np.fromiter((c[0] for c in correspondences), dtype=np.int64, count=len(correspondences))
    mode_idx = np.fromiter((c[1] for c in correspondences), dtype=np.int64, count=len(correspondences))

    local = features.flat_positions[pixel_idx].astype(np.float64)
    projected = transform_points(pose, local)

    pending = mode_idx == UNRESOLVED_MODE
    if np.any(pending):
        argmax, _ = best_modes(predictions, pixel_idx[pending], projected[pending])
        mode_idx = mode_idx.copy()
        mode_idx[pending] = argmax

    means = predictions.flat_means[pixel_idx, mode_idx].astype(np.float64)
    inv_cov = predictions.flat_inv_covariances[pixel_idx, mode_idx].astype(np.float64)

    keep = np.linalg.norm(means - projected, axis=1) < inlier_radius
    return local[keep], means[keep], inv_cov[keep]


def _residuals(pose: np.ndarray, local: np.ndarray, means: np.ndarray, whiten: np.ndarray | None) -> np.ndarray:
    diff = transform_points(pose, local) - means
    if whiten is not None:
        # whiten[i] = L_i^T with L_i L_i^T = inv_cov_i, so ||L^T d||^2 = d^T inv_cov d
        diff = np.einsum("nij,nj->ni", whiten, diff)
    return diff.reshape(-1)


def refinement_energy(
    pose: np.ndarray,
    local: np.ndarray,
    means: np.ndarray,
    inv_cov: np.ndarray | None = None,
) -> float:
    """Sum of squared Mahalanobis (inv_cov given) or Euclidean distances."""
    diff = transform_points(pose, local) - means
    if inv_cov is None:
        return float(np.sum(diff * diff))
    return float(np.einsum("ni,nij,nj->", diff, inv_cov, diff))


def refine_pose(
    pose: np.ndarray,
    local: np.ndarray,
    means: np.ndarray,
    inv_cov: np.ndarray | None = None,
    *,
    max_iterations: int = 100,
) -> tuple[np.ndarray, bool]:
    """
    Levenberg-Marquardt over a 6-dof twist, starting from `pose`.

    Uses full-covariance residuals when inv_cov is given, Euclidean otherwise.
    The update is kept only if it strictly lowers refinement_energy.

    Returns:
        (pose_out, updated). When updated is False, pose_out is `pose` itself.
    """
    if local.shape[0] < MIN_POINTS_FOR_REFINEMENT:
        return pose, False

    whiten = None
    if inv_cov is not None:
        whiten = np.transpose(np.linalg.cholesky(inv_cov), (0, 2, 1))

    def _fun(xi: np.ndarray) -> np.ndarray:
        return _residuals(exp_se3(xi), local, means, whiten)

    energy_before = refinement_energy(pose, local, means, inv_cov)
    sol = least_squares(_fun, log_se3(pose), method="lm", max_nfev=max_iterations * 7)
    refined = exp_se3(sol.x)
    energy_after = refinement_energy(refined, local, means, inv_cov)

    if not np.isfinite(energy_after) or energy_after >= energy_before:
        return pose, False
    return refined, True


def update_candidate_pose(
    candidate: PoseCandidate,
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: RefineConfig,
) -> bool:
    local, means, inv_cov = gather_refinement_points(
        candidate.pose,
        candidate.correspondences,
        features,
        predictions,
        inlier_radius=cfg.inlier_radius,
    )
    if cfg.residual == "euclidean":
        inv_cov = None

    pose, updated = refine_pose(candidate.pose, local, means, inv_cov, max_iterations=cfg.max_iterations)
    if updated:
        candidate.pose = pose
    return updated


def update_candidate_poses(
    candidates: list[PoseCandidate],
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: RefineConfig,
    *,
    executor: ThreadPoolExecutor,
) -> int:
    """Refine every candidate on the worker pool. Returns how many moved."""
    if not cfg.enabled:
        return 0

    futures = [executor.submit(update_candidate_pose, c, features, predictions, cfg) for c in candidates]
    nb_updated = sum(int(f.result()) for f in futures)
    logger.debug("refinement: %d/%d candidates updated", nb_updated, len(candidates))
    return nb_updated
