# src/sfreloc/modules/hypothesis.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from ..geom.align import kabsch
from ..system.buffers import FeatureImage, PredictionImage, usable_mask
from ..system.candidate import PoseCandidate
from ..system.config import HypothesisConfig

logger = logging.getLogger(__name__)

# Draws evaluated together; the iteration caps still count single draws.
_DRAW_CHUNK = 32


def trial_rng(seed: int, trial_idx: int) -> np.random.Generator:
    """Private random stream of one hypothesis trial, independent of scheduling."""
    return np.random.default_rng([int(seed), int(trial_idx)])


def _accept_mask(
    features: FeatureImage,
    predictions: PredictionImage,
    pix: np.ndarray,
    modes: np.ndarray,
    selected: list[tuple[int, int]],
    cfg: HypothesisConfig,
) -> np.ndarray:
    """Which (pixel, mode) draws may join the partial minimal set `selected`."""
    ok = np.ones(pix.shape[0], dtype=bool)
    world = predictions.flat_means[pix, modes].astype(np.float64)

    # First point: the observed colour must match the mode colour.
    if not selected:
        diff = features.flat_colours[pix].astype(np.int16) - predictions.flat_colours[pix, modes].astype(np.int16)
        ok &= np.all(np.abs(diff) <= cfg.colour_tolerance, axis=1)
        return ok

    local = features.flat_positions[pix].astype(np.float64)
    for pix_o, mode_o in selected:
        world_o = predictions.flat_means[pix_o, mode_o].astype(np.float64)
        d_world = np.linalg.norm(world - world_o, axis=1)

        if cfg.check_min_distance:
            ok &= d_world >= cfg.min_mode_separation

        if cfg.check_rigid_distance:
            local_o = features.flat_positions[pix_o].astype(np.float64)
            d_local = np.linalg.norm(local - local_o, axis=1)
            ok &= d_local >= cfg.min_mode_separation
            ok &= np.abs(d_local - d_world) <= 0.5 * cfg.max_translation_error

    return ok


def _sample_minimal_set(
    features: FeatureImage,
    predictions: PredictionImage,
    usable_idx: np.ndarray,
    cfg: HypothesisConfig,
    rng: np.random.Generator,
) -> list[tuple[int, int]] | None:
    selected: list[tuple[int, int]] = []
    nb_modes = predictions.flat_nb_modes
    iterations = 0

    while len(selected) < cfg.minimal_set_size and iterations < cfg.max_iterations_inner:
        n = min(_DRAW_CHUNK, cfg.max_iterations_inner - iterations)
        pix = usable_idx[rng.integers(0, usable_idx.shape[0], size=n)]
        if cfg.use_all_modes:
            modes = rng.integers(0, nb_modes[pix])
        else:
            modes = np.zeros(n, dtype=np.int64)

        ok = _accept_mask(features, predictions, pix, modes, selected, cfg)
        hits = np.flatnonzero(ok)
        if hits.size == 0:
            iterations += n
            continue

        j = int(hits[0])
        iterations += j + 1
        selected.append((int(pix[j]), int(modes[j])))

    if len(selected) != cfg.minimal_set_size:
        return None
    return selected


def hypothesize_pose(
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: HypothesisConfig,
    rng: np.random.Generator,
    *,
    usable_idx: np.ndarray | None = None,
) -> PoseCandidate | None:
    """
    Build one pose hypothesis from a minimal set of pixel/mode correspondences.

    Args:
        features, predictions: per-pixel buffers of the current frame (read only).
        cfg: sampling settings (minimal set size, filters, iteration caps).
        rng: the trial's private random stream.
        usable_idx: flat indices of pixels with a valid feature and at least
            one mode. Computed from the buffers when omitted.

    Returns:
        A PoseCandidate holding the Kabsch pose and its minimal correspondences,
        or None when no minimal set could be completed within
        max_iterations_outer retries.
    """
    if usable_idx is None:
        usable_idx = np.flatnonzero(usable_mask(features, predictions))
    if usable_idx.shape[0] == 0:
        return None

    for _ in range(cfg.max_iterations_outer):
        selected = _sample_minimal_set(features, predictions, usable_idx, cfg, rng)
        if selected is None:
            continue

        pix = np.array([s[0] for s in selected], dtype=np.int64)
        modes = np.array([s[1] for s in selected], dtype=np.int64)
        local_pts = features.flat_positions[pix].astype(np.float64)
        world_pts = predictions.flat_means[pix, modes].astype(np.float64)

        return PoseCandidate(
            pose=kabsch(local_pts, world_pts),
            correspondences=list(selected),
            energy=0.0,
        )

    return None


def generate_pose_candidates(
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: HypothesisConfig,
    *,
    nb_trials: int,
    seed: int,
    executor: ThreadPoolExecutor,
) -> list[PoseCandidate]:
    """
    Run nb_trials independent hypothesis trials on the worker pool.

    Results are collected in trial order, so the pool content does not depend
    on thread scheduling. Trials that exhaust their sampling budget contribute
    nothing; candidates without correspondences are dropped.
    """
    usable_idx = np.flatnonzero(usable_mask(features, predictions))

    def _trial(trial_idx: int) -> PoseCandidate | None:
        return hypothesize_pose(features, predictions, cfg, trial_rng(seed, trial_idx), usable_idx=usable_idx)

    futures = [executor.submit(_trial, i) for i in range(nb_trials)]

    candidates: list[PoseCandidate] = []
    for trial_idx, future in enumerate(futures):
        candidate = future.result()
        if candidate is None or not candidate.correspondences:
            continue
        candidate.candidate_id = trial_idx
        candidates.append(candidate)

    logger.debug("hypothesis trials: %d/%d produced a candidate", len(candidates), nb_trials)
    return candidates
