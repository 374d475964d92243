# src/sfreloc/system/ransac.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from .buffers import FeatureImage, PredictionImage, check_same_size
from .candidate import PoseCandidate, RelocalisationResult, RelocStatus
from .config import RelocaliserConfig
from .telemetry import Telemetry
from ..modules.energy import compute_and_sort_energies
from ..modules.hypothesis import generate_pose_candidates
from ..modules.refine import update_candidate_poses
from ..modules.sampling import sample_pixels_for_ransac, update_inliers_for_optimization

logger = logging.getLogger(__name__)


def trim_candidates(
    candidates: list[PoseCandidate],
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: RelocaliserConfig,
    rng: np.random.Generator,
    executor: ThreadPoolExecutor,
) -> list[PoseCandidate]:
    """
    One scoring pass used only to cut a large initial pool to trim_threshold.

    Survivors keep just their minimal-set correspondences so that later
    rounds start from the same evidence size.
    """
    keep = cfg.ransac.trim_threshold
    nb_samples_per_camera = len(candidates[0].correspondences)

    pixel_idx = sample_pixels_for_ransac(
        features, predictions, rng, cfg.ransac.batch_size, max_attempts=cfg.ransac.max_sample_attempts
    )
    update_inliers_for_optimization(candidates, pixel_idx)
    compute_and_sort_energies(candidates, features, predictions, executor=executor, min_score=cfg.ransac.min_score)

    del candidates[keep:]

    if keep > 1:
        for candidate in candidates:
            del candidate.correspondences[nb_samples_per_camera:]
    return candidates


def estimate_pose(
    features: FeatureImage,
    predictions: PredictionImage,
    cfg: RelocaliserConfig,
    *,
    telemetry: Telemetry | None = None,
) -> RelocalisationResult:
    """
    Preemptive RANSAC relocalisation of a single frame.

    Steps:
      1) abort early if the frame has too few valid-depth pixels
      2) generate nb_initial_candidates hypotheses on the worker pool
      3) optionally trim the pool to trim_threshold with one scoring pass
      4) while more than one candidate survives: add a batch of sampled
         pixels to every candidate, optionally refine, score, sort, and drop
         the worse half

    The call is synchronous. For fixed buffers and cfg.seed the result is
    identical across runs and thread counts.

    Returns:
        RelocalisationResult with status SUCCESS and the surviving candidate,
        NOT_ATTEMPTED (too few valid pixels), or NO_POSE_FOUND (no hypothesis).
    """
    check_same_size(features, predictions)
    rec: dict = {"rounds": []}

    nb_valid = features.count_valid()
    rec["nb_valid_pixels"] = nb_valid
    if nb_valid < cfg.min_valid_pixels:
        logger.info(
            "Number of valid depth pixels insufficient to perform relocalisation (%d < %d).",
            nb_valid,
            cfg.min_valid_pixels,
        )
        result = RelocalisationResult(
            RelocStatus.NOT_ATTEMPTED,
            reason=f"REJECT_TOO_FEW_VALID_PIXELS:{nb_valid}",
            nb_valid_pixels=nb_valid,
        )
        return _finish(result, rec, telemetry)

    with ThreadPoolExecutor(max_workers=cfg.nb_threads) as executor:
        candidates = generate_pose_candidates(
            features,
            predictions,
            cfg.hypothesis,
            nb_trials=cfg.ransac.nb_initial_candidates,
            seed=cfg.seed,
            executor=executor,
        )
        nb_initial = len(candidates)
        rec["nb_initial_candidates"] = nb_initial
        logger.info("Generated %d initial candidates.", nb_initial)

        if not candidates:
            result = RelocalisationResult(
                RelocStatus.NO_POSE_FOUND,
                reason="REJECT_NO_CANDIDATES",
                nb_valid_pixels=nb_valid,
            )
            return _finish(result, rec, telemetry)

        rng = np.random.default_rng(cfg.seed)

        if len(candidates) > cfg.ransac.trim_threshold:
            candidates = trim_candidates(candidates, features, predictions, cfg, rng, executor)
            logger.debug("Trimmed pool to %d candidates.", len(candidates))
        rec["nb_after_trim"] = len(candidates)

        sampled_mask = np.zeros(features.size, dtype=bool)
        nb_rounds = 0

        while len(candidates) > 1:
            nb_rounds += 1
            pixel_idx = sample_pixels_for_ransac(
                features,
                predictions,
                rng,
                cfg.ransac.batch_size,
                sampled_mask=sampled_mask,
                max_attempts=cfg.ransac.max_sample_attempts,
            )
            update_inliers_for_optimization(candidates, pixel_idx)

            nb_refined = update_candidate_poses(candidates, features, predictions, cfg.refine, executor=executor)

            compute_and_sort_energies(
                candidates, features, predictions, executor=executor, min_score=cfg.ransac.min_score
            )
            rec["rounds"].append({
                "pool_size": len(candidates),
                "nb_sampled": int(pixel_idx.shape[0]),
                "nb_refined": int(nb_refined),
                "best_energy": float(candidates[0].energy),
            })

            # Remove the worse half.
            del candidates[len(candidates) // 2:]

    best = candidates[0]
    logger.info(
        "Relocalised after %d rounds: energy=%.4f, %d correspondences.",
        nb_rounds,
        best.energy,
        len(best.correspondences),
    )
    result = RelocalisationResult(
        RelocStatus.SUCCESS,
        candidate=best,
        reason="RELOC_OK",
        nb_valid_pixels=nb_valid,
        nb_initial_candidates=nb_initial,
        nb_rounds=nb_rounds,
    )
    return _finish(result, rec, telemetry)


def _finish(result: RelocalisationResult, rec: dict, telemetry: Telemetry | None) -> RelocalisationResult:
    if telemetry is not None:
        rec.update({
            "status": result.status.value,
            "reason": result.reason,
            "energy": None if result.candidate is None else float(result.candidate.energy),
            "candidate_id": None if result.candidate is None else int(result.candidate.candidate_id),
        })
        telemetry.log_attempt(telemetry.next_index(), rec)
    return result
