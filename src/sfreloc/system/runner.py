# src/sfreloc/system/runner.py
from __future__ import annotations

import logging
from typing import Protocol

import numpy as np

from .buffers import FeatureImage, PredictionImage
from .candidate import RelocalisationResult, RelocStatus
from .config import RelocaliserConfig
from .ransac import estimate_pose
from .state import FrameData, SystemState, TrackingResult
from .telemetry import Telemetry

logger = logging.getLogger(__name__)


class PredictionProvider(Protocol):
    """Feature extraction + forest evaluation for one RGB-D frame."""

    def predict(self, frame: FrameData) -> tuple[FeatureImage, PredictionImage]: ...


class Tracker(Protocol):
    """Frame-to-model tracker owned by the caller."""

    def set_pose(self, T_w_c: np.ndarray) -> None: ...

    def track(self, frame: FrameData) -> TrackingResult: ...


def count_valid_depths(depth: np.ndarray) -> int:
    return int(np.count_nonzero(np.asarray(depth) > 0.0))


def process_relocalisation(
    state: SystemState,
    provider: PredictionProvider,
    tracker: Tracker,
    cfg: RelocaliserConfig,
    telemetry: Telemetry | None = None,
) -> TrackingResult:
    """
    Try to recover from a tracking failure on state.cur.

    Responsibilities:
      1) do nothing unless state.tracking_result is FAILED
      2) skip frames with too few valid depths (state is left untouched)
      3) evaluate the forest through the provider and run preemptive RANSAC
      4) on success hand the pose to the tracker and run one tracking step

    Returns:
        The tracking result after the attempt; also stored in state.
    """
    if state.tracking_result is not TrackingResult.FAILED:
        return state.tracking_result
    if state.cur is None:
        raise ValueError("process_relocalisation requires state.cur to be set.")

    nb_valid = count_valid_depths(state.cur.depth)
    if nb_valid < cfg.min_valid_pixels:
        logger.info("Number of valid depth pixels insufficient to perform relocalisation.")
        state.last_reloc = RelocalisationResult(
            RelocStatus.NOT_ATTEMPTED,
            reason=f"REJECT_TOO_FEW_VALID_DEPTHS:{nb_valid}",
            nb_valid_pixels=nb_valid,
        )
        return state.tracking_result

    features, predictions = provider.predict(state.cur)
    result = estimate_pose(features, predictions, cfg, telemetry=telemetry)
    state.last_reloc = result
    state.nb_relocalisations += 1

    if not result.success:
        logger.info("Cannot estimate a pose candidate (%s).", result.reason)
        return state.tracking_result

    logger.info(
        "Final pose has %d correspondences, energy %.4f.",
        len(result.candidate.correspondences),
        result.candidate.energy,
    )
    tracker.set_pose(result.pose)
    state.tracking_result = tracker.track(state.cur)
    if state.tracking_result is not TrackingResult.FAILED:
        state.T_w_c = result.pose.copy()
    return state.tracking_result
