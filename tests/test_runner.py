from __future__ import annotations

import numpy as np
import pytest

from sfreloc.dataset.synthetic import SyntheticProvider, SyntheticSceneConfig, make_scene
from sfreloc.system.buffers import PredictionImage
from sfreloc.system.candidate import RelocStatus
from sfreloc.system.config import RelocaliserConfig
from sfreloc.system.runner import process_relocalisation
from sfreloc.system.state import SystemState, TrackingResult
from sfreloc.system.telemetry import Telemetry


class _FakeTracker:
    def __init__(self, result: TrackingResult = TrackingResult.GOOD):
        self.result = result
        self.poses: list[np.ndarray] = []
        self.nb_tracked = 0

    def set_pose(self, T_w_c: np.ndarray) -> None:
        self.poses.append(T_w_c.copy())

    def track(self, frame) -> TrackingResult:
        self.nb_tracked += 1
        return self.result


def _cfg() -> RelocaliserConfig:
    return RelocaliserConfig.from_dict({"ransac": {"nb_initial_candidates": 64, "batch_size": 100, "trim_threshold": 16}})


def test_good_tracking_is_left_alone() -> None:
    frame, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(seed=0))
    provider = SyntheticProvider(features, predictions)
    tracker = _FakeTracker()
    state = SystemState(tracking_result=TrackingResult.GOOD, cur=frame)

    assert process_relocalisation(state, provider, tracker, _cfg()) is TrackingResult.GOOD
    assert provider.calls == 0
    assert tracker.poses == []


def test_insufficient_depth_preserves_failed_state() -> None:
    valid = np.zeros((64, 64), dtype=bool)
    valid[0, :40] = True
    frame, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(seed=1), valid=valid)
    provider = SyntheticProvider(features, predictions)
    tracker = _FakeTracker()
    T_before = np.eye(4)
    T_before[0, 3] = 7.0
    state = SystemState(T_w_c=T_before.copy(), tracking_result=TrackingResult.FAILED, cur=frame)

    result = process_relocalisation(state, provider, tracker, _cfg())

    assert result is TrackingResult.FAILED
    assert state.tracking_result is TrackingResult.FAILED
    assert np.array_equal(state.T_w_c, T_before)
    assert state.last_reloc.status is RelocStatus.NOT_ATTEMPTED
    assert state.nb_relocalisations == 0
    assert provider.calls == 0
    assert tracker.poses == [] and tracker.nb_tracked == 0


def test_successful_relocalisation_resumes_tracking() -> None:
    T_gt = np.eye(4)
    T_gt[:3, 3] = [0.2, 0.3, -0.4]
    frame, features, predictions = make_scene(T_gt, SyntheticSceneConfig(seed=2))
    provider = SyntheticProvider(features, predictions)
    tracker = _FakeTracker(TrackingResult.GOOD)
    state = SystemState(tracking_result=TrackingResult.FAILED, cur=frame)
    telemetry = Telemetry()

    result = process_relocalisation(state, provider, tracker, _cfg(), telemetry)

    assert result is TrackingResult.GOOD
    assert state.tracking_result is TrackingResult.GOOD
    assert provider.calls == 1
    assert len(tracker.poses) == 1 and tracker.nb_tracked == 1
    assert np.allclose(tracker.poses[0], T_gt, atol=1e-4)
    assert np.allclose(state.T_w_c, T_gt, atol=1e-4)
    assert state.last_reloc.success
    assert telemetry.attempts[0]["status"] == "success"


def test_no_pose_keeps_tracker_untouched() -> None:
    frame, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(seed=3))
    empty = PredictionImage(
        nb_modes=np.zeros_like(predictions.nb_modes),
        means=predictions.means,
        inv_covariances=predictions.inv_covariances,
        colours=predictions.colours,
        supports=predictions.supports,
    )
    provider = SyntheticProvider(features, empty)
    tracker = _FakeTracker()
    state = SystemState(tracking_result=TrackingResult.FAILED, cur=frame)

    result = process_relocalisation(state, provider, tracker, _cfg())

    assert result is TrackingResult.FAILED
    assert state.last_reloc.status is RelocStatus.NO_POSE_FOUND
    assert tracker.poses == []


def test_missing_frame_is_an_error() -> None:
    state = SystemState(tracking_result=TrackingResult.FAILED)
    with pytest.raises(ValueError):
        process_relocalisation(state, None, _FakeTracker(), _cfg())  # type: ignore[arg-type]


def test_telemetry_summarises_attempts_by_status() -> None:
    telemetry = Telemetry()
    telemetry.log_attempt(telemetry.next_index(), {"status": "success"})
    telemetry.log_attempt(telemetry.next_index(), {"status": "not_attempted"})
    telemetry.log_attempt(telemetry.next_index(), {"status": "success"})

    assert [rec["attempt_idx"] for rec in telemetry.attempts] == [0, 1, 2]
    assert telemetry.summary() == {"nb_attempts": 3, "by_status": {"success": 2, "not_attempted": 1}}
