from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from sfreloc.modules.energy import InvariantViolation, best_modes, compute_and_sort_energies, compute_pose_energy
from sfreloc.system.buffers import FeatureImage, PredictionImage
from sfreloc.system.candidate import PoseCandidate

_LOG10_2PI_15 = 1.5 * math.log10(2.0 * math.pi)


def _buffers(local, modes, *, sigma: float = 1.0):
    """One row of pixels. modes[i] is a list of (mean, support) for pixel i."""
    n = len(local)
    m = max(1, max(len(pm) for pm in modes))
    nb_modes = np.zeros((1, n), dtype=np.int32)
    means = np.zeros((1, n, m, 3), dtype=np.float32)
    inv_cov = np.zeros((1, n, m, 3, 3), dtype=np.float32)
    supports = np.zeros((1, n, m), dtype=np.int32)
    for i, pm in enumerate(modes):
        nb_modes[0, i] = len(pm)
        for k, (mean, support) in enumerate(pm):
            means[0, i, k] = mean
            inv_cov[0, i, k] = np.eye(3) / sigma**2
            supports[0, i, k] = support

    features = FeatureImage(
        positions=np.asarray(local, dtype=np.float32).reshape(1, n, 3),
        valid=np.ones((1, n), dtype=bool),
        colours=np.zeros((1, n, 3), dtype=np.uint8),
    )
    predictions = PredictionImage(
        nb_modes=nb_modes,
        means=means,
        inv_covariances=inv_cov,
        colours=np.zeros((1, n, m, 3), dtype=np.uint8),
        supports=supports,
    )
    return features, predictions


def test_energy_of_exact_point_is_gaussian_peak() -> None:
    features, predictions = _buffers([[0.0, 0.0, 1.0]], [[([0.0, 0.0, 1.0], 50)]])

    energy = compute_pose_energy(np.eye(4), [(0, -1)], features, predictions)

    # peak of a unit-covariance 3D Gaussian is (2 pi)^-1.5; support cancels out
    assert energy == pytest.approx(_LOG10_2PI_15, abs=1e-6)


def test_ambiguous_prediction_is_penalised_by_mode_count() -> None:
    single, p_single = _buffers([[0.0, 0.0, 1.0]], [[([0.0, 0.0, 1.0], 50)]])
    double, p_double = _buffers([[0.0, 0.0, 1.0]], [[([0.0, 0.0, 1.0], 50), ([5.0, 0.0, 1.0], 50)]])

    e1 = compute_pose_energy(np.eye(4), [(0, -1)], single, p_single)
    e2 = compute_pose_energy(np.eye(4), [(0, -1)], double, p_double)

    assert e2 - e1 == pytest.approx(math.log10(2.0), abs=1e-6)


def test_far_point_is_clamped_to_score_floor() -> None:
    features, predictions = _buffers([[0.0, 0.0, 1.0]], [[([10.0, 0.0, 1.0], 50)]], sigma=0.05)

    energy = compute_pose_energy(np.eye(4), [(0, -1)], features, predictions, min_score=1e-6)

    assert energy == pytest.approx(6.0)


def test_best_mode_follows_the_transformed_point() -> None:
    features, predictions = _buffers(
        [[0.0, 0.0, 1.0]],
        [[([0.0, 0.0, 1.0], 10), ([1.0, 0.0, 1.0], 10)]],
        sigma=0.1,
    )
    T = np.eye(4)
    T[0, 3] = 1.0

    argmax_id, _ = best_modes(predictions, np.array([0]), np.array([[0.0, 0.0, 1.0]]))
    argmax_shift, _ = best_modes(predictions, np.array([0]), np.array([[1.0, 0.0, 1.0]]))

    assert int(argmax_id[0]) == 0
    assert int(argmax_shift[0]) == 1
    assert compute_pose_energy(T, [(0, -1)], features, predictions) == pytest.approx(
        compute_pose_energy(np.eye(4), [(0, -1)], features, predictions)
    )


def test_pixel_without_modes_raises_invariant_violation() -> None:
    features, predictions = _buffers([[0.0, 0.0, 1.0], [0.0, 0.0, 2.0]], [[([0.0, 0.0, 1.0], 5)], []])

    with pytest.raises(InvariantViolation, match="no valid modes"):
        compute_pose_energy(np.eye(4), [(0, -1), (1, -1)], features, predictions)


def test_best_mode_without_support_raises_invariant_violation() -> None:
    features, predictions = _buffers([[0.0, 0.0, 1.0]], [[([0.0, 0.0, 1.0], 0)]])

    with pytest.raises(InvariantViolation, match="no inliers"):
        compute_pose_energy(np.eye(4), [(0, -1)], features, predictions)


def test_compute_and_sort_energies_orders_ascending_and_keeps_ties_stable() -> None:
    local = [[0.0, 0.0, 1.0 + 0.5 * i] for i in range(6)]
    modes = [[(p, 20)] for p in local]
    features, predictions = _buffers(local, modes, sigma=0.1)
    corr = [(i, -1) for i in range(6)]

    def _shifted(dx: float, cid: int) -> PoseCandidate:
        T = np.eye(4)
        T[0, 3] = dx
        return PoseCandidate(pose=T, correspondences=list(corr), candidate_id=cid)

    candidates = [_shifted(0.2, 0), _shifted(0.0, 1), _shifted(0.1, 2), _shifted(0.0, 3), _shifted(0.5, 4)]

    with ThreadPoolExecutor(max_workers=3) as executor:
        compute_and_sort_energies(candidates, features, predictions, executor=executor)

    energies = [c.energy for c in candidates]
    assert all(a <= b for a, b in zip(energies, energies[1:]))
    assert [c.candidate_id for c in candidates][:2] == [1, 3]
    assert candidates[-1].candidate_id == 4


def test_scoring_without_correspondences_is_rejected() -> None:
    features, predictions = _buffers([[0.0, 0.0, 1.0]], [[([0.0, 0.0, 1.0], 5)]])
    with pytest.raises(ValueError):
        compute_pose_energy(np.eye(4), [], features, predictions)
