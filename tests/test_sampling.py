from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from sfreloc.dataset.synthetic import SyntheticSceneConfig, make_scene
from sfreloc.modules.hypothesis import generate_pose_candidates
from sfreloc.modules.sampling import sample_pixels_for_ransac, update_inliers_for_optimization
from sfreloc.system.buffers import usable_mask
from sfreloc.system.candidate import UNRESOLVED_MODE, PoseCandidate
from sfreloc.system.config import RelocaliserConfig
from sfreloc.system.ransac import trim_candidates


def test_shared_mask_samples_without_replacement_across_batches() -> None:
    _, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(valid_fraction=0.9, seed=0))
    rng = np.random.default_rng(0)
    mask = np.zeros(features.size, dtype=bool)

    first = sample_pixels_for_ransac(features, predictions, rng, 500, sampled_mask=mask)
    second = sample_pixels_for_ransac(features, predictions, rng, 500, sampled_mask=mask)

    both = np.concatenate([first, second])
    assert first.shape == (500,) and second.shape == (500,)
    assert np.unique(both).shape[0] == 1000
    assert np.all(usable_mask(features, predictions).reshape(-1)[both])
    assert np.array_equal(np.flatnonzero(mask), np.sort(both))


def test_batch_ends_early_when_pixels_run_out(caplog) -> None:
    _, features, predictions = make_scene(
        np.eye(4), SyntheticSceneConfig(width=4, height=4, seed=1), valid=np.ones((4, 4), dtype=bool)
    )
    mask = np.ones(features.size, dtype=bool)
    free = np.array([1, 6, 9, 12, 15])
    mask[free] = False

    with caplog.at_level(logging.WARNING):
        got = sample_pixels_for_ransac(
            features, predictions, np.random.default_rng(2), 10, sampled_mask=mask, max_attempts=1000
        )

    assert np.array_equal(np.sort(got), free)
    assert mask.all()
    assert "Couldn't sample a valid pixel. Returning 5/10" in caplog.text


def test_unmasked_sampling_skips_unusable_pixels() -> None:
    _, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(valid_fraction=0.5, seed=3))

    got = sample_pixels_for_ransac(features, predictions, np.random.default_rng(3), 200)

    assert got.shape == (200,)
    assert np.all(features.flat_valid[got])
    assert np.all(predictions.flat_nb_modes[got] > 0)


def test_update_inliers_appends_pending_correspondences() -> None:
    a = PoseCandidate(pose=np.eye(4), correspondences=[(0, 1), (5, 0), (9, 2)])
    b = PoseCandidate(pose=np.eye(4), correspondences=[(3, 0), (4, 0), (8, 1)])

    update_inliers_for_optimization([a, b], np.array([11, 17]))

    assert a.correspondences == [(0, 1), (5, 0), (9, 2), (11, UNRESOLVED_MODE), (17, UNRESOLVED_MODE)]
    assert b.correspondences[3:] == [(11, -1), (17, -1)]


def _initial_pool(cfg: RelocaliserConfig, executor: ThreadPoolExecutor):
    _, features, predictions = make_scene(np.eye(4), SyntheticSceneConfig(max_modes=2, seed=4))
    candidates = generate_pose_candidates(
        features, predictions, cfg.hypothesis, nb_trials=40, seed=cfg.seed, executor=executor
    )
    return candidates, features, predictions


def test_trim_cuts_survivors_back_to_minimal_set() -> None:
    cfg = RelocaliserConfig.from_dict({"ransac": {"batch_size": 100, "trim_threshold": 8}})

    with ThreadPoolExecutor(max_workers=4) as executor:
        candidates, features, predictions = _initial_pool(cfg, executor)
        assert len(candidates) > 8
        minimal = {c.candidate_id: list(c.correspondences) for c in candidates}

        survivors = trim_candidates(candidates, features, predictions, cfg, np.random.default_rng(0), executor)

    assert len(survivors) == 8
    energies = [c.energy for c in survivors]
    assert energies == sorted(energies)
    for c in survivors:
        assert len(c.correspondences) == cfg.hypothesis.minimal_set_size
        assert c.correspondences == minimal[c.candidate_id]


def test_trim_to_single_candidate_keeps_all_correspondences() -> None:
    cfg = RelocaliserConfig.from_dict({"ransac": {"batch_size": 100, "trim_threshold": 1}})

    with ThreadPoolExecutor(max_workers=4) as executor:
        candidates, features, predictions = _initial_pool(cfg, executor)
        survivors = trim_candidates(candidates, features, predictions, cfg, np.random.default_rng(0), executor)

    assert len(survivors) == 1
    corr = survivors[0].correspondences
    assert len(corr) == cfg.hypothesis.minimal_set_size + 100
    assert all(mode == UNRESOLVED_MODE for _, mode in corr[cfg.hypothesis.minimal_set_size:])
