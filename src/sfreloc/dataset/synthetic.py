from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..geom.se3 import transform_points
from ..system.buffers import FeatureImage, PredictionImage
from ..system.state import FrameData


@dataclass
class SyntheticSceneConfig:
    width: int = 64
    height: int = 64
    fx: float = 50.0
    fy: float = 50.0
    depth_min: float = 1.5
    depth_max: float = 3.0
    valid_fraction: float = 0.5
    max_modes: int = 1
    outlier_offset: float = 1.0  # spread of wrong modes around the true point (m)
    mode_sigma: float = 0.05     # std-dev encoded in the inverse covariances (m)
    position_noise: float = 0.0  # noise added to the true mode mean (m)
    support: int = 100
    seed: int = 0


def backproject(depth: np.ndarray, fx: float, fy: float, cx: float, cy: float) -> np.ndarray:
    """(H,W) depth -> (H,W,3) camera-space points."""
    h, w = depth.shape
    u, v = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    x = (u - cx) / fx * depth
    y = (v - cy) / fy * depth
    return np.stack([x, y, depth], axis=-1)


def make_scene(
    T_w_c: np.ndarray,
    cfg: SyntheticSceneConfig | None = None,
    *,
    valid: np.ndarray | None = None,
) -> tuple[FrameData, FeatureImage, PredictionImage]:
    """
    Build a frame plus feature/prediction buffers observed from pose T_w_c.

    Every valid pixel gets its true world point as one mode (optionally
    perturbed by position_noise) carrying the pixel colour. When max_modes > 1
    a pixel may also hold wrong modes scattered around it with lower support,
    and the true mode sits at a random slot. Invalid pixels have no depth and
    no modes.
    """
    cfg = cfg or SyntheticSceneConfig()
    rng = np.random.default_rng(cfg.seed)
    h, w, m = cfg.height, cfg.width, cfg.max_modes

    if valid is None:
        valid = rng.random((h, w)) < cfg.valid_fraction
    valid = np.asarray(valid, dtype=bool)

    depth = rng.uniform(cfg.depth_min, cfg.depth_max, size=(h, w))
    depth[~valid] = 0.0
    local = backproject(depth, cfg.fx, cfg.fy, 0.5 * (w - 1), 0.5 * (h - 1))
    world = transform_points(T_w_c, local.reshape(-1, 3)).reshape(h, w, 3)

    rgb = rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8)

    nb_modes = np.zeros((h, w), dtype=np.int32)
    means = np.zeros((h, w, m, 3), dtype=np.float32)
    inv_cov = np.zeros((h, w, m, 3, 3), dtype=np.float32)
    colours = np.zeros((h, w, m, 3), dtype=np.uint8)
    supports = np.zeros((h, w, m), dtype=np.int32)

    inv_sigma2 = 1.0 / (cfg.mode_sigma ** 2)
    for y, x in zip(*np.nonzero(valid)):
        n = int(rng.integers(1, m + 1))
        slot_true = int(rng.integers(0, n))
        nb_modes[y, x] = n
        for k in range(n):
            inv_cov[y, x, k] = np.eye(3) * inv_sigma2
            if k == slot_true:
                mean = world[y, x]
                if cfg.position_noise > 0:
                    mean = mean + rng.normal(scale=cfg.position_noise, size=3)
                means[y, x, k] = mean
                colours[y, x, k] = rgb[y, x]
                supports[y, x, k] = cfg.support
            else:
                means[y, x, k] = world[y, x] + rng.uniform(-cfg.outlier_offset, cfg.outlier_offset, size=3)
                colours[y, x, k] = rng.integers(0, 256, size=3, dtype=np.uint8)
                supports[y, x, k] = max(1, cfg.support // 4)

    frame = FrameData(idx=0, ts=0.0, rgb=rgb, depth=depth.astype(np.float32))
    features = FeatureImage(positions=local.astype(np.float32), valid=valid, colours=rgb)
    predictions = PredictionImage(
        nb_modes=nb_modes,
        means=means,
        inv_covariances=inv_cov,
        colours=colours,
        supports=supports,
    )
    return frame, features, predictions


class SyntheticProvider:
    """PredictionProvider that returns precomputed buffers."""

    def __init__(self, features: FeatureImage, predictions: PredictionImage):
        self.features = features
        self.predictions = predictions
        self.calls = 0

    def predict(self, frame: FrameData) -> tuple[FeatureImage, PredictionImage]:
        self.calls += 1
        return self.features, self.predictions
