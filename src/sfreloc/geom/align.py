# src/sfreloc/geom/align.py
from __future__ import annotations

import numpy as np

from .se3 import Rt_to_T


def kabsch(local_pts: np.ndarray, world_pts: np.ndarray) -> np.ndarray:
    """
    Closed-form rigid alignment (absolute orientation).

    Args:
        local_pts: (N,3) points in the camera frame.
        world_pts: (N,3) corresponding points in the world frame, N >= 3.

    Returns:
        T_w_c (4x4) minimising sum ||R @ local + t - world||^2.
        The rotation is always proper (det = +1); reflections are folded
        back by flipping the weakest singular direction.
    """
    A = np.asarray(local_pts, dtype=np.float64)
    B = np.asarray(world_pts, dtype=np.float64)
    if A.shape != B.shape or A.ndim != 2 or A.shape[1] != 3:
        raise ValueError(f"kabsch expects matching (N,3) arrays, got {A.shape} and {B.shape}.")
    if A.shape[0] < 3:
        raise ValueError("kabsch needs at least 3 correspondences.")

    cA = A.mean(axis=0)
    cB = B.mean(axis=0)
    H = (A - cA).T @ (B - cB)

    U, _, Vt = np.linalg.svd(H)
    D = np.eye(3)
    D[2, 2] = 1.0 if np.linalg.det(Vt.T @ U.T) >= 0.0 else -1.0
    R = Vt.T @ D @ U.T

    t = cB - R @ cA
    return Rt_to_T(R, t)
