# src/sfreloc/system/buffers.py
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

MAX_MODES_PER_PIXEL = 10
_LOG_2PI_3 = 3.0 * np.log(2.0 * np.pi)


@dataclass(frozen=True, eq=False)
class FeatureImage:
    """
    Per-pixel patch features, as produced by the feature extractor.

    positions: (H,W,3) float32, camera-space 3D point of each pixel
    valid:     (H,W) bool, False when depth is missing
    colours:   (H,W,3) uint8, observed RGB
    """
    positions: np.ndarray
    valid: np.ndarray
    colours: np.ndarray

    def __post_init__(self):
        if self.positions.ndim != 3 or self.positions.shape[2] != 3:
            raise ValueError(f"positions must be (H,W,3), got {self.positions.shape}.")
        hw = self.positions.shape[:2]
        if self.valid.shape != hw:
            raise ValueError(f"valid must be {hw}, got {self.valid.shape}.")
        if self.colours.shape != hw + (3,):
            raise ValueError(f"colours must be {hw + (3,)}, got {self.colours.shape}.")

    @property
    def height(self) -> int:
        return int(self.positions.shape[0])

    @property
    def width(self) -> int:
        return int(self.positions.shape[1])

    @property
    def size(self) -> int:
        return self.height * self.width

    # Flat views, indexed by linear pixel index y * W + x.
    @property
    def flat_positions(self) -> np.ndarray:
        return self.positions.reshape(-1, 3)

    @property
    def flat_valid(self) -> np.ndarray:
        return self.valid.reshape(-1)

    @property
    def flat_colours(self) -> np.ndarray:
        return self.colours.reshape(-1, 3)

    def count_valid(self) -> int:
        return int(np.count_nonzero(self.valid))


@dataclass(frozen=True, eq=False)
class PredictionImage:
    """
    Per-pixel forest predictions: up to M modes per pixel.

    nb_modes:        (H,W) int, number of populated modes
    means:           (H,W,M,3) world-space mode means
    inv_covariances: (H,W,M,3,3) SPD inverse covariances
    colours:         (H,W,M,3) uint8, representative colour of each mode
    supports:        (H,W,M) int, number of training samples in each mode

    Slots at index >= nb_modes are ignored.
    """
    nb_modes: np.ndarray
    means: np.ndarray
    inv_covariances: np.ndarray
    colours: np.ndarray
    supports: np.ndarray
    log_normalisers: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        if self.nb_modes.ndim != 2:
            raise ValueError(f"nb_modes must be (H,W), got {self.nb_modes.shape}.")
        hw = self.nb_modes.shape
        if self.means.ndim != 4 or self.means.shape[:2] != hw or self.means.shape[3] != 3:
            raise ValueError(f"means must be (H,W,M,3) with (H,W)={hw}, got {self.means.shape}.")
        m = self.means.shape[2]
        if m > MAX_MODES_PER_PIXEL:
            raise ValueError(f"at most {MAX_MODES_PER_PIXEL} modes per pixel are supported, got {m}.")
        if self.inv_covariances.shape != hw + (m, 3, 3):
            raise ValueError(f"inv_covariances must be {hw + (m, 3, 3)}, got {self.inv_covariances.shape}.")
        if self.colours.shape != hw + (m, 3):
            raise ValueError(f"colours must be {hw + (m, 3)}, got {self.colours.shape}.")
        if self.supports.shape != hw + (m,):
            raise ValueError(f"supports must be {hw + (m,)}, got {self.supports.shape}.")
        if np.any(self.nb_modes < 0) or np.any(self.nb_modes > m):
            raise ValueError(f"nb_modes must lie in [0, {m}].")

        # log of the Gaussian normalisation 1 / sqrt((2 pi)^3 det(cov)), with
        # det(cov) = 1 / det(inv_cov). Unused slots may hold zeros.
        with np.errstate(divide="ignore", invalid="ignore"):
            log_det_inv = np.log(np.linalg.det(self.inv_covariances.astype(np.float64)))
        object.__setattr__(self, "log_normalisers", 0.5 * log_det_inv - 0.5 * _LOG_2PI_3)

    @property
    def height(self) -> int:
        return int(self.nb_modes.shape[0])

    @property
    def width(self) -> int:
        return int(self.nb_modes.shape[1])

    @property
    def max_modes(self) -> int:
        return int(self.means.shape[2])

    @property
    def flat_nb_modes(self) -> np.ndarray:
        return self.nb_modes.reshape(-1)

    @property
    def flat_means(self) -> np.ndarray:
        return self.means.reshape(-1, self.max_modes, 3)

    @property
    def flat_inv_covariances(self) -> np.ndarray:
        return self.inv_covariances.reshape(-1, self.max_modes, 3, 3)

    @property
    def flat_colours(self) -> np.ndarray:
        return self.colours.reshape(-1, self.max_modes, 3)

    @property
    def flat_supports(self) -> np.ndarray:
        return self.supports.reshape(-1, self.max_modes)

    @property
    def flat_log_normalisers(self) -> np.ndarray:
        return self.log_normalisers.reshape(-1, self.max_modes)


def check_same_size(features: FeatureImage, predictions: PredictionImage) -> None:
    if (features.height, features.width) != (predictions.height, predictions.width):
        raise ValueError(
            f"feature image {features.width}x{features.height} and prediction image "
            f"{predictions.width}x{predictions.height} differ in size."
        )


def usable_mask(features: FeatureImage, predictions: PredictionImage) -> np.ndarray:
    """Flat mask of pixels that may enter a correspondence."""
    return features.flat_valid & (predictions.flat_nb_modes > 0)
