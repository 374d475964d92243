# src/sfreloc/system/config.py
from __future__ import annotations

import numbers
from dataclasses import asdict, dataclass, field

import yaml

RESIDUAL_FORMS = ("full_covariance", "euclidean")


@dataclass(frozen=True)
class HypothesisConfig:
    minimal_set_size: int = 3
    use_all_modes: bool = True
    colour_tolerance: int = 30
    check_min_distance: bool = True
    min_mode_separation: float = 0.3
    # pairwise distance consistency between local and world points
    check_rigid_distance: bool = False
    max_translation_error: float = 0.05
    max_iterations_inner: int = 6000
    max_iterations_outer: int = 20


@dataclass(frozen=True)
class RansacConfig:
    nb_initial_candidates: int = 1024
    batch_size: int = 500
    trim_threshold: int = 64
    max_sample_attempts: int = 50
    min_score: float = 1e-6


@dataclass(frozen=True)
class RefineConfig:
    enabled: bool = False
    residual: str = "full_covariance"
    inlier_radius: float = 0.2
    max_iterations: int = 100


@dataclass(frozen=True)
class RelocaliserConfig:
    """
    Immutable relocaliser settings, passed into every attempt.

    Mirrors the nested YAML layout:
        hypothesis: {...}
        ransac: {...}
        refine: {...}
        seed, nb_threads
    """
    hypothesis: HypothesisConfig = field(default_factory=HypothesisConfig)
    ransac: RansacConfig = field(default_factory=RansacConfig)
    refine: RefineConfig = field(default_factory=RefineConfig)
    seed: int = 42
    nb_threads: int = 12

    def __post_init__(self):
        h, r = self.hypothesis, self.ransac
        if h.minimal_set_size < 3:
            raise ValueError(f"hypothesis.minimal_set_size must be >= 3, got {h.minimal_set_size}.")
        if h.max_iterations_inner <= 0 or h.max_iterations_outer <= 0:
            raise ValueError("hypothesis iteration caps must be positive.")
        if h.colour_tolerance < 0:
            raise ValueError(f"hypothesis.colour_tolerance must be >= 0, got {h.colour_tolerance}.")
        if h.min_mode_separation < 0.0 or h.max_translation_error < 0.0:
            raise ValueError("hypothesis distances must be non-negative.")
        if r.nb_initial_candidates <= 0 or r.batch_size <= 0 or r.trim_threshold <= 0 or r.max_sample_attempts <= 0:
            raise ValueError("ransac sizes must be positive.")
        if not (r.min_score > 0.0):
            raise ValueError(f"ransac.min_score must be > 0, got {r.min_score}.")
        if self.refine.residual not in RESIDUAL_FORMS:
            raise ValueError(f"refine.residual must be one of {RESIDUAL_FORMS}, got {self.refine.residual!r}.")
        if not (self.refine.inlier_radius > 0.0):
            raise ValueError(f"refine.inlier_radius must be > 0, got {self.refine.inlier_radius}.")
        if self.refine.max_iterations <= 0:
            raise ValueError(f"refine.max_iterations must be positive, got {self.refine.max_iterations}.")
        if self.nb_threads <= 0:
            raise ValueError(f"nb_threads must be positive, got {self.nb_threads}.")

    @property
    def min_valid_pixels(self) -> int:
        return max(self.hypothesis.minimal_set_size, self.ransac.batch_size)

    @classmethod
    def from_dict(cls, cfg: dict | None) -> "RelocaliserConfig":
        cfg = dict(cfg or {})
        return cls(
            hypothesis=_section(HypothesisConfig, cfg.get("hypothesis")),
            ransac=_section(RansacConfig, cfg.get("ransac")),
            refine=_section(RefineConfig, cfg.get("refine")),
            seed=_coerce("seed", 42, cfg.get("seed", 42)),
            nb_threads=_coerce("nb_threads", 12, cfg.get("nb_threads", 12)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _section(kind, values: dict | None):
    values = dict(values or {})
    known = kind.__dataclass_fields__
    unknown = sorted(set(values) - set(known))
    if unknown:
        raise ValueError(f"Unknown {kind.__name__} keys: {unknown}")
    defaults = kind()
    return kind(**{k: _coerce(f"{kind.__name__}.{k}", getattr(defaults, k), v) for k, v in values.items()})


def _coerce(name: str, default, value):
    """Convert a YAML scalar to the type of `default`, refusing lossy casts."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {value!r}.")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ValueError(f"{name} must be an integer, got {value!r}.")
        if not isinstance(value, numbers.Integral) and not float(value).is_integer():
            raise ValueError(f"{name} must be an integer, got {value!r}.")
        return int(value)
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ValueError(f"{name} must be a number, got {value!r}.")
        return float(value)
    return type(default)(value)


def load_config(path: str) -> RelocaliserConfig:
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    return RelocaliserConfig.from_dict(cfg)
