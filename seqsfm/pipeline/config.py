"""
seqsfm/pipeline/config.py

All configuration dataclasses for the sequential SfM engine.
ALL default values live here - no hardcoded numbers elsewhere.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Tuple
import json

import yaml

from seqsfm.ba import IntrinsicRefinement
from seqsfm.cameras import CameraModel


@dataclass
class SeedConfig:
    """Parameters for initial pair selection and two-view seeding."""
    # Automatic pair choice
    min_inliers: int = 100                 # Two-view inliers required to consider a pair
    min_angle_deg: float = 3.0             # Median triangulation angle must be above ...
    max_angle_deg: float = 60.0            # ... and below this
    selection_thresh_px: float = 4.0       # Initial RANSAC tolerance while scoring pairs
    selection_iterations: int = 256        # RANSAC cap while scoring pairs

    # Seeding
    seed_thresh_px: float = 4.0            # RANSAC tolerance for the chosen pair
    seed_iterations: int = 4096            # RANSAC cap for the chosen pair
    min_precision_px: float = 1.0          # Floor on the estimator's residual precision
    min_point_angle_deg: float = 2.0       # Parallax needed to keep a seed point

    # Manual fallback
    top_pairs_shown: int = 10              # Pairs listed (by match count) to the pair selector


@dataclass
class ResectionConfig:
    """Parameters for candidate selection and camera resection."""
    thresh_px: float = 4.0                 # Localizer RANSAC tolerance
    max_iterations: int = 4096             # Localizer RANSAC cap
    refine_max_nfev: int = 100             # Pose refinement evaluations
    group_ratio: float = 0.75              # Keep views scoring >= ratio * best score
    window_size: Optional[int] = None      # Sliding window half-width (None = unrestricted)
    camera_model: str = CameraModel.RADIAL3.value   # Model for intrinsics created by resection
    rng_seed: int = 0                      # DLT RANSAC sampling seed


@dataclass
class TriangulationConfig:
    """Parameters for new-track triangulation during growth."""
    min_angle_deg: float = 2.0             # Minimum parallax between the two rays
    min_residual_px: float = 4.0           # Residual gate is max(this, view threshold)


@dataclass
class BAConfig:
    """Parameters for bundle adjustment."""
    intrinsic_refinement: str = "all"      # "none" | "focal_length" | "principal_point" | "distortion" | "all", "+"-combined
    loss: str = "huber"                    # Loss function: "linear", "huber", "cauchy", "soft_l1"
    f_scale: float = 4.0                   # Loss function scale, pixels
    max_nfev: int = 100                    # Max function evaluations
    seed_max_nfev: int = 100               # Max function evaluations for the seed sub-scene
    sparse_backend: bool = True            # Allow the sparse (lsmr) solver
    sparse_pose_threshold: int = 100       # Use sparse solver above this many poses


@dataclass
class CleanupConfig:
    """Parameters for outlier rejection and unstable-pose pruning."""
    precision_px: float = 4.0              # Per-axis residual limit
    min_angle_deg: float = 2.0             # Landmarks below this max parallax are removed
    loop_min_removed: int = 50             # Re-run BA while more than this many obs are removed
    final_min_removed: int = 0             # Final pass threshold
    min_points_per_pose: int = 6           # Poses with less support are dropped
    min_points_per_landmark: int = 2       # Landmarks with fewer observations are dropped


@dataclass
class SfMConfig:
    """
    Master configuration for the sequential SfM engine.

    ALL numeric defaults live in this file. No hardcoded values elsewhere.

    Usage:
        # Default config
        config = SfMConfig()

        # Sliding-window growth for ordered sequences
        config = get_sequential_config(window_size=5)

        # Modify specific values
        config.resection.group_ratio = 0.5
        config.initial_pair = (0, 1)
    """
    seed: SeedConfig = field(default_factory=SeedConfig)
    resection: ResectionConfig = field(default_factory=ResectionConfig)
    triangulation: TriangulationConfig = field(default_factory=TriangulationConfig)
    ba: BAConfig = field(default_factory=BAConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)

    initial_pair: Optional[Tuple[int, int]] = None   # Skip automatic choice when set
    num_workers: int = 1                              # Worker threads for parallel loops

    # Logging
    verbose: bool = True

    @classmethod
    def from_dict(cls, d: dict) -> "SfMConfig":
        """Create config from dictionary (e.g., loaded from YAML/JSON)."""
        pair = d.get("initial_pair")
        return cls(
            seed=SeedConfig(**d.get("seed", {})),
            resection=ResectionConfig(**d.get("resection", {})),
            triangulation=TriangulationConfig(**d.get("triangulation", {})),
            ba=BAConfig(**d.get("ba", {})),
            cleanup=CleanupConfig(**d.get("cleanup", {})),
            initial_pair=tuple(pair) if pair is not None else None,
            num_workers=d.get("num_workers", 1),
            verbose=d.get("verbose", True),
        )

    def to_dict(self) -> dict:
        """Convert config to dictionary (for saving to YAML/JSON)."""
        d = asdict(self)
        if self.initial_pair is not None:
            d["initial_pair"] = list(self.initial_pair)
        return d

    def validate(self) -> None:
        """Raise ValueError on values the engine cannot run with."""
        if not 0.0 < self.seed.min_angle_deg < self.seed.max_angle_deg:
            raise ValueError(
                f"seed angles must satisfy 0 < min < max, got "
                f"{self.seed.min_angle_deg}, {self.seed.max_angle_deg}"
            )
        if self.seed.min_inliers < 1:
            raise ValueError("seed.min_inliers must be >= 1")
        if not 0.0 < self.resection.group_ratio <= 1.0:
            raise ValueError(f"resection.group_ratio must be in (0, 1], got {self.resection.group_ratio}")
        if self.resection.window_size is not None and self.resection.window_size < 1:
            raise ValueError("resection.window_size must be >= 1 or None")
        try:
            CameraModel(self.resection.camera_model)
        except ValueError as e:
            raise ValueError(f"Unknown camera model: {self.resection.camera_model}") from e
        parse_intrinsic_refinement(self.ba.intrinsic_refinement)
        if self.num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        if self.initial_pair is not None:
            i, j = self.initial_pair
            if i == j:
                raise ValueError(f"initial_pair must hold two different views, got {self.initial_pair}")
        for name in ("seed_thresh_px", "selection_thresh_px", "min_precision_px"):
            if getattr(self.seed, name) <= 0:
                raise ValueError(f"seed.{name} must be > 0")
        if self.resection.thresh_px <= 0 or self.cleanup.precision_px <= 0:
            raise ValueError("pixel thresholds must be > 0")


_REFINEMENT_TOKENS = {
    "none": IntrinsicRefinement.NONE,
    "focal_length": IntrinsicRefinement.ADJUST_FOCAL_LENGTH,
    "principal_point": IntrinsicRefinement.ADJUST_PRINCIPAL_POINT,
    "distortion": IntrinsicRefinement.ADJUST_DISTORTION,
    "all": IntrinsicRefinement.ADJUST_ALL,
}


def parse_intrinsic_refinement(mode: str) -> IntrinsicRefinement:
    """Turn e.g. "focal_length+distortion" into the matching IntrinsicRefinement flags."""
    flags = IntrinsicRefinement.NONE
    s = (mode or "none").replace(",", "+").replace(" ", "")
    for token in [p for p in s.split("+") if p]:
        if token not in _REFINEMENT_TOKENS:
            raise ValueError(f"Unknown intrinsic refinement token: {token}")
        flags |= _REFINEMENT_TOKENS[token]
    return flags


def load_config(path) -> SfMConfig:
    """Load an SfMConfig from a .yaml/.yml or .json file and validate it."""
    path = Path(path)
    with open(path, "r") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            d = yaml.safe_load(f) or {}
        elif path.suffix.lower() == ".json":
            d = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    config = SfMConfig.from_dict(d)
    config.validate()
    return config


# ============================================================
# PRESET CONFIGURATIONS
# ============================================================

def get_default_config() -> SfMConfig:
    """Unrestricted growth, all intrinsics refined."""
    return SfMConfig()


def get_sequential_config(window_size: int = 5) -> SfMConfig:
    """
    Configuration for ordered captures (video frames, turntable sequences).

    Candidate views are drawn from a sliding window around the already
    reconstructed view ids instead of the whole pool.
    """
    config = SfMConfig(
        resection=ResectionConfig(window_size=window_size),
    )
    return config
