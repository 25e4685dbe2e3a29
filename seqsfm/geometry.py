# seqsfm/geometry.py
"""
Public geometry API.

Internals live in seqsfm/geometry_utils/.
Import from here in the rest of the codebase to avoid deep-path imports.
"""

from seqsfm.geometry_utils.projective import projection_matrix, camera_center, Pose
from seqsfm.geometry_utils.triangulation import (
    triangulate_dlt,
    angle_between_rays_deg,
    cheirality_mask,
)
from seqsfm.geometry_utils.twoview import estimate_relative_pose, TwoViewResult

__all__ = [
    "projection_matrix",
    "camera_center",
    "Pose",
    "triangulate_dlt",
    "angle_between_rays_deg",
    "cheirality_mask",
    "estimate_relative_pose",
    "TwoViewResult",
]
