# ---------------------------------------------------------
# Observation-level outlier removal on the scene
# ---------------------------------------------------------
from typing import Dict, List

import numpy as np

from seqsfm.geometry_utils.triangulation import angle_between_rays_deg
from seqsfm.scene import Landmark, SfMData


def remove_outliers_pixel_residual(
    sfm_data: SfMData,
    threshold_px: float,
    min_track_length: int = 2,
) -> int:
    """
    Drop every observation whose residual exceeds threshold_px on either axis.
    Landmarks left with fewer than min_track_length observations are deleted.

    Returns the number of removed observations.
    """
    removed = 0
    to_delete: List[int] = []

    for tid, lm in list(sfm_data.structure.items()):
        bad = []
        for vid, ob in lm.obs.items():
            if not sfm_data.is_pose_and_intrinsic_defined(vid):
                continue
            r = sfm_data.observation_residual(vid, lm, ob)
            if not np.all(np.isfinite(r)) or np.max(np.abs(r)) > threshold_px:
                bad.append(vid)
        for vid in bad:
            del lm.obs[vid]
        removed += len(bad)
        if len(lm.obs) < min_track_length:
            to_delete.append(tid)

    for tid in to_delete:
        del sfm_data.structure[tid]
    return removed


def max_ray_angle_deg(sfm_data: SfMData, lm: Landmark) -> float:
    """Largest angle between any two observing rays of a landmark."""
    rays = []
    for vid, ob in lm.obs.items():
        if not sfm_data.is_pose_and_intrinsic_defined(vid):
            continue
        cam = sfm_data.intrinsic_for_view(vid)
        rays.append((sfm_data.get_pose_or_die(vid), cam.bearing(ob.x)))

    best = 0.0
    for i in range(len(rays)):
        for j in range(i + 1, len(rays)):
            best = max(best, float(angle_between_rays_deg(*rays[i], *rays[j])))
    return best


def remove_outliers_angle(sfm_data: SfMData, min_angle_deg: float = 2.0) -> int:
    """
    Delete landmarks whose rays never open up by more than min_angle_deg.

    Returns the number of observations removed with them.
    """
    removed = 0
    for tid, lm in list(sfm_data.structure.items()):
        if max_ray_angle_deg(sfm_data, lm) < min_angle_deg:
            removed += len(lm.obs)
            del sfm_data.structure[tid]
    return removed


def bad_track_rejector(
    sfm_data: SfMData,
    precision_px: float = 4.0,
    count: int = 0,
    min_angle_deg: float = 2.0,
    logger=None,
) -> bool:
    """
    Pixel-residual pass followed by a ray-angle pass.

    Returns True iff more than `count` observations were removed in total,
    which tells the caller another refinement round is worth running.
    """
    n_res = remove_outliers_pixel_residual(sfm_data, precision_px, 2)
    n_ang = remove_outliers_angle(sfm_data, min_angle_deg)
    if logger:
        logger.info(
            f"[reject] residual>{precision_px:.1f}px: {n_res} obs | angle<{min_angle_deg:.1f}deg: {n_ang} obs | "
            f"landmarks={len(sfm_data.structure)}"
        )
    return (n_res + n_ang) > count


def erase_unstable_poses(sfm_data: SfMData, min_points_per_pose: int = 6) -> bool:
    """Remove poses supported by fewer than min_points_per_pose observations."""
    support: Dict[int, int] = {pid: 0 for pid in sfm_data.poses}
    for lm in sfm_data.structure.values():
        for vid in lm.obs:
            view = sfm_data.views.get(vid)
            if view is not None and view.id_pose in support:
                support[view.id_pose] += 1

    removed = 0
    for pid, n in support.items():
        if n < min_points_per_pose:
            del sfm_data.poses[pid]
            removed += 1
    return removed > 0


def erase_observations_with_missing_poses(sfm_data: SfMData, min_points_per_landmark: int = 2) -> bool:
    """Drop observations on views without a pose, then landmarks that become too short."""
    removed = 0
    for tid, lm in list(sfm_data.structure.items()):
        for vid in [v for v in lm.obs if sfm_data.views[v].id_pose not in sfm_data.poses]:
            del lm.obs[vid]
            removed += 1
        if len(lm.obs) < min_points_per_landmark:
            del sfm_data.structure[tid]
            removed += 1
    return removed > 0


def erase_unstable_poses_and_observations(
    sfm_data: SfMData,
    min_points_per_pose: int = 6,
    min_points_per_landmark: int = 2,
) -> bool:
    """
    Alternate pose and observation pruning until nothing changes.
    Removing observations can starve another pose, hence the loop.
    """
    iterations = 0
    while True:
        changed = False
        if erase_unstable_poses(sfm_data, min_points_per_pose):
            changed = erase_observations_with_missing_poses(sfm_data, min_points_per_landmark)
        if not changed:
            break
        iterations += 1
    return iterations > 0
