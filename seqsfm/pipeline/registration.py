"""
seqsfm/pipeline/registration.py

Incremental view registration.
Handles resection-candidate selection (unrestricted or sliding window)
and resection of a single view.
"""

from __future__ import annotations
from typing import List, Optional, Sequence, Tuple

import numpy as np

from seqsfm.cameras import make_intrinsic
from seqsfm.localization import krt_from_p, localize, refine_pose
from seqsfm.scene import Observation
from seqsfm.utils.parallel import parallel_map

from .config import ResectionConfig, TriangulationConfig
from .state import SfMState
from .triangulation import triangulate_new_tracks


# =========================================================
# Candidate selection
# =========================================================

def select_resection_group(scores: Sequence[Tuple[int, int]], ratio: float) -> List[int]:
    """
    Best-scoring view plus every view scoring at least ratio * best.

    scores: (view_id, score) pairs. Ties are ordered by view id.
    Returns [] when the best score is 0.
    """
    ranked = sorted(scores, key=lambda vs: (-vs[1], vs[0]))
    if not ranked or ranked[0][1] <= 0:
        return []
    best = ranked[0][1]
    group = [ranked[0][0]]
    for vid, s in ranked[1:]:
        if s >= ratio * best:
            group.append(vid)
    return group


def score_candidates(state: SfMState, views, num_workers: int = 1) -> List[Tuple[int, int]]:
    """2D-3D correspondence count for each view."""
    views = sorted(views)
    counts = parallel_map(state.count_2d3d_correspondences, views, num_workers)
    return list(zip(views, counts))


def _window_bounds(ids, window: int) -> Tuple[int, int]:
    lo = min(ids)
    hi = max(ids)
    return max(0, lo - window), hi + window


def find_images_with_possible_resection(
    state: SfMState,
    config: ResectionConfig,
    num_workers: int = 1,
    logger=None,
) -> Optional[List[int]]:
    """
    Next batch of views to resect.

    Returns a non-empty list of view ids, [] when the sliding window was
    just widened (try again), or None when growth is over.
    """
    if not state.has_pending_views() or len(state.sfm_data.structure) == 0:
        return None

    W = config.window_size
    if state.restricted and not state.subset:
        lo, hi = _window_bounds(state.reconstructed, W)
        state.absorb_window(lo, hi)
        # widen until something is absorbed or nothing remains
        while not state.subset and state.remaining:
            lo, hi = max(0, lo - W), hi + W
            state.absorb_window(lo, hi)

    active = state.active_views()
    scores = score_candidates(state, active, num_workers)
    group = select_resection_group(scores, config.group_ratio)

    if logger:
        logger.info(
            f"Active views: {len(active)} | remaining: {len(state.remaining)} | "
            f"reconstructed tracks: {len(state.sfm_data.structure)}"
        )

    if group:
        return group

    # No resection possible from the active set
    if not state.restricted:
        state.remaining.clear()
        return None
    if not state.remaining:
        state.subset.clear()
        return None

    # Restricted: widen around the current subset
    lo, hi = _window_bounds(state.subset, W)
    moved = state.absorb_window(lo, hi)
    if moved == 0:
        lo, hi = _window_bounds(state.reconstructed | state.subset, W)
        while moved == 0 and state.remaining:
            lo, hi = max(0, lo - W), hi + W
            moved = state.absorb_window(lo, hi)
    if logger:
        logger.info(f"Widened resection window to [{lo}, {hi}] (+{moved} views)")
    return []


# =========================================================
# Resection
# =========================================================

def resection(
    state: SfMState,
    view_id: int,
    config: ResectionConfig,
    tri_config: TriangulationConfig,
    num_workers: int = 1,
    logger=None,
) -> bool:
    """
    Add one view to the reconstruction.

    A. 2D-3D correspondences against existing landmarks
    B. Robust localization (PnP with a known intrinsic, DLT otherwise)
    C. Intrinsic creation from P when the view had none, pose refinement
    D. Commit pose (and intrinsic), keep consistent observations
    E. Triangulate tracks shared with other reconstructed views
    """
    sfm_data = state.sfm_data
    view = sfm_data.views[view_id]

    corr = state.tracks_with_landmark(view_id)
    if not corr:
        if logger:
            logger.info(f"Resection of view {view_id}: FAILED (no 2D-3D correspondence)")
        return False

    tids = [t for t, _ in corr]
    feat_ids = [f for _, f in corr]
    X3d = np.asarray([sfm_data.structure[t].X for t in tids], dtype=np.float64)
    x2d = np.asarray([state.xy(view_id, f) for f in feat_ids], dtype=np.float64).reshape(-1, 2)

    cam = sfm_data.intrinsic_for_view(view_id)
    x_loc = cam.get_ud_pixel(x2d) if cam is not None else x2d

    loc = localize(
        X3d, x_loc, cam,
        threshold_px=config.thresh_px,
        max_iterations=config.max_iterations,
        seed=config.rng_seed + int(view_id),
    )
    if logger:
        n_inl = 0 if loc is None else loc.inliers.size
        logger.info(
            f"Robust resection of view {view_id}: {n_inl}/{len(tids)} inliers "
            f"({'OK' if loc is not None else 'FAILED'})"
        )
    if loc is None:
        return False

    new_intrinsic = cam is None
    if new_intrinsic:
        K, _, _ = krt_from_p(loc.projection_matrix)
        focal = 0.5 * (K[0, 0] + K[1, 1])
        cam = make_intrinsic(config.camera_model, view.width, view.height, focal, K[0, 2], K[1, 2])
        if logger:
            logger.info(f"New intrinsic for view {view_id}: {cam}")

    pose = refine_pose(cam, loc.pose, X3d, x2d, loc.inliers, max_nfev=config.refine_max_nfev)
    if pose is None:
        if logger:
            logger.info(f"Pose refinement of view {view_id} failed")
        return False

    # Commit
    if new_intrinsic:
        new_id = sfm_data.next_intrinsic_id()
        sfm_data.intrinsics[new_id] = cam
        view.id_intrinsic = new_id
    sfm_data.set_pose(view_id, pose)
    state.residual_thresholds[view_id] = loc.error_max

    # Keep the 2D-3D correspondences that agree with the refined pose
    store = sfm_data.structure
    kept = 0
    for k, tid in enumerate(tids):
        X = X3d[k]
        if pose.depth(X) > 0 and np.linalg.norm(cam.residual(pose, X, x2d[k])) < loc.error_max:
            if store.upsert_observation(tid, view_id, Observation(x2d[k], feat_ids[k])):
                kept += 1
    if logger:
        logger.info(f"View {view_id}: {kept} observations added to existing landmarks")

    triangulate_new_tracks(state, view_id, tri_config, num_workers, logger)
    return True
