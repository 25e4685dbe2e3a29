"""
seqsfm/pipeline/initialize.py

Initial pair selection and reconstruction seeding.
"""

from __future__ import annotations
from typing import Dict, List, Optional, Tuple

import numpy as np

from seqsfm.ba import BAOptions, IntrinsicRefinement, bundle_adjust
from seqsfm.diagnostics.sfm_diagnostics import compute_residuals_stats, residual_histogram
from seqsfm.features import Pair, canonical_pair
from seqsfm.geometry import (
    Pose,
    angle_between_rays_deg,
    estimate_relative_pose,
    triangulate_dlt,
)
from seqsfm.scene import Landmark, Observation, SfMData
from seqsfm.tracks import common_tracks
from seqsfm.utils.logging_utils import log_block
from seqsfm.utils.parallel import parallel_map

from .config import SeedConfig
from .pair_selection import PairSelector
from .state import SfMState


def _pair_pixels(state: SfMState, i: int, j: int, tids: List[int]) -> Tuple[np.ndarray, np.ndarray]:
    """Raw pixels of the given tracks in views i and j."""
    idx_i = state.track_index[i]
    idx_j = state.track_index[j]
    x1 = np.asarray([state.xy(i, idx_i[t]) for t in tids], dtype=np.float64).reshape(-1, 2)
    x2 = np.asarray([state.xy(j, idx_j[t]) for t in tids], dtype=np.float64).reshape(-1, 2)
    return x1, x2


def score_initial_pair(
    state: SfMState,
    pair: Pair,
    config: SeedConfig,
) -> Optional[float]:
    """
    Median triangulation angle of a candidate seed pair, or None if the pair
    does not qualify (too few inliers, or median outside the allowed range).
    """
    i, j = canonical_pair(*pair)
    cam_i = state.sfm_data.intrinsic_for_view(i)
    cam_j = state.sfm_data.intrinsic_for_view(j)
    if cam_i is None or cam_j is None:
        return None

    tids = common_tracks(state.track_index, (i, j))
    if len(tids) < config.min_inliers:
        return None

    x1, x2 = _pair_pixels(state, i, j, tids)
    u1 = cam_i.get_ud_pixel(x1)
    u2 = cam_j.get_ud_pixel(x2)
    rel = estimate_relative_pose(
        u1, u2, cam_i.K, cam_j.K,
        threshold_px=config.selection_thresh_px,
        max_iterations=config.selection_iterations,
    )
    if rel is None or rel.inliers.size < config.min_inliers:
        return None

    inl = rel.inliers
    pose_i = Pose.identity()
    X = triangulate_dlt(
        cam_i.projection_matrix(pose_i), cam_j.projection_matrix(rel.pose), u1[inl], u2[inl]
    )
    ok = np.isfinite(X).all(axis=1)
    if not np.any(ok):
        return None
    angles = np.sort(angle_between_rays_deg(
        pose_i, cam_i.bearing(x1[inl][ok]), rel.pose, cam_j.bearing(x2[inl][ok])
    ))
    median = float(angles[angles.size // 2])
    if config.min_angle_deg < median < config.max_angle_deg:
        return median
    return None


def automatic_initial_pair(
    state: SfMState,
    config: SeedConfig,
    num_workers: int = 1,
    logger=None,
) -> Optional[Pair]:
    """
    Pick the pair with the widest median triangulation angle inside
    (min_angle_deg, max_angle_deg). Returns None if no pair qualifies.
    """
    sfm_data = state.sfm_data
    valid = {v for v in state.remaining if sfm_data.has_valid_intrinsic(v)}
    if len(valid) < 2:
        return None

    candidates = [p for p in state.matches.pairs() if p[0] in valid and p[1] in valid]
    scores = parallel_map(lambda p: score_initial_pair(state, p, config), candidates, num_workers)

    accepted = sorted(
        ((s, p) for s, p in zip(scores, candidates) if s is not None),
        key=lambda sp: (-sp[0], sp[1]),
    )
    if logger:
        for s, p in accepted[:5]:
            logger.info(f"  init candidate {p}: median angle={s:.2f} deg")

    if not accepted:
        return None
    best = accepted[0][1]
    if logger:
        logger.info(f"Chosen initial pair: {best} median angle={accepted[0][0]:.2f} deg")
    return best


def choose_initial_pair_manually(
    state: SfMState,
    selector: PairSelector,
    config: SeedConfig,
    logger=None,
) -> Optional[Pair]:
    """
    Offer the best pairs (by match count, both views with a valid intrinsic)
    to an external selector, then validate its answer.
    """
    sfm_data = state.sfm_data
    candidates = [
        (p, state.matches.num_matches(p))
        for p in state.matches.pairs()
        if sfm_data.has_valid_intrinsic(p[0]) and sfm_data.has_valid_intrinsic(p[1])
    ]
    candidates.sort(key=lambda pn: (-pn[1], pn[0]))
    pair = selector.choose(candidates[: config.top_pairs_shown])
    if pair is None:
        if logger:
            logger.info("No initial pair supplied by the pair selector")
        return None

    i, j = pair
    if logger:
        logger.info(f"Putative starting pair is: ({i},{j})")
    if i == j or not state.features.has(i) or not state.features.has(j):
        if logger:
            logger.error(f"At least one of the initial pair indices is invalid: ({i},{j})")
        return None
    return i, j


def make_initial_pair_3d(
    state: SfMState,
    pair: Pair,
    config: SeedConfig,
    ba_max_nfev: int = 100,
    logger=None,
) -> bool:
    """
    Seed the reconstruction from two views.

    1. Relative pose of J w.r.t. I (I < J, I at identity)
    2. DLT triangulation of every common track
    3. Bundle adjustment of poses + structure on the two-view sub-scene
    4. Keep points with enough parallax, positive depth and small residuals

    Returns False on any failure; the main scene is only written on success.
    """
    sfm_data = state.sfm_data
    I, J = canonical_pair(*pair)
    if I not in sfm_data.views or J not in sfm_data.views:
        return False
    cam_i = sfm_data.intrinsic_for_view(I)
    cam_j = sfm_data.intrinsic_for_view(J)
    if cam_i is None or cam_j is None:
        if logger:
            logger.error(f"Seed pair ({I},{J}) needs a valid intrinsic on both views")
        return False

    tids = common_tracks(state.track_index, (I, J))
    if not tids:
        return False
    idx_i = state.track_index[I]
    idx_j = state.track_index[J]
    x1, x2 = _pair_pixels(state, I, J, tids)
    u1 = cam_i.get_ud_pixel(x1)
    u2 = cam_j.get_ud_pixel(x2)

    rel = estimate_relative_pose(
        u1, u2, cam_i.K, cam_j.K,
        threshold_px=config.seed_thresh_px,
        max_iterations=config.seed_iterations,
    )
    if rel is None:
        if logger:
            logger.error(f"Robust estimation failed to compute E for pair ({I},{J})")
        return False
    precision = max(rel.residual_precision, config.min_precision_px)
    if logger:
        logger.info(
            f"Initial pair ({I},{J}): common tracks={len(tids)} inliers={rel.inliers.size} "
            f"residual precision={precision:.2f}px"
        )

    # Two-view sub-scene sharing the views and intrinsics of the main scene
    view_i = sfm_data.views[I]
    view_j = sfm_data.views[J]
    tiny = SfMData(
        views={I: view_i, J: view_j},
        intrinsics={view_i.id_intrinsic: cam_i, view_j.id_intrinsic: cam_j},
        poses={view_i.id_pose: Pose.identity(), view_j.id_pose: rel.pose},
    )
    X = triangulate_dlt(
        cam_i.projection_matrix(Pose.identity()), cam_j.projection_matrix(rel.pose), u1, u2
    )
    for k, tid in enumerate(tids):
        if not np.isfinite(X[k]).all():
            continue
        tiny.structure[tid] = Landmark(
            X=X[k],
            obs={I: Observation(x1[k], idx_i[tid]), J: Observation(x2[k], idx_j[tid])},
        )

    opts = BAOptions(
        refine_poses=True,
        refine_structure=True,
        intrinsics=IntrinsicRefinement.NONE,
        solver="dense",
        max_nfev=ba_max_nfev,
    )
    if not bundle_adjust(tiny, opts, logger):
        if logger:
            logger.error("Bundle adjustment of the initial pair failed")
        return False

    pose_i = tiny.poses[view_i.id_pose]
    pose_j = tiny.poses[view_j.id_pose]

    accepted: Dict[int, Landmark] = {}
    for tid, lm in tiny.structure.items():
        ob_i, ob_j = lm.obs[I], lm.obs[J]
        angle = angle_between_rays_deg(pose_i, cam_i.bearing(ob_i.x), pose_j, cam_j.bearing(ob_j.x))
        if (
            angle > config.min_point_angle_deg
            and pose_i.depth(lm.X) > 0
            and pose_j.depth(lm.X) > 0
            and np.linalg.norm(cam_i.residual(pose_i, lm.X, ob_i.x)) < precision
            and np.linalg.norm(cam_j.residual(pose_j, lm.X, ob_j.x)) < precision
        ):
            accepted[tid] = lm

    if not accepted:
        if logger:
            logger.error(f"No point of the initial pair ({I},{J}) passed validation")
        return False

    # Commit to the main scene
    sfm_data.set_pose(I, pose_i)
    sfm_data.set_pose(J, pose_j)
    for tid, lm in accepted.items():
        sfm_data.structure[tid] = lm
    state.residual_thresholds[I] = precision
    state.residual_thresholds[J] = precision
    state.remaining.discard(I)
    state.remaining.discard(J)
    state.mark_reconstructed(I)
    state.mark_reconstructed(J)
    state.initial_pair = (I, J)

    if logger:
        stats = compute_residuals_stats(sfm_data)
        logger.info(
            f"Initialized points: {len(accepted)}/{len(tids)} | residual mean={stats['mean']:.3f} "
            f"median={stats['median']:.3f} max={stats['max']:.3f}"
        )
        log_block(logger, "Histogram of residuals (initial pair):", residual_histogram(sfm_data))
    return True
