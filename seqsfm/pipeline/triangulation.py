"""
seqsfm/pipeline/triangulation.py

New-track triangulation after a view has been resected.

Triangulating the tracks a new view I shares with each reconstructed view J
is independent per J and may run on the worker pool; it only reads the
scene. The proposals are then merged into the structure on the calling
thread in ascending partner id, so the result does not depend on the number
of workers or on their scheduling.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

from seqsfm.cameras import IntrinsicBase
from seqsfm.geometry import Pose, angle_between_rays_deg, cheirality_mask, triangulate_dlt
from seqsfm.scene import Landmark, Observation
from seqsfm.tracks import common_tracks
from seqsfm.utils.parallel import parallel_map

from .config import TriangulationConfig
from .state import SfMState


@dataclass
class PairTriangulationStats:
    other_view: int
    putative: int = 0
    added: int = 0
    extended: int = 0


@dataclass
class _PairProposal:
    """Landmarks triangulated from one view pair before they are merged."""
    other_view: int
    putative: int = 0
    new_points: Dict[int, np.ndarray] = field(default_factory=dict)


@dataclass
class _PairContext:
    I: int
    J: int
    cam_i: IntrinsicBase
    cam_j: IntrinsicBase
    pose_i: Pose
    pose_j: Pose
    thr_i: float
    thr_j: float


def _accept_observation(cam, pose, X, x, max_residual) -> bool:
    return pose.depth(X) > 0 and np.linalg.norm(cam.residual(pose, X, x)) < max_residual


def _pair_context(state: SfMState, view_id: int, other_id: int, config: TriangulationConfig) -> _PairContext:
    sfm_data = state.sfm_data
    I, J = min(view_id, other_id), max(view_id, other_id)
    return _PairContext(
        I=I,
        J=J,
        cam_i=sfm_data.intrinsic_for_view(I),
        cam_j=sfm_data.intrinsic_for_view(J),
        pose_i=sfm_data.get_pose_or_die(I),
        pose_j=sfm_data.get_pose_or_die(J),
        thr_i=max(config.min_residual_px, state.residual_thresholds.get(I, config.min_residual_px)),
        thr_j=max(config.min_residual_px, state.residual_thresholds.get(J, config.min_residual_px)),
    )


def propose_pair_landmarks(
    state: SfMState,
    view_id: int,
    other_id: int,
    config: TriangulationConfig,
) -> _PairProposal:
    """Triangulate every shared track of the pair that has no landmark yet; read only."""
    ctx = _pair_context(state, view_id, other_id, config)
    store = state.sfm_data.structure
    proposal = _PairProposal(other_view=other_id)

    P_i = ctx.cam_i.projection_matrix(ctx.pose_i)
    P_j = ctx.cam_j.projection_matrix(ctx.pose_j)
    idx_i = state.track_index.get(ctx.I, {})
    idx_j = state.track_index.get(ctx.J, {})

    for tid in common_tracks(state.track_index, (ctx.I, ctx.J)):
        if tid in store:
            continue
        proposal.putative += 1
        xI = state.xy(ctx.I, idx_i[tid])
        xJ = state.xy(ctx.J, idx_j[tid])
        X = triangulate_dlt(P_i, P_j, ctx.cam_i.get_ud_pixel(xI), ctx.cam_j.get_ud_pixel(xJ))
        X2 = X.reshape(1, 3)
        if not (cheirality_mask(ctx.pose_i, X2)[0] and cheirality_mask(ctx.pose_j, X2)[0]):
            continue
        angle = angle_between_rays_deg(
            ctx.pose_i, ctx.cam_i.bearing(xI), ctx.pose_j, ctx.cam_j.bearing(xJ)
        )
        if (
            angle > config.min_angle_deg
            and np.linalg.norm(ctx.cam_i.residual(ctx.pose_i, X, xI)) < ctx.thr_i
            and np.linalg.norm(ctx.cam_j.residual(ctx.pose_j, X, xJ)) < ctx.thr_j
        ):
            proposal.new_points[tid] = X
    return proposal


def merge_pair_landmarks(
    state: SfMState,
    view_id: int,
    proposal: _PairProposal,
    config: TriangulationConfig,
) -> PairTriangulationStats:
    """
    Apply one pair's proposals: insert landmarks that are still absent and
    extend existing ones with the pair's missing observations.
    """
    ctx = _pair_context(state, view_id, proposal.other_view, config)
    store = state.sfm_data.structure
    stats = PairTriangulationStats(other_view=proposal.other_view, putative=proposal.putative)
    idx_i = state.track_index.get(ctx.I, {})
    idx_j = state.track_index.get(ctx.J, {})

    for tid in common_tracks(state.track_index, (ctx.I, ctx.J)):
        ob_i = Observation(state.xy(ctx.I, idx_i[tid]), idx_i[tid])
        ob_j = Observation(state.xy(ctx.J, idx_j[tid]), idx_j[tid])

        lm = store.get(tid)
        if lm is None:
            X = proposal.new_points.get(tid)
            if X is not None and store.insert_if_absent(
                tid, Landmark(X=X, obs={ctx.I: ob_i, ctx.J: ob_j})
            ):
                stats.added += 1
            continue

        if ctx.I not in lm.obs and _accept_observation(ctx.cam_i, ctx.pose_i, lm.X, ob_i.x, ctx.thr_i):
            if store.upsert_observation(tid, ctx.I, ob_i):
                stats.extended += 1
        if ctx.J not in lm.obs and _accept_observation(ctx.cam_j, ctx.pose_j, lm.X, ob_j.x, ctx.thr_j):
            if store.upsert_observation(tid, ctx.J, ob_j):
                stats.extended += 1

    return stats


def triangulate_new_tracks(
    state: SfMState,
    view_id: int,
    config: TriangulationConfig,
    num_workers: int = 1,
    logger=None,
) -> List[PairTriangulationStats]:
    """Triangulate view_id against every other reconstructed view."""
    others = [v for v in state.sfm_data.valid_views() if v != view_id]
    proposals = parallel_map(
        lambda other: propose_pair_landmarks(state, view_id, other, config),
        others,
        num_workers,
    )
    results = [merge_pair_landmarks(state, view_id, p, config) for p in proposals]
    if logger:
        added = sum(r.added for r in results)
        extended = sum(r.extended for r in results)
        putative = sum(r.putative for r in results)
        logger.info(
            f"Triangulated from view {view_id}: +{added}/{putative} new | {extended} obs extended | "
            f"3D points: {len(state.sfm_data.structure)}"
        )
    return results
