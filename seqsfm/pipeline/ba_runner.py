"""
seqsfm/pipeline/ba_runner.py

Bundle adjustment operations.
"""

from __future__ import annotations

from seqsfm.ba import BAOptions, bundle_adjust, choose_solver
from seqsfm.filter_utils.filter import bad_track_rejector, erase_unstable_poses_and_observations

from .config import BAConfig, CleanupConfig, parse_intrinsic_refinement
from .state import SfMState


def run_global_ba(state: SfMState, config: BAConfig, logger=None) -> bool:
    """
    Refine all structure, all poses and the intrinsics selected by
    config.intrinsic_refinement.
    """
    n_poses = len(state.sfm_data.poses)
    solver = choose_solver(n_poses, config.sparse_backend, config.sparse_pose_threshold)
    opts = BAOptions(
        refine_poses=True,
        refine_structure=True,
        intrinsics=parse_intrinsic_refinement(config.intrinsic_refinement),
        solver=solver,
        loss=config.loss,
        f_scale=config.f_scale,
        max_nfev=config.max_nfev,
    )
    ok = bundle_adjust(state.sfm_data, opts, logger)
    if not ok and logger:
        logger.warning("Global bundle adjustment failed; keeping previous estimates")
    return ok


def refine_until_stable(
    state: SfMState,
    ba_config: BAConfig,
    cleanup_config: CleanupConfig,
    logger=None,
) -> int:
    """
    BA followed by outlier rejection, repeated while the rejector removes
    more than cleanup_config.loop_min_removed observations; then prune
    unstable poses and observations.

    Returns the number of BA rounds run.
    """
    rounds = 0
    while True:
        run_global_ba(state, ba_config, logger)
        rounds += 1
        more = bad_track_rejector(
            state.sfm_data,
            cleanup_config.precision_px,
            cleanup_config.loop_min_removed,
            cleanup_config.min_angle_deg,
            logger,
        )
        if not more:
            break

    if erase_unstable_poses_and_observations(
        state.sfm_data,
        cleanup_config.min_points_per_pose,
        cleanup_config.min_points_per_landmark,
    ):
        if logger:
            logger.info(f"Unstable poses/observations removed | poses={len(state.sfm_data.poses)}")
    return rounds
