"""
seqsfm/pipeline/cleanup.py

Final outlier pass run once growth is over.
"""

from __future__ import annotations

from seqsfm.filter_utils.filter import bad_track_rejector, erase_unstable_poses_and_observations

from .config import CleanupConfig
from .state import SfMState


def run_final_cleanup(state: SfMState, config: CleanupConfig, logger=None) -> bool:
    """
    One unconditional rejector pass; any removal triggers unstable
    pose/observation pruning. Returns True if anything was removed.
    """
    if logger:
        logger.info("[final cleanup] Running bad track rejector...")

    removed = bad_track_rejector(
        state.sfm_data,
        config.precision_px,
        config.final_min_removed,
        config.min_angle_deg,
        logger,
    )
    if removed:
        erase_unstable_poses_and_observations(
            state.sfm_data,
            config.min_points_per_pose,
            config.min_points_per_landmark,
        )
    return removed
