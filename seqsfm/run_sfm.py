"""
seqsfm/run_sfm.py

Entry points for sequential structure from motion.

Usage:
    from seqsfm.run_sfm import run_incremental_sfm

    result = run_incremental_sfm(sfm_data, features, matches)
    if result.success:
        print(len(result.sfm_data.poses), len(result.sfm_data.structure))
"""

from __future__ import annotations
import logging
from typing import Optional

from seqsfm.features import FeaturesProvider, MatchesProvider
from seqsfm.pipeline.config import SfMConfig, get_default_config, get_sequential_config
from seqsfm.pipeline.engine import SequentialSfMEngine
from seqsfm.pipeline.pair_selection import PairSelector
from seqsfm.pipeline.state import SfMResult
from seqsfm.scene import SfMData
from seqsfm.utils.logging_utils import make_logger


def run_incremental_sfm(
    sfm_data: SfMData,
    features: FeaturesProvider,
    matches: MatchesProvider,
    config: Optional[SfMConfig] = None,
    pair_selector: Optional[PairSelector] = None,
    logger: Optional[logging.Logger] = None,
) -> SfMResult:
    """
    Run the sequential engine on a scene.

    Args:
        sfm_data: Views and (optional) intrinsics; poses and structure are filled in place
        features: Per-view 2D feature positions
        matches: Pairwise putative matches (feature index pairs)
        config: SfMConfig (default: get_default_config())
        pair_selector: Asked for the seed pair when automatic choice fails
        logger: Defaults to the "seqsfm" logger

    Returns:
        SfMResult
    """
    if config is None:
        config = get_default_config()
    if logger is None:
        logger = make_logger("seqsfm", level=(logging.INFO if config.verbose else logging.WARNING))

    engine = SequentialSfMEngine(sfm_data, features, matches, config, pair_selector, logger)
    engine.process()

    result = engine.result()
    logger.info(
        f"Finished. status={result.status.value} "
        f"Registered={len(sfm_data.poses)}/{len(sfm_data.views)} Points={len(sfm_data.structure)}"
    )
    return result


def run_sfm(
    sfm_data: SfMData,
    features: FeaturesProvider,
    matches: MatchesProvider,
    window_size: Optional[int] = None,
    **config_overrides,
) -> SfMResult:
    """
    Simplified entry point with keyword overrides.

    Example:
        result = run_sfm(
            sfm_data, features, matches,
            window_size=5,
            group_ratio=0.5,
            intrinsic_refinement="focal_length",
        )
    """
    if window_size is None:
        config = get_default_config()
    else:
        config = get_sequential_config(window_size)

    for key, value in config_overrides.items():
        if hasattr(config.seed, key):
            setattr(config.seed, key, value)
        elif hasattr(config.resection, key):
            setattr(config.resection, key, value)
        elif hasattr(config.triangulation, key):
            setattr(config.triangulation, key, value)
        elif hasattr(config.ba, key):
            setattr(config.ba, key, value)
        elif hasattr(config.cleanup, key):
            setattr(config.cleanup, key, value)
        elif key in ("initial_pair", "num_workers", "verbose"):
            setattr(config, key, value)
        else:
            raise ValueError(f"Unknown config key: {key}")

    return run_incremental_sfm(sfm_data, features, matches, config=config)
