"""
seqsfm/pipeline/__init__.py

Sequential SfM pipeline.

Usage:
    from seqsfm.pipeline import SequentialSfMEngine, SfMConfig

    # Default config
    engine = SequentialSfMEngine(sfm_data, features, matches)
    ok = engine.process()

    # With config
    config = SfMConfig()
    config.resection.window_size = 5
    config.ba.intrinsic_refinement = "focal_length+principal_point"
    engine = SequentialSfMEngine(sfm_data, features, matches, config=config)
"""

from .config import (
    SfMConfig,
    SeedConfig,
    ResectionConfig,
    TriangulationConfig,
    BAConfig,
    CleanupConfig,
    get_default_config,
    get_sequential_config,
    load_config,
)

from .state import (
    EngineStatus,
    SfMState,
    SfMResult,
)

from .pair_selection import (
    PairSelector,
    NoPairSelector,
    FixedPairSelector,
    PromptPairSelector,
)

from .engine import SequentialSfMEngine

__all__ = [
    # Config
    "SfMConfig",
    "SeedConfig",
    "ResectionConfig",
    "TriangulationConfig",
    "BAConfig",
    "CleanupConfig",
    "get_default_config",
    "get_sequential_config",
    "load_config",
    # State
    "EngineStatus",
    "SfMState",
    "SfMResult",
    # Seed pair selection
    "PairSelector",
    "NoPairSelector",
    "FixedPairSelector",
    "PromptPairSelector",
    # Engine
    "SequentialSfMEngine",
]
