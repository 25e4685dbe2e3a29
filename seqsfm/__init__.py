"""
seqsfm

Sequential (incremental) structure from motion on precomputed features and matches.
"""

from .run_sfm import run_incremental_sfm, run_sfm

__version__ = "0.1.0"

__all__ = ["run_incremental_sfm", "run_sfm"]
