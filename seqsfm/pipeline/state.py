"""
seqsfm/pipeline/state.py

Holds all mutable state of one sequential reconstruction run.

The view-id sets (remaining / active subset / reconstructed) live here as
explicit fields and are only changed through the helpers below.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from seqsfm.errors import WindowInvariantError
from seqsfm.features import FeaturesProvider, MatchesProvider, Pair
from seqsfm.scene import SfMData
from seqsfm.tracks import Track


class EngineStatus(str, Enum):
    INIT = "init"
    SEEDING = "seeding"
    GROWING = "growing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SfMResult:
    """Outcome of one reconstruction run. sfm_data is the scene that was refined in place."""
    success: bool
    sfm_data: SfMData
    status: EngineStatus
    initial_pair: Optional[Pair] = None
    stats: Dict[str, float] = field(default_factory=dict)


class SfMState:
    """
    Mutable state container for incremental SfM.

    Usage:
        state = SfMState(sfm_data, features, matches)

        xy = state.xy(view_id, feat_id)
        tids = state.tracks_with_landmark(view_id)
        state.mark_attempted(view_id)
    """

    def __init__(
        self,
        sfm_data: SfMData,
        features: FeaturesProvider,
        matches: MatchesProvider,
    ):
        self.sfm_data = sfm_data
        self.features = features
        self.matches = matches

        # Tracks (populated by track building stage)
        self.tracks: Dict[int, Track] = {}
        self.track_index: Dict[int, Dict[int, int]] = {}   # view_id -> {track_id: feat_id}

        # View bookkeeping
        self.remaining: Set[int] = set()
        self.subset: Set[int] = set()            # sliding-window active subset
        self.reconstructed: Set[int] = set()
        self.restricted = False

        # Per-view residual threshold from the robust estimators
        self.residual_thresholds: Dict[int, float] = {}

        self.initial_pair: Optional[Pair] = None
        self.status = EngineStatus.INIT
        self.n_groups = 0

    # =========================================================
    # Feature / track lookups
    # =========================================================

    def xy(self, view_id: int, feat_id: int) -> np.ndarray:
        return self.features.xy(view_id, feat_id)

    def tracks_with_landmark(self, view_id: int) -> List[Tuple[int, int]]:
        """Sorted (track_id, feat_id) for the view's tracks that already have a landmark."""
        structure = self.sfm_data.structure
        return sorted(
            (tid, feat) for tid, feat in self.track_index.get(view_id, {}).items() if tid in structure
        )

    def count_2d3d_correspondences(self, view_id: int) -> int:
        structure = self.sfm_data.structure
        return sum(1 for tid in self.track_index.get(view_id, {}) if tid in structure)

    # =========================================================
    # View-set helpers
    # =========================================================

    def active_views(self) -> Set[int]:
        return self.subset if self.restricted else self.remaining

    def mark_reconstructed(self, view_id: int) -> None:
        self.reconstructed.add(view_id)

    def mark_attempted(self, view_id: int) -> None:
        """A view whose resection was tried (successfully or not) leaves every pool."""
        self.remaining.discard(view_id)
        self.subset.discard(view_id)

    def absorb_window(self, lo: int, hi: int) -> int:
        """Move remaining views with lo <= id <= hi into the active subset. Returns how many moved."""
        moved = sorted(v for v in self.remaining if lo <= v <= hi)
        for v in moved:
            self.subset.add(v)
            self.remaining.discard(v)
        self.check_window_invariant()
        return len(moved)

    def check_window_invariant(self) -> None:
        overlap = self.subset & self.remaining
        if overlap:
            raise WindowInvariantError(f"views both active and remaining: {sorted(overlap)}")
        readmitted = self.subset & self.reconstructed
        if readmitted:
            raise WindowInvariantError(f"already reconstructed views re-admitted: {sorted(readmitted)}")

    def has_pending_views(self) -> bool:
        return bool(self.remaining or self.subset)

    # =========================================================
    # Result
    # =========================================================

    def build_result(self, stats: Optional[Dict[str, float]] = None) -> SfMResult:
        return SfMResult(
            success=self.status == EngineStatus.DONE,
            sfm_data=self.sfm_data,
            status=self.status,
            initial_pair=self.initial_pair,
            stats=dict(stats or {}),
        )
