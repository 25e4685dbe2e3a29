from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

import numpy as np

Pair = Tuple[int, int]


@dataclass
class Features:
    kpts_xy: np.ndarray   # (N,2) float pixel positions

    def __post_init__(self):
        self.kpts_xy = np.asarray(self.kpts_xy, dtype=np.float64).reshape(-1, 2)

    def __len__(self) -> int:
        return int(self.kpts_xy.shape[0])


@dataclass
class FeaturesProvider:
    """view_id -> ordered 2D feature positions. Descriptors never reach the engine."""
    feats_per_view: Dict[int, Features] = field(default_factory=dict)

    def has(self, view_id: int) -> bool:
        return view_id in self.feats_per_view and len(self.feats_per_view[view_id]) > 0

    def xy(self, view_id: int, feat_id: int) -> np.ndarray:
        return self.feats_per_view[view_id].kpts_xy[feat_id]


def canonical_pair(i: int, j: int) -> Pair:
    return (i, j) if i < j else (j, i)


@dataclass
class MatchesProvider:
    """Unordered view pair -> (M,2) int array of feature-index correspondences."""
    pairwise_matches: Dict[Pair, np.ndarray] = field(default_factory=dict)

    def __post_init__(self):
        canon: Dict[Pair, np.ndarray] = {}
        for (i, j), m in self.pairwise_matches.items():
            m = np.asarray(m, dtype=np.int64).reshape(-1, 2)
            if i > j:
                i, j, m = j, i, m[:, ::-1]
            canon[(i, j)] = m
        self.pairwise_matches = canon

    def pairs(self) -> List[Pair]:
        return sorted(self.pairwise_matches.keys())

    def keep_only(self, view_ids: Iterable[int]) -> None:
        """Drop every pair with an endpoint outside view_ids."""
        keep = set(view_ids)
        self.pairwise_matches = {
            p: m for p, m in self.pairwise_matches.items() if p[0] in keep and p[1] in keep
        }

    def num_matches(self, pair: Pair) -> int:
        m = self.pairwise_matches.get(canonical_pair(*pair))
        return 0 if m is None else int(m.shape[0])
