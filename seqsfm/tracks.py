from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np

from seqsfm.features import Pair


@dataclass(frozen=True)
class Track:
    """A multi-view track: mapping view_id -> feature index."""
    obs: Mapping[int, int]

    def views(self) -> Set[int]:
        return set(self.obs.keys())

    def __len__(self) -> int:
        return len(self.obs)


class UnionFind:
    def __init__(self, n: int):
        self.parent = np.arange(n, dtype=np.int64)
        self.rank = np.zeros(n, dtype=np.int64)

    def find(self, a: int) -> int:
        while self.parent[a] != a:
            self.parent[a] = self.parent[self.parent[a]]
            a = self.parent[a]
        return int(a)

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            self.parent[ra] = rb
        elif self.rank[ra] > self.rank[rb]:
            self.parent[rb] = ra
        else:
            self.parent[rb] = ra
            self.rank[ra] += 1


def build_tracks(
    num_feats_per_view: Mapping[int, int],
    pairwise_matches: Mapping[Pair, np.ndarray],
    min_track_len: int = 2,
    logger: Optional[logging.Logger] = None,
) -> Dict[int, Track]:
    """
    Build tracks with union-find over (view_id, feat_id) nodes.

    A component holding two features of the same view is inconsistent and
    is dropped entirely. Track ids are assigned in order of each component's
    smallest node, so the result does not depend on dict ordering.
    """
    view_ids = sorted(num_feats_per_view.keys())
    counts = [int(num_feats_per_view[v]) for v in view_ids]
    offsets = dict(zip(view_ids, np.cumsum([0] + counts[:-1]).tolist()))
    total = int(sum(counts))

    uf = UnionFind(total)

    def node_id(view: int, feat: int) -> int:
        return offsets[view] + int(feat)

    for (i, j), matches in pairwise_matches.items():
        if i not in offsets or j not in offsets:
            continue
        for a, b in np.asarray(matches, dtype=np.int64).reshape(-1, 2):
            uf.union(node_id(i, a), node_id(j, b))

    comp: Dict[int, List[Tuple[int, int]]] = {}
    for view, n in zip(view_ids, counts):
        off = offsets[view]
        for feat in range(n):
            comp.setdefault(uf.find(off + feat), []).append((view, feat))

    tracks: Dict[int, Track] = {}
    conflict_components = 0
    for nodes in comp.values():
        if len(nodes) < min_track_len:
            continue
        obs: Dict[int, int] = {}
        conflict = False
        for view, feat in nodes:
            if view in obs:
                conflict = True
                break
            obs[view] = feat
        if conflict:
            conflict_components += 1
            continue
        tracks[len(tracks)] = Track(obs=obs)

    if logger:
        logger.info(
            f"[tracks] components={len(comp)} tracks_kept={len(tracks)} "
            f"conflict_components={conflict_components}"
        )
    return tracks


def tracks_per_view(tracks: Mapping[int, Track]) -> Dict[int, Dict[int, int]]:
    """view_id -> {track_id: feat_id} index, used for 2D-3D lookups."""
    index: Dict[int, Dict[int, int]] = {}
    for tid, tr in tracks.items():
        for vid, feat in tr.obs.items():
            index.setdefault(vid, {})[tid] = feat
    return index


def common_tracks(
    index: Mapping[int, Mapping[int, int]], view_ids: Iterable[int]
) -> List[int]:
    """Sorted ids of tracks observed in every view of view_ids."""
    view_ids = list(view_ids)
    if not view_ids:
        return []
    common = set(index.get(view_ids[0], {}).keys())
    for v in view_ids[1:]:
        common &= set(index.get(v, {}).keys())
    return sorted(common)


def track_length_histogram(tracks: Mapping[int, Track]) -> Dict[int, int]:
    hist: Dict[int, int] = {}
    for tr in tracks.values():
        hist[len(tr)] = hist.get(len(tr), 0) + 1
    return dict(sorted(hist.items()))
