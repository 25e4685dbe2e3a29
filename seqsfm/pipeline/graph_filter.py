"""
seqsfm/pipeline/graph_filter.py

View-graph connectivity filter run before track building.
"""

from __future__ import annotations
from typing import Iterable, Set

import networkx as nx

from seqsfm.features import Pair

from .state import SfMState


def largest_biedge_connected_component(pairs: Iterable[Pair]) -> Set[int]:
    """
    Views of the largest 2-edge-connected component of the pair graph.

    Ties go to the component holding the smallest view id. A component of a
    single view is not a reconstruction candidate, so it yields an empty set.
    """
    G = nx.Graph()
    G.add_edges_from((int(i), int(j)) for i, j in pairs if i != j)
    if G.number_of_edges() == 0:
        return set()

    comps = [set(c) for c in nx.k_edge_components(G, k=2)]
    best = max(comps, key=lambda c: (len(c), -min(c)))
    if len(best) < 2:
        return set()
    return best


def filter_view_graph(state: SfMState, logger=None) -> bool:
    """
    Keep only views of the largest 2-edge-connected component and the
    matches between them. Fills state.remaining.

    Returns False if fewer than two views survive.
    """
    known = set(state.sfm_data.views.keys())
    pairs = [p for p in state.matches.pairs() if p[0] in known and p[1] in known]
    kept = largest_biedge_connected_component(pairs)

    state.matches.keep_only(kept)
    state.remaining = set(kept)

    if logger:
        logger.info(f"Number of kept views: {len(kept)} / {len(known)} | pairs: {len(state.matches.pairs())}")

    return len(kept) >= 2
