"""
seqsfm/pipeline/tracks_builder.py

Track building wrapper.
"""

from __future__ import annotations

from seqsfm.diagnostics.sfm_diagnostics import format_track_stats
from seqsfm.tracks import build_tracks as _build_tracks, tracks_per_view

from .state import SfMState


def build_tracks(state: SfMState, logger=None) -> bool:
    """
    Build tracks from the filtered pairwise matches.

    Updates state.tracks and state.track_index in place.
    Returns False when no track could be built.
    """
    feats = state.features.feats_per_view
    num_feats = {v: len(feats[v]) for v in state.remaining if v in feats}
    tracks = _build_tracks(num_feats, state.matches.pairwise_matches, logger=logger)

    state.tracks = tracks
    state.track_index = tracks_per_view(tracks)

    if logger:
        logger.info(f"Tracks (multi-view): {format_track_stats(tracks)}")

    return len(tracks) > 0
