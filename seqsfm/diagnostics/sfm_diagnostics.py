"""sfm_diagnostics.py

Advisory reconstruction statistics:
- residual summary (per-axis absolute residuals over all observations)
- residual histogram
- track-length histogram

Nothing here feeds back into the reconstruction.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional

import numpy as np

from seqsfm.scene import SfMData
from seqsfm.tracks import Track, track_length_histogram


def compute_residuals_stats(sfm_data: SfMData) -> Dict[str, float]:
    """
    Statistics of |residual| over both axes of every observation.

    Returns dict with: n, min, max, mean, median
    """
    res = np.abs(sfm_data.all_residuals()).reshape(-1)
    if res.size == 0:
        return {"n": 0.0, "min": np.nan, "max": np.nan, "mean": np.nan, "median": np.nan}
    return {
        "n": float(res.size),
        "min": float(res.min()),
        "max": float(res.max()),
        "mean": float(res.mean()),
        "median": float(np.median(res)),
    }


def residual_histogram(sfm_data: SfMData, n_bins: int = 10, max_value: Optional[float] = None) -> str:
    """Text histogram of per-axis absolute residuals, one bin per line."""
    res = np.abs(sfm_data.all_residuals()).reshape(-1)
    if res.size == 0:
        return "(no residuals)"
    hi = float(max_value) if max_value is not None else max(float(res.max()), 1e-9)
    counts, edges = np.histogram(res, bins=n_bins, range=(0.0, hi))
    lines = [f"{edges[k]:8.3f} - {edges[k + 1]:8.3f} : {counts[k]}" for k in range(n_bins)]
    return "\n".join(lines)


def format_track_stats(tracks: Mapping[int, Track]) -> str:
    hist = track_length_histogram(tracks)
    body = " ".join(f"{length}:{n}" for length, n in hist.items())
    return f"tracks={len(tracks)} length histogram [{body}]"


def format_scene_summary(sfm_data: SfMData) -> str:
    return (
        f"cameras calibrated: {len(sfm_data.poses)} from {len(sfm_data.views)} input views | "
        f"3D points: {len(sfm_data.structure)} | observations: {sfm_data.num_observations()}"
    )
