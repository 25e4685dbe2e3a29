"""
seqsfm/scene.py

Scene model mutated in place by the reconstruction engine:
views, intrinsics, poses and landmarks (keyed by track id).

Landmark mutations that may happen from worker threads go through
LandmarkStore, which serializes writers per landmark id.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import numpy as np

from seqsfm.cameras import IntrinsicBase
from seqsfm.geometry_utils.projective import Pose

_N_STRIPES = 64


@dataclass
class View:
    id_view: int
    id_intrinsic: Optional[int]
    id_pose: int
    width: int
    height: int


@dataclass
class Observation:
    x: np.ndarray     # (2,) pixel
    id_feat: int

    def __post_init__(self):
        self.x = np.asarray(self.x, dtype=np.float64).reshape(2)


@dataclass
class Landmark:
    X: np.ndarray                                   # (3,) world point
    obs: Dict[int, Observation] = field(default_factory=dict)   # view_id -> observation

    def __post_init__(self):
        self.X = np.asarray(self.X, dtype=np.float64).reshape(3)


class LandmarkStore:
    """
    Track-id keyed landmark map.

    Plain reads behave like a dict. Writes coming from parallel loops use
    insert_if_absent / upsert_observation, which take the stripe lock of the
    landmark id (and the map lock when the key set changes).
    """

    def __init__(self, landmarks: Optional[Dict[int, Landmark]] = None):
        self._data: Dict[int, Landmark] = dict(landmarks or {})
        self._map_lock = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(_N_STRIPES)]

    def _lock_for(self, track_id: int) -> threading.Lock:
        return self._stripes[hash(track_id) % _N_STRIPES]

    # dict-like access
    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, track_id: int) -> bool:
        return track_id in self._data

    def __getitem__(self, track_id: int) -> Landmark:
        return self._data[track_id]

    def __setitem__(self, track_id: int, lm: Landmark) -> None:
        with self._map_lock:
            self._data[track_id] = lm

    def __delitem__(self, track_id: int) -> None:
        with self._map_lock:
            del self._data[track_id]

    def __iter__(self) -> Iterator[int]:
        return iter(self._data)

    def get(self, track_id: int, default=None):
        return self._data.get(track_id, default)

    def keys(self):
        return self._data.keys()

    def values(self):
        return self._data.values()

    def items(self):
        return self._data.items()

    def clear(self) -> None:
        with self._map_lock:
            self._data.clear()

    # concurrent upserts
    def insert_if_absent(self, track_id: int, lm: Landmark) -> bool:
        """Insert lm under track_id unless a landmark already exists. Returns True if inserted."""
        with self._lock_for(track_id):
            with self._map_lock:
                if track_id in self._data:
                    return False
                self._data[track_id] = lm
                return True

    def upsert_observation(self, track_id: int, view_id: int, ob: Observation) -> bool:
        """Add ob to an existing landmark if the view has no observation yet. Returns True if added."""
        with self._lock_for(track_id):
            lm = self._data.get(track_id)
            if lm is None or view_id in lm.obs:
                return False
            lm.obs[view_id] = ob
            return True


class SfMData:
    """
    Scene container: views, intrinsics and poses keyed by id, landmarks keyed by track id.
    """

    def __init__(
        self,
        views: Optional[Dict[int, View]] = None,
        intrinsics: Optional[Dict[int, IntrinsicBase]] = None,
        poses: Optional[Dict[int, Pose]] = None,
        structure: Optional[Dict[int, Landmark]] = None,
    ):
        self.views: Dict[int, View] = dict(views or {})
        self.intrinsics: Dict[int, IntrinsicBase] = dict(intrinsics or {})
        self.poses: Dict[int, Pose] = dict(poses or {})
        self.structure = LandmarkStore(structure)

    # =========================================================
    # View helpers
    # =========================================================

    def intrinsic_for_view(self, view_id: int) -> Optional[IntrinsicBase]:
        view = self.views[view_id]
        if view.id_intrinsic is None:
            return None
        return self.intrinsics.get(view.id_intrinsic)

    def has_valid_intrinsic(self, view_id: int) -> bool:
        return self.intrinsic_for_view(view_id) is not None

    def is_pose_and_intrinsic_defined(self, view_id: int) -> bool:
        view = self.views.get(view_id)
        if view is None:
            return False
        return view.id_pose in self.poses and self.intrinsic_for_view(view_id) is not None

    def get_pose_or_die(self, view_id: int) -> Pose:
        view = self.views[view_id]
        if view.id_pose not in self.poses:
            raise KeyError(f"View {view_id} has no pose")
        return self.poses[view.id_pose]

    def set_pose(self, view_id: int, pose: Pose) -> None:
        self.poses[self.views[view_id].id_pose] = pose

    def valid_views(self) -> List[int]:
        """Sorted ids of views that have both a pose and an intrinsic."""
        return sorted(v for v in self.views if self.is_pose_and_intrinsic_defined(v))

    def next_intrinsic_id(self) -> int:
        return max(self.intrinsics.keys()) + 1 if self.intrinsics else 0

    # =========================================================
    # Residuals
    # =========================================================

    def observation_residual(self, view_id: int, lm: Landmark, ob: Observation) -> np.ndarray:
        cam = self.intrinsic_for_view(view_id)
        pose = self.get_pose_or_die(view_id)
        return cam.residual(pose, lm.X, ob.x)

    def all_residuals(self) -> np.ndarray:
        """(K,2) residuals of every observation on a valid view."""
        res: List[np.ndarray] = []
        for lm in self.structure.values():
            for vid, ob in lm.obs.items():
                if not self.is_pose_and_intrinsic_defined(vid):
                    continue
                res.append(self.observation_residual(vid, lm, ob))
        if not res:
            return np.zeros((0, 2), dtype=np.float64)
        return np.asarray(res, dtype=np.float64)

    def num_observations(self) -> int:
        return sum(len(lm.obs) for lm in self.structure.values())
