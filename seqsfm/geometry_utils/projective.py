from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


def projection_matrix(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """
    Compute the 3x4 projection matrix P = K [R | t].
    Args:
        K: (3,3) intrinsic matrix
        R: (3,3) rotation matrix
        t: (3,) or (3,1) translation vector
    Returns:
        P: (3,4) projection matrix
    """

    K = np.asarray(K, np.float64)
    R = np.asarray(R, np.float64)
    t = np.asarray(t, np.float64).reshape(3, 1)

    if K.shape != (3, 3):
        raise ValueError(f"K must be (3,3), got {K.shape}")
    if R.shape != (3, 3):
        raise ValueError(f"R must be (3,3), got {R.shape}")

    return K @ np.hstack([R, t])  # 3x4


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Compute camera center in world coordinates from extrinsics R and t.
    Args:
        R: (3,3) rotation matrix
        t: (3,) or (3,1) translation vector
    Returns:
        C: (3,) camera center in world coordinates"""
    # world->cam: Xc = R X + t  => C = -R^T t
    return (-np.asarray(R, np.float64).T @ np.asarray(t, np.float64).reshape(3, 1)).reshape(3)


@dataclass
class Pose:
    """Camera extrinsics, world -> camera: Xc = R @ X + t."""
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros(3))

    @property
    def center(self) -> np.ndarray:
        return camera_center(self.R, self.t)

    def apply(self, X: np.ndarray) -> np.ndarray:
        """Transform (3,) or (N,3) world points into camera coordinates."""
        X = np.asarray(X, dtype=np.float64)
        return X @ self.R.T + self.t

    def depth(self, X: np.ndarray) -> np.ndarray:
        return self.apply(X)[..., 2]

    def copy(self) -> "Pose":
        return Pose(self.R.copy(), self.t.copy())
