from dataclasses import dataclass
from typing import Optional

import numpy as np
from cv2 import findEssentialMat, RANSAC, recoverPose

from seqsfm.geometry_utils.projective import Pose

_MIN_CORRESPONDENCES = 8


@dataclass
class TwoViewResult:
    pose: Pose                    # relative pose of the second view, first view at identity
    inliers: np.ndarray           # (K,) indices into the input correspondences
    residual_precision: float     # pixel threshold the inliers satisfy


def _normalize(x: np.ndarray, K: np.ndarray) -> np.ndarray:
    K = np.asarray(K, dtype=np.float64)
    return (np.asarray(x, dtype=np.float64) - K[:2, 2]) / np.array([K[0, 0], K[1, 1]])


def estimate_relative_pose(
    x1: np.ndarray,
    x2: np.ndarray,
    K1: np.ndarray,
    K2: np.ndarray,
    threshold_px: float = 4.0,
    max_iterations: int = 4096,
    prob: float = 0.999,
) -> Optional[TwoViewResult]:
    """
    Robust relative pose between two calibrated views.

    Args:
      x1, x2: (N,2) undistorted pixel coordinates of the same tracks
      K1, K2: (3,3) intrinsics of each view
      threshold_px: RANSAC inlier distance, in pixels
      max_iterations: RANSAC iteration cap

    Returns:
      TwoViewResult, or None when there is not enough support for a pose.
    """
    x1 = np.asarray(x1, dtype=np.float64).reshape(-1, 2)
    x2 = np.asarray(x2, dtype=np.float64).reshape(-1, 2)
    if x1.shape[0] < _MIN_CORRESPONDENCES:
        return None

    # Work on normalized coordinates so that each view keeps its own K.
    p1 = _normalize(x1, K1)
    p2 = _normalize(x2, K2)
    f_mean = 0.25 * (K1[0, 0] + K1[1, 1] + K2[0, 0] + K2[1, 1])
    eye = np.eye(3)

    E, mask_E = findEssentialMat(
        p1, p2, eye,
        method=RANSAC,
        prob=prob,
        threshold=float(threshold_px) / float(f_mean),
        maxIters=int(max_iterations),
    )
    if E is None or mask_E is None or E.shape[0] < 3:
        return None
    # OpenCV may stack several solutions; the first one is the best scored.
    E = E[:3, :3]

    # recoverPose keeps the RANSAC inliers that also pass cheirality for the chosen (R,t)
    _, R, t, mask_pose = recoverPose(E, p1, p2, eye, mask=mask_E.copy())
    if mask_pose is None:
        return None

    inliers = np.flatnonzero(mask_pose.ravel())
    if inliers.size < _MIN_CORRESPONDENCES:
        return None

    return TwoViewResult(
        pose=Pose(R, t.reshape(3)),
        inliers=inliers,
        residual_precision=float(threshold_px),
    )
