import numpy as np
from cv2 import triangulatePoints

from seqsfm.geometry_utils.projective import Pose

# ----------------------------
# Small numeric helpers
# ----------------------------
_EPS_W = 1e-12


def _is_finite_xyz(X: np.ndarray) -> np.ndarray:
    return np.isfinite(np.asarray(X, dtype=np.float64)).all(axis=-1)


def triangulate_dlt(P1: np.ndarray, P2: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """
    Direct linear triangulation from two projection matrices.

    Args:
      P1, P2: (3,4) projection matrices acting on undistorted pixels
      x1, x2: (N,2) or (2,) undistorted pixel coordinates

    Returns:
      X: (N,3) or (3,) float64. Points at infinity come back as NaN.
    """
    x1 = np.asarray(x1, dtype=np.float64)
    single = x1.ndim == 1
    x1 = x1.reshape(-1, 2)
    x2 = np.asarray(x2, dtype=np.float64).reshape(-1, 2)

    # OpenCV expects 2xN
    X_h = triangulatePoints(
        np.asarray(P1, np.float64), np.asarray(P2, np.float64), x1.T.copy(), x2.T.copy()
    )
    w = X_h[3]
    good_w = np.isfinite(w) & (np.abs(w) > _EPS_W)

    X = np.full((X_h.shape[1], 3), np.nan, dtype=np.float64)
    if np.any(good_w):
        X[good_w] = (X_h[:3, good_w] / w[good_w]).T
    return X[0] if single else X


def angle_between_rays_deg(
    pose1: Pose,
    bearing1: np.ndarray,
    pose2: Pose,
    bearing2: np.ndarray,
) -> np.ndarray:
    """
    Angle between two camera-frame bearing vectors once rotated into the world frame.

    Accepts (3,) or (N,3) bearings; returns a float or (N,) array in degrees.
    """
    b1 = np.asarray(bearing1, dtype=np.float64)
    b2 = np.asarray(bearing2, dtype=np.float64)
    r1 = b1 @ pose1.R       # R^T b, row-wise
    r2 = b2 @ pose2.R
    n1 = np.linalg.norm(r1, axis=-1)
    n2 = np.linalg.norm(r2, axis=-1)
    cosang = np.sum(r1 * r2, axis=-1) / (n1 * n2 + 1e-12)
    return np.degrees(np.arccos(np.clip(cosang, -1.0, 1.0)))


def cheirality_mask(pose: Pose, X: np.ndarray) -> np.ndarray:
    """True where X is finite and lies in front of the camera."""
    X = np.asarray(X, dtype=np.float64)
    finite = _is_finite_xyz(X)
    z = np.where(finite, pose.depth(np.nan_to_num(X)), -1.0)
    return finite & (z > 0.0)
