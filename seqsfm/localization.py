"""
seqsfm/localization.py

Camera localizer: robust pose from 2D-3D correspondences and pose refinement.

Two robust estimators are used:
  - known intrinsic:   PnP RANSAC (OpenCV) on undistorted pixels
  - unknown intrinsic: 6-point DLT RANSAC on the raw pixels, which also yields
                       a projection matrix the caller can decompose into K
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from scipy.linalg import rq
from scipy.optimize import least_squares

from seqsfm.cameras import IntrinsicBase
from seqsfm.geometry_utils.projective import Pose

_MIN_PNP = 6
_MIN_DLT = 6


@dataclass
class LocalizationResult:
    pose: Pose
    inliers: np.ndarray                   # (K,) indices into the correspondences
    error_max: float                      # residual threshold the inliers satisfy, pixels
    projection_matrix: Optional[np.ndarray] = None   # (3,4), only for the DLT path


def _pnp_pose(
    K: np.ndarray,
    X3d: np.ndarray,
    x2d: np.ndarray,
    reproj_thresh: float,
    max_iterations: int,
) -> Optional[tuple]:
    """
    PnP RANSAC pose estimation.

    Returns:
        (R, t, inlier_indices) or None if failed
    """
    if X3d.shape[0] < _MIN_PNP:
        return None

    dist = np.zeros((4, 1), dtype=np.float64)
    ok, rvec, tvec, inliers = cv2.solvePnPRansac(
        X3d.astype(np.float64),
        x2d.astype(np.float64),
        K.astype(np.float64),
        dist,
        flags=cv2.SOLVEPNP_ITERATIVE,
        reprojectionError=reproj_thresh,
        iterationsCount=max_iterations,
        confidence=0.999,
    )

    if (not ok) or (inliers is None) or (len(inliers) < _MIN_PNP):
        return None

    R, _ = cv2.Rodrigues(rvec)
    return R, tvec.reshape(3), inliers.ravel()


# ----------------------------
# DLT resection
# ----------------------------

def _normalizing_transform(pts: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to 0 with mean distance sqrt(dim)."""
    dim = pts.shape[1]
    c = pts.mean(axis=0)
    d = np.linalg.norm(pts - c, axis=1).mean()
    s = np.sqrt(dim) / d if d > 1e-12 else 1.0
    T = np.eye(dim + 1)
    T[:dim, :dim] *= s
    T[:dim, dim] = -s * c
    return T


def dlt_projection_matrix(X3d: np.ndarray, x2d: np.ndarray) -> Optional[np.ndarray]:
    """Normalized DLT estimate of P (3,4) from >= 6 correspondences."""
    n = X3d.shape[0]
    if n < _MIN_DLT:
        return None
    T2 = _normalizing_transform(x2d)
    T3 = _normalizing_transform(X3d)
    xh = (T2 @ np.hstack([x2d, np.ones((n, 1))]).T).T
    Xh = (T3 @ np.hstack([X3d, np.ones((n, 1))]).T).T

    A = np.zeros((2 * n, 12), dtype=np.float64)
    A[0::2, 4:8] = -xh[:, 2:3] * Xh
    A[0::2, 8:12] = xh[:, 1:2] * Xh
    A[1::2, 0:4] = xh[:, 2:3] * Xh
    A[1::2, 8:12] = -xh[:, 0:1] * Xh

    _, _, Vt = np.linalg.svd(A)
    Pn = Vt[-1].reshape(3, 4)
    P = np.linalg.inv(T2) @ Pn @ T3
    if not np.isfinite(P).all():
        return None
    return P / np.linalg.norm(P)


def _projection_errors(P: np.ndarray, X3d: np.ndarray, x2d: np.ndarray) -> np.ndarray:
    Xh = np.hstack([X3d, np.ones((X3d.shape[0], 1))])
    proj = Xh @ P.T
    z = proj[:, 2]
    z = np.where(np.abs(z) < 1e-12, 1e-12, z)
    uv = proj[:, :2] / z[:, None]
    return np.linalg.norm(uv - x2d, axis=1)


def krt_from_p(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose P = K [R | t] with an upper-triangular K (positive diagonal, K[2,2] = 1)
    and a proper rotation R.
    """
    P = np.asarray(P, dtype=np.float64)
    M = P[:, :3]
    if np.linalg.det(M) < 0:
        P = -P
        M = -M
    K, R = rq(M)
    S = np.diag(np.sign(np.diag(K)))
    S[S == 0] = 1.0
    K = K @ S
    R = S @ R
    t = np.linalg.solve(K, P[:, 3])
    K = K / K[2, 2]
    return K, R, t


def _dlt_ransac(
    X3d: np.ndarray,
    x2d: np.ndarray,
    threshold: float,
    max_iterations: int,
    seed: int,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    n = X3d.shape[0]
    if n < _MIN_DLT:
        return None
    rng = np.random.default_rng(seed)
    best_inl = np.zeros(0, dtype=np.int64)
    for _ in range(max_iterations):
        sample = rng.choice(n, size=_MIN_DLT, replace=False)
        P = dlt_projection_matrix(X3d[sample], x2d[sample])
        if P is None:
            continue
        inl = np.flatnonzero(_projection_errors(P, X3d, x2d) < threshold)
        if inl.size > best_inl.size:
            best_inl = inl
            if inl.size == n:
                break
    if best_inl.size < _MIN_DLT:
        return None
    P = dlt_projection_matrix(X3d[best_inl], x2d[best_inl])
    if P is None:
        return None
    inl = np.flatnonzero(_projection_errors(P, X3d, x2d) < threshold)
    if inl.size < _MIN_DLT:
        return None
    return P, inl


def localize(
    X3d: np.ndarray,
    x2d: np.ndarray,
    intrinsic: Optional[IntrinsicBase],
    threshold_px: float = 4.0,
    max_iterations: int = 4096,
    seed: int = 0,
) -> Optional[LocalizationResult]:
    """
    Robust camera pose from 2D-3D correspondences.

    Args:
        X3d: (N,3) landmark positions
        x2d: (N,2) pixels; must already be undistorted when intrinsic has distortion
        intrinsic: known camera, or None to estimate a projection matrix with DLT
        threshold_px: RANSAC inlier threshold
        max_iterations: RANSAC iteration cap

    Returns:
        LocalizationResult or None if no pose could be found.
    """
    X3d = np.asarray(X3d, dtype=np.float64).reshape(-1, 3)
    x2d = np.asarray(x2d, dtype=np.float64).reshape(-1, 2)

    if intrinsic is not None:
        res = _pnp_pose(intrinsic.K, X3d, x2d, threshold_px, max_iterations)
        if res is None:
            return None
        R, t, inliers = res
        return LocalizationResult(Pose(R, t), np.sort(inliers), float(threshold_px))

    res = _dlt_ransac(X3d, x2d, threshold_px, max_iterations, seed)
    if res is None:
        return None
    P, inliers = res
    _, R, t = krt_from_p(P)
    return LocalizationResult(Pose(R, t), inliers, float(threshold_px), projection_matrix=P)


def refine_pose(
    intrinsic: IntrinsicBase,
    pose: Pose,
    X3d: np.ndarray,
    x2d: np.ndarray,
    inliers: Optional[np.ndarray] = None,
    max_nfev: int = 100,
) -> Optional[Pose]:
    """
    Refine rotation and translation with the intrinsic held fixed.

    x2d are the raw (distorted) pixels. Returns None if the solver fails
    or the refined pose is not finite.
    """
    X3d = np.asarray(X3d, dtype=np.float64).reshape(-1, 3)
    x2d = np.asarray(x2d, dtype=np.float64).reshape(-1, 2)
    if inliers is not None:
        X3d = X3d[inliers]
        x2d = x2d[inliers]
    if X3d.shape[0] < 3:
        return None

    rvec, _ = cv2.Rodrigues(pose.R)
    x0 = np.concatenate([rvec.reshape(3), pose.t])

    def residuals(p: np.ndarray) -> np.ndarray:
        R, _ = cv2.Rodrigues(p[:3].reshape(3, 1))
        return intrinsic.residual(Pose(R, p[3:6]), X3d, x2d).reshape(-1)

    try:
        res = least_squares(residuals, x0, loss="huber", f_scale=4.0, max_nfev=max_nfev)
    except (ValueError, np.linalg.LinAlgError):
        return None
    if res.status < 0 or not np.isfinite(res.x).all():
        return None
    R, _ = cv2.Rodrigues(res.x[:3].reshape(3, 1))
    return Pose(R, res.x[3:6])
