"""
seqsfm/cameras.py

Camera intrinsic models.

The engine only talks to the IntrinsicBase interface:
    project / residual        3D -> pixel
    get_ud_pixel / bearing    pixel -> undistorted pixel / unit ray
    have_disto / param_count  capabilities
    params / with_params      flat parameter vector for bundle adjustment

Parameter layout is [focal, ppx, ppy, *distortion]. Distortion follows the
OpenCV conventions (radial k1..k3, tangential t1/t2 as p1/p2, equidistant
fisheye k1..k4).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from seqsfm.geometry_utils.projective import Pose, projection_matrix

_UNDISTORT_ITERS = 20


class CameraModel(str, Enum):
    PINHOLE = "pinhole"
    RADIAL1 = "radial1"
    RADIAL3 = "radial3"
    BROWN = "brown"
    FISHEYE = "fisheye"


def _as_xy(x: np.ndarray) -> Tuple[np.ndarray, bool]:
    """Return (N,2) float64 view of x and whether the input was a single point."""
    x = np.asarray(x, dtype=np.float64)
    single = x.ndim == 1
    return x.reshape(-1, 2), single


def _restore(x: np.ndarray, single: bool) -> np.ndarray:
    return x[0] if single else x


class IntrinsicBase:
    model: CameraModel = CameraModel.PINHOLE
    n_disto: int = 0

    def __init__(
        self,
        w: int,
        h: int,
        focal: float,
        ppx: float,
        ppy: float,
        disto: Optional[Sequence[float]] = None,
    ):
        self.w = int(w)
        self.h = int(h)
        self.focal = float(focal)
        self.ppx = float(ppx)
        self.ppy = float(ppy)
        if disto is None:
            disto = np.zeros(self.n_disto)
        self.disto = np.asarray(disto, dtype=np.float64).reshape(-1)
        if self.disto.size != self.n_disto:
            raise ValueError(
                f"{self.model.value} expects {self.n_disto} distortion params, got {self.disto.size}"
            )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(w={self.w}, h={self.h}, focal={self.focal:.3f}, "
            f"pp=({self.ppx:.3f}, {self.ppy:.3f}), disto={self.disto.tolist()})"
        )

    # ---------------------------------------------------------
    # Capabilities
    # ---------------------------------------------------------

    @property
    def param_count(self) -> int:
        return 3 + self.n_disto

    def have_disto(self) -> bool:
        return self.n_disto > 0

    @property
    def K(self) -> np.ndarray:
        return np.array([
            [self.focal, 0.0, self.ppx],
            [0.0, self.focal, self.ppy],
            [0.0, 0.0, 1.0],
        ])

    def params(self) -> np.ndarray:
        return np.concatenate([[self.focal, self.ppx, self.ppy], self.disto])

    def with_params(self, p: np.ndarray) -> "IntrinsicBase":
        p = np.asarray(p, dtype=np.float64)
        return type(self)(self.w, self.h, p[0], p[1], p[2], p[3:])

    # ---------------------------------------------------------
    # Distortion on normalized coordinates (overridden per model)
    # ---------------------------------------------------------

    def add_disto(self, xn: np.ndarray) -> np.ndarray:
        return xn

    def remove_disto(self, xd: np.ndarray) -> np.ndarray:
        return xd

    # ---------------------------------------------------------
    # Pixel <-> normalized
    # ---------------------------------------------------------

    def cam2ima(self, xn: np.ndarray) -> np.ndarray:
        return xn * self.focal + np.array([self.ppx, self.ppy])

    def ima2cam(self, x: np.ndarray) -> np.ndarray:
        return (x - np.array([self.ppx, self.ppy])) / self.focal

    # ---------------------------------------------------------
    # Projection
    # ---------------------------------------------------------

    def project_cam(self, Xc: np.ndarray) -> np.ndarray:
        """Project (N,3) camera-frame points to pixels."""
        Xc = np.asarray(Xc, dtype=np.float64).reshape(-1, 3)
        z = Xc[:, 2:3]
        z = np.where(np.abs(z) < 1e-12, 1e-12, z)
        return self.cam2ima(self.add_disto(Xc[:, :2] / z))

    def project(self, pose: Pose, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        single = X.ndim == 1
        uv = self.project_cam(pose.apply(X.reshape(-1, 3)))
        return _restore(uv, single)

    def residual(self, pose: Pose, X: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Observed minus predicted pixel, (2,) or (N,2)."""
        x = np.asarray(x, dtype=np.float64)
        return x - self.project(pose, X)

    def get_ud_pixel(self, x: np.ndarray) -> np.ndarray:
        if not self.have_disto():
            return np.asarray(x, dtype=np.float64)
        xs, single = _as_xy(x)
        ud = self.cam2ima(self.remove_disto(self.ima2cam(xs)))
        return _restore(ud, single)

    def get_d_pixel(self, x: np.ndarray) -> np.ndarray:
        if not self.have_disto():
            return np.asarray(x, dtype=np.float64)
        xs, single = _as_xy(x)
        d = self.cam2ima(self.add_disto(self.ima2cam(xs)))
        return _restore(d, single)

    def bearing(self, x: np.ndarray) -> np.ndarray:
        """Unit rays in the camera frame for (2,) or (N,2) pixels."""
        xs, single = _as_xy(x)
        xn = self.remove_disto(self.ima2cam(xs))
        rays = np.hstack([xn, np.ones((xn.shape[0], 1))])
        rays /= np.linalg.norm(rays, axis=1, keepdims=True)
        return _restore(rays, single)

    def projection_matrix(self, pose: Pose) -> np.ndarray:
        return projection_matrix(self.K, pose.R, pose.t)


class PinholeIntrinsic(IntrinsicBase):
    model = CameraModel.PINHOLE
    n_disto = 0


class _RadialTangentialIntrinsic(IntrinsicBase):
    """Shared OpenCV-style radial + tangential model; subclasses fix the coefficient set."""

    def _coeffs(self) -> Tuple[float, float, float, float, float]:
        raise NotImplementedError

    def add_disto(self, xn: np.ndarray) -> np.ndarray:
        k1, k2, k3, t1, t2 = self._coeffs()
        x, y = xn[:, 0], xn[:, 1]
        r2 = x * x + y * y
        radial = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
        dx = 2.0 * t1 * x * y + t2 * (r2 + 2.0 * x * x)
        dy = t1 * (r2 + 2.0 * y * y) + 2.0 * t2 * x * y
        return np.stack([x * radial + dx, y * radial + dy], axis=1)

    def remove_disto(self, xd: np.ndarray) -> np.ndarray:
        k1, k2, k3, t1, t2 = self._coeffs()
        xu = xd.copy()
        for _ in range(_UNDISTORT_ITERS):
            x, y = xu[:, 0], xu[:, 1]
            r2 = x * x + y * y
            radial = 1.0 + r2 * (k1 + r2 * (k2 + r2 * k3))
            dx = 2.0 * t1 * x * y + t2 * (r2 + 2.0 * x * x)
            dy = t1 * (r2 + 2.0 * y * y) + 2.0 * t2 * x * y
            xu = np.stack([(xd[:, 0] - dx) / radial, (xd[:, 1] - dy) / radial], axis=1)
        return xu


class RadialK1Intrinsic(_RadialTangentialIntrinsic):
    model = CameraModel.RADIAL1
    n_disto = 1

    def _coeffs(self):
        return self.disto[0], 0.0, 0.0, 0.0, 0.0


class RadialK3Intrinsic(_RadialTangentialIntrinsic):
    model = CameraModel.RADIAL3
    n_disto = 3

    def _coeffs(self):
        k1, k2, k3 = self.disto
        return k1, k2, k3, 0.0, 0.0


class BrownT2Intrinsic(_RadialTangentialIntrinsic):
    """Radial k1, k2, k3 followed by tangential t1, t2."""
    model = CameraModel.BROWN
    n_disto = 5

    def _coeffs(self):
        k1, k2, k3, t1, t2 = self.disto
        return k1, k2, k3, t1, t2


class FisheyeIntrinsic(IntrinsicBase):
    """Equidistant fisheye: theta_d = theta * (1 + k1 theta^2 + ... + k4 theta^8)."""
    model = CameraModel.FISHEYE
    n_disto = 4

    def _theta_d(self, theta: np.ndarray) -> np.ndarray:
        k1, k2, k3, k4 = self.disto
        t2 = theta * theta
        return theta * (1.0 + t2 * (k1 + t2 * (k2 + t2 * (k3 + t2 * k4))))

    def add_disto(self, xn: np.ndarray) -> np.ndarray:
        r = np.linalg.norm(xn, axis=1)
        theta = np.arctan(r)
        scale = np.ones_like(r)
        ok = r > 1e-8
        scale[ok] = self._theta_d(theta[ok]) / r[ok]
        return xn * scale[:, None]

    def remove_disto(self, xd: np.ndarray) -> np.ndarray:
        k1, k2, k3, k4 = self.disto
        theta_d = np.linalg.norm(xd, axis=1)
        theta = theta_d.copy()
        # Newton on f(theta) = theta_d(theta) - theta_d
        for _ in range(_UNDISTORT_ITERS):
            t2 = theta * theta
            f = self._theta_d(theta) - theta_d
            df = 1.0 + t2 * (3 * k1 + t2 * (5 * k2 + t2 * (7 * k3 + t2 * 9 * k4)))
            theta = theta - f / np.where(np.abs(df) < 1e-12, 1e-12, df)
        scale = np.ones_like(theta_d)
        ok = theta_d > 1e-8
        scale[ok] = np.tan(theta[ok]) / theta_d[ok]
        return xd * scale[:, None]


_MODELS = {
    CameraModel.PINHOLE: PinholeIntrinsic,
    CameraModel.RADIAL1: RadialK1Intrinsic,
    CameraModel.RADIAL3: RadialK3Intrinsic,
    CameraModel.BROWN: BrownT2Intrinsic,
    CameraModel.FISHEYE: FisheyeIntrinsic,
}


def make_intrinsic(
    model,
    w: int,
    h: int,
    focal: float,
    ppx: float,
    ppy: float,
    disto: Optional[Sequence[float]] = None,
) -> IntrinsicBase:
    """Build an intrinsic of the given model tag ("pinhole", "radial3", ... or CameraModel)."""
    try:
        cls = _MODELS[CameraModel(model)]
    except ValueError as e:
        raise ValueError(f"Unknown camera model: {model}") from e
    return cls(w, h, focal, ppx, ppy, disto)
