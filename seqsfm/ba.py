from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Flag
from typing import List, Optional

import numpy as np
import cv2
from scipy.optimize import least_squares
from scipy.sparse import coo_matrix, lil_matrix

from seqsfm.geometry_utils.projective import Pose
from seqsfm.scene import SfMData

SPARSE_POSE_THRESHOLD = 100
# above this many free parameters the dense solver stops factorizing J
DENSE_EXACT_MAX_PARAMS = 300


class IntrinsicRefinement(Flag):
    NONE = 0
    ADJUST_FOCAL_LENGTH = 1
    ADJUST_PRINCIPAL_POINT = 2
    ADJUST_DISTORTION = 4
    ADJUST_ALL = ADJUST_FOCAL_LENGTH | ADJUST_PRINCIPAL_POINT | ADJUST_DISTORTION


@dataclass
class BAOptions:
    refine_poses: bool = True
    refine_structure: bool = True
    intrinsics: IntrinsicRefinement = IntrinsicRefinement.NONE
    solver: str = "dense"          # "dense" | "sparse"
    loss: str = "huber"
    f_scale: float = 4.0
    max_nfev: int = 100


def choose_solver(n_poses: int, sparse_backend: bool = True, threshold: int = SPARSE_POSE_THRESHOLD) -> str:
    """Sparse trust-region only pays off on large scenes."""
    if n_poses > threshold and sparse_backend:
        return "sparse"
    return "dense"


def _variable_intrinsic_params(n_params: int, policy: IntrinsicRefinement) -> np.ndarray:
    idx: List[int] = []
    if IntrinsicRefinement.ADJUST_FOCAL_LENGTH in policy:
        idx.append(0)
    if IntrinsicRefinement.ADJUST_PRINCIPAL_POINT in policy:
        idx.extend([1, 2])
    if IntrinsicRefinement.ADJUST_DISTORTION in policy:
        idx.extend(range(3, n_params))
    return np.asarray(idx, dtype=np.int64)


def _build_jac_sparsity(M: int, n_params: int, obs_cols: List[np.ndarray]):
    """
    Sparsity pattern of the Jacobian, 2 rows per observation.
    obs_cols[k] lists every parameter column observation k depends on.
    """
    J = lil_matrix((2 * M, n_params), dtype=np.int8)
    for k, cols in enumerate(obs_cols):
        if cols.size:
            J[2 * k, cols] = 1
            J[2 * k + 1, cols] = 1
    return J


class _Problem:
    """Flattened bundle adjustment problem over the valid views of a scene."""

    def __init__(self, sfm_data: SfMData, opts: BAOptions):
        self.sfm_data = sfm_data
        views = sfm_data.valid_views()

        pose_ids = sorted({sfm_data.views[v].id_pose for v in views})
        intr_ids = sorted({sfm_data.views[v].id_intrinsic for v in views})
        self.pose_ids = pose_ids
        self.intr_ids = intr_ids
        pose_index = {pid: k for k, pid in enumerate(pose_ids)}
        intr_index = {iid: k for k, iid in enumerate(intr_ids)}

        # observations on valid views only
        track_ids: List[int] = []
        obs_view: List[int] = []
        obs_pt: List[int] = []
        obs_xy: List[np.ndarray] = []
        view_set = set(views)
        for tid, lm in sfm_data.structure.items():
            vids = [v for v in lm.obs if v in view_set]
            if not vids:
                continue
            pi = len(track_ids)
            track_ids.append(tid)
            for v in vids:
                obs_view.append(v)
                obs_pt.append(pi)
                obs_xy.append(lm.obs[v].x)
        self.track_ids = track_ids
        self.M = len(obs_view)
        self.obs_pt = np.asarray(obs_pt, dtype=np.int64)
        self.obs_xy = np.asarray(obs_xy, dtype=np.float64).reshape(-1, 2)
        obs_view_arr = np.asarray(obs_view, dtype=np.int64)

        self.obs_pose = np.asarray(
            [pose_index[sfm_data.views[v].id_pose] for v in obs_view], dtype=np.int64)
        self.obs_intr = np.asarray(
            [intr_index[sfm_data.views[v].id_intrinsic] for v in obs_view], dtype=np.int64)

        # groups of observations sharing (pose, intrinsic)
        self.groups: List[tuple] = []
        for v in views:
            idxs = np.flatnonzero(obs_view_arr == v)
            if idxs.size:
                self.groups.append(
                    (pose_index[sfm_data.views[v].id_pose],
                     intr_index[sfm_data.views[v].id_intrinsic],
                     idxs))

        # ---- Pack initial parameters ----
        self.base_poses = [sfm_data.poses[pid] for pid in pose_ids]
        self.base_intr = [sfm_data.intrinsics[iid] for iid in intr_ids]
        self.base_X = np.asarray(
            [sfm_data.structure[t].X for t in track_ids], dtype=np.float64).reshape(-1, 3)

        blocks: List[np.ndarray] = []
        col = 0
        C = len(pose_ids)
        if opts.refine_poses:
            pose0 = np.zeros((C, 6))
            for k, pose in enumerate(self.base_poses):
                rvec, _ = cv2.Rodrigues(pose.R)
                pose0[k, :3] = rvec.reshape(3)
                pose0[k, 3:] = pose.t
            self.pose_cols = (col + np.arange(6 * C)).reshape(C, 6)
            col += 6 * C
            blocks.append(pose0.reshape(-1))
        else:
            self.pose_cols = np.zeros((C, 0), dtype=np.int64)

        self.intr_var: List[np.ndarray] = []
        self.intr_cols: List[np.ndarray] = []
        for cam in self.base_intr:
            var = _variable_intrinsic_params(cam.param_count, opts.intrinsics)
            self.intr_var.append(var)
            self.intr_cols.append(col + np.arange(var.size))
            col += var.size
            blocks.append(cam.params()[var])

        P = len(track_ids)
        if opts.refine_structure:
            self.pt_cols = (col + np.arange(3 * P)).reshape(P, 3)
            col += 3 * P
            blocks.append(self.base_X.reshape(-1))
        else:
            self.pt_cols = np.zeros((P, 0), dtype=np.int64)

        self.opts = opts
        self.n_params = col
        self.x0 = np.concatenate(blocks) if blocks else np.zeros(0)

    # ---- unpack ----
    def poses(self, p: np.ndarray) -> List[Pose]:
        if self.pose_cols.shape[1] == 0:
            return self.base_poses
        out = []
        for k in range(len(self.base_poses)):
            c = p[self.pose_cols[k]]
            R, _ = cv2.Rodrigues(c[:3].reshape(3, 1))
            out.append(Pose(R, c[3:6]))
        return out

    def intrinsics(self, p: np.ndarray):
        out = []
        for cam, var, cols in zip(self.base_intr, self.intr_var, self.intr_cols):
            if var.size == 0:
                out.append(cam)
                continue
            q = cam.params()
            q[var] = p[cols]
            out.append(cam.with_params(q))
        return out

    def points(self, p: np.ndarray) -> np.ndarray:
        if self.pt_cols.shape[1] == 0:
            return self.base_X
        return p[self.pt_cols.reshape(-1)].reshape(-1, 3)

    def residuals(self, p: np.ndarray) -> np.ndarray:
        poses = self.poses(p)
        cams = self.intrinsics(p)
        X = self.points(p)
        res = np.empty((self.M, 2), dtype=np.float64)
        for pi, ii, idxs in self.groups:
            res[idxs] = cams[ii].residual(poses[pi], X[self.obs_pt[idxs]], self.obs_xy[idxs])
        res = np.nan_to_num(res, nan=1e6, posinf=1e6, neginf=-1e6)
        return res.reshape(-1)

    # ---- Jacobian ----
    def _column_groups(self):
        """
        Columns that never share a residual row, so they can be perturbed together:
        the k-th pose parameter of every pose, the k-th free intrinsic parameter
        of every intrinsic, the k-th coordinate of every point.
        Yields (columns, column per observation or -1).
        """
        for k in range(self.pose_cols.shape[1]):
            yield self.pose_cols[:, k], self.pose_cols[self.obs_pose, k]
        n_intr = max((c.size for c in self.intr_cols), default=0)
        for k in range(n_intr):
            per_intr = np.asarray([c[k] if c.size > k else -1 for c in self.intr_cols], dtype=np.int64)
            cols = per_intr[per_intr >= 0]
            yield cols, per_intr[self.obs_intr]
        for k in range(self.pt_cols.shape[1]):
            yield self.pt_cols[:, k], self.pt_cols[self.obs_pt, k]

    def block_jacobian(self, p: np.ndarray):
        """Forward-difference Jacobian exploiting the block structure (sparse COO)."""
        r0 = self.residuals(p)
        rows_all: List[np.ndarray] = []
        cols_all: List[np.ndarray] = []
        vals_all: List[np.ndarray] = []
        obs_rows = np.arange(self.M)
        for cols, obs_col in self._column_groups():
            if cols.size == 0:
                continue
            h = 1e-6 * np.maximum(1.0, np.abs(p[cols]))
            step = np.zeros_like(p)
            step[cols] = h
            d = self.residuals(p + step) - r0
            ok = obs_col >= 0
            o = obs_rows[ok]
            c = obs_col[ok]
            hc = step[c]
            for axis in (0, 1):
                rows_all.append(2 * o + axis)
                cols_all.append(c)
                vals_all.append(d[2 * o + axis] / hc)
        if not rows_all:
            return coo_matrix((2 * self.M, self.n_params))
        return coo_matrix(
            (np.concatenate(vals_all), (np.concatenate(rows_all), np.concatenate(cols_all))),
            shape=(2 * self.M, self.n_params),
        )

    def jac_sparsity(self):
        obs_cols = []
        for k in range(self.M):
            cols = [self.pose_cols[self.obs_pose[k]], self.intr_cols[self.obs_intr[k]],
                    self.pt_cols[self.obs_pt[k]]]
            obs_cols.append(np.concatenate(cols).astype(np.int64))
        return _build_jac_sparsity(self.M, self.n_params, obs_cols)

    # ---- write back ----
    def commit(self, p: np.ndarray) -> None:
        for pid, pose in zip(self.pose_ids, self.poses(p)):
            self.sfm_data.poses[pid] = pose
        for iid, cam in zip(self.intr_ids, self.intrinsics(p)):
            self.sfm_data.intrinsics[iid] = cam
        X = self.points(p)
        for k, tid in enumerate(self.track_ids):
            self.sfm_data.structure[tid].X = X[k].copy()


def bundle_adjust(
    sfm_data: SfMData,
    opts: Optional[BAOptions] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """
    Jointly refine the selected parameter blocks of the scene in place.

    "dense" evaluates the block Jacobian itself. Small problems solve the
    trust-region subproblem exactly; larger ones keep the Jacobian sparse and
    use lsmr, so the cost per iteration stays linear in the observations.
    "sparse" hands scipy the Jacobian sparsity pattern and uses lsmr.

    Returns False if the solver failed or produced non-finite values; the
    scene is left untouched in that case.
    """
    opts = opts or BAOptions()
    prob = _Problem(sfm_data, opts)
    if prob.M == 0:
        return False
    if prob.n_params == 0:
        return True

    try:
        if opts.solver == "sparse":
            res = least_squares(
                prob.residuals,
                prob.x0,
                jac_sparsity=prob.jac_sparsity(),
                tr_solver="lsmr",
                loss=opts.loss,
                f_scale=opts.f_scale,
                max_nfev=opts.max_nfev,
                x_scale="jac",
            )
        elif prob.n_params <= DENSE_EXACT_MAX_PARAMS:
            res = least_squares(
                prob.residuals,
                prob.x0,
                jac=lambda p: prob.block_jacobian(p).toarray(),
                tr_solver="exact",
                loss=opts.loss,
                f_scale=opts.f_scale,
                max_nfev=opts.max_nfev,
                x_scale="jac",
            )
        else:
            res = least_squares(
                prob.residuals,
                prob.x0,
                jac=lambda p: prob.block_jacobian(p).tocsr(),
                tr_solver="lsmr",
                loss=opts.loss,
                f_scale=opts.f_scale,
                max_nfev=opts.max_nfev,
                x_scale="jac",
            )
    except (ValueError, np.linalg.LinAlgError) as e:
        if logger:
            logger.warning(f"[BA] solver error: {e}")
        return False

    if res.status < 0 or not np.isfinite(res.x).all():
        if logger:
            logger.warning(f"[BA] failed: status={res.status}")
        return False

    prob.commit(res.x)

    if logger:
        n = max(prob.M, 1)
        rmse0 = float(np.sqrt(np.sum(prob.residuals(prob.x0) ** 2) / n))
        rmse1 = float(np.sqrt(np.sum(res.fun ** 2) / n))
        logger.info(
            f"[BA] solver={opts.solver} poses={len(prob.pose_ids)} points={len(prob.track_ids)} "
            f"obs={prob.M} rmse {rmse0:.3f} -> {rmse1:.3f} px nfev={res.nfev}"
        )
    return True
