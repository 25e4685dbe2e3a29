"""
Tests for bundle adjustment.
"""

import unittest
from unittest import mock

import numpy as np
from scipy.optimize import least_squares

from seqsfm.ba import (
    DENSE_EXACT_MAX_PARAMS,
    BAOptions,
    IntrinsicRefinement,
    bundle_adjust,
    choose_solver,
)
from seqsfm.pipeline.config import ResectionConfig, SeedConfig, TriangulationConfig
from seqsfm.pipeline.initialize import make_initial_pair_3d
from seqsfm.pipeline.registration import resection
from seqsfm.scene import SfMData

from tests.synthetic import make_state


def rms(sfm_data):
    r = sfm_data.all_residuals()
    return float(np.sqrt(np.mean(r ** 2)))


class TestBundleAdjust(unittest.TestCase):

    def setUp(self):
        self.state = make_state(n_points=80)
        self.assertTrue(make_initial_pair_3d(self.state, (1, 2), SeedConfig()))
        self.assertTrue(resection(self.state, 3, ResectionConfig(), TriangulationConfig()))
        self.sfm_data = self.state.sfm_data

        rng = np.random.default_rng(7)
        for lm in self.sfm_data.structure.values():
            lm.X = lm.X + rng.normal(0.0, 0.01, 3)

    def test_dense_reduces_error(self):
        before = rms(self.sfm_data)
        opts = BAOptions(intrinsics=IntrinsicRefinement.NONE, solver="dense")
        self.assertTrue(bundle_adjust(self.sfm_data, opts))
        self.assertLess(rms(self.sfm_data), 0.1 * before)

    def test_sparse_reduces_error(self):
        before = rms(self.sfm_data)
        opts = BAOptions(intrinsics=IntrinsicRefinement.ADJUST_ALL, solver="sparse")
        self.assertTrue(bundle_adjust(self.sfm_data, opts))
        self.assertLess(rms(self.sfm_data), 0.1 * before)

    def test_structure_only(self):
        poses_before = {k: p.copy() for k, p in self.sfm_data.poses.items()}
        opts = BAOptions(refine_poses=False, refine_structure=True)
        self.assertTrue(bundle_adjust(self.sfm_data, opts))
        for k, p in poses_before.items():
            np.testing.assert_array_equal(self.sfm_data.poses[k].R, p.R)
            np.testing.assert_array_equal(self.sfm_data.poses[k].t, p.t)

    def test_empty_scene(self):
        self.assertFalse(bundle_adjust(SfMData()))

    def test_solver_choice(self):
        self.assertEqual(choose_solver(10), "dense")
        self.assertEqual(choose_solver(500), "sparse")
        self.assertEqual(choose_solver(500, sparse_backend=False), "dense")


class TestDenseSolverScaling(unittest.TestCase):

    def test_large_problem_uses_sparse_steps(self):
        state = make_state(n_points=400, noise_px=0.3)
        self.assertTrue(make_initial_pair_3d(state, (1, 2), SeedConfig()))
        sfm_data = state.sfm_data
        rng = np.random.default_rng(11)
        for lm in sfm_data.structure.values():
            lm.X = lm.X + rng.normal(0.0, 0.03, 3)

        before = rms(sfm_data)
        opts = BAOptions(intrinsics=IntrinsicRefinement.NONE, solver="dense")
        self.assertGreater(6 * len(sfm_data.poses) + 3 * len(sfm_data.structure), DENSE_EXACT_MAX_PARAMS)
        with mock.patch("seqsfm.ba.least_squares", wraps=least_squares) as solver:
            self.assertTrue(bundle_adjust(sfm_data, opts))
        self.assertEqual(solver.call_args.kwargs["tr_solver"], "lsmr")
        self.assertLess(rms(sfm_data), 0.5 * before)
        self.assertLess(rms(sfm_data), 1.0)


if __name__ == "__main__":
    unittest.main()
