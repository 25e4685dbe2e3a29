"""
End-to-end runs of the sequential engine on synthetic scenes.
"""

import logging
import unittest
from unittest import mock

import numpy as np

from seqsfm import run_incremental_sfm, run_sfm
from seqsfm.pipeline import EngineStatus, SequentialSfMEngine, SfMConfig, get_sequential_config
from seqsfm.pipeline import engine as engine_module

from tests.synthetic import make_scene


def camera_centers_up_to_similarity(sfm_data, gt_poses):
    """Pairwise center distances of the estimate and ground truth, each scaled to unit mean."""
    ids = sorted(sfm_data.poses)
    est = np.array([sfm_data.poses[v].center for v in ids])
    gt = np.array([gt_poses[v].center for v in ids])
    d_est = np.linalg.norm(est[:, None] - est[None], axis=2)
    d_gt = np.linalg.norm(gt[:, None] - gt[None], axis=2)
    return d_est / d_est.mean(), d_gt / d_gt.mean()


class TestSequentialEngine(unittest.TestCase):

    def setUp(self):
        self.logger = logging.getLogger("seqsfm.tests")

    def test_full_reconstruction(self):
        sfm_data, features, matches, gt_poses, _ = make_scene()
        engine = SequentialSfMEngine(sfm_data, features, matches, logger=self.logger)

        self.assertTrue(engine.process())
        self.assertEqual(engine.status, EngineStatus.DONE)
        self.assertEqual(engine.state.initial_pair, (1, 2))
        self.assertEqual(set(sfm_data.poses), {1, 2, 3, 4})
        self.assertGreater(len(sfm_data.structure), 150)
        self.assertLess(np.abs(sfm_data.all_residuals()).max(), 1.0)

        d_est, d_gt = camera_centers_up_to_similarity(sfm_data, gt_poses)
        np.testing.assert_allclose(d_est, d_gt, atol=1e-2)

        result = engine.result()
        self.assertTrue(result.success)
        self.assertEqual(result.initial_pair, (1, 2))
        self.assertGreater(result.stats["n"], 0)

    def test_reconstructed_views_are_valid(self):
        sfm_data, features, matches, _, _ = make_scene()
        engine = SequentialSfMEngine(sfm_data, features, matches, logger=self.logger)
        self.assertTrue(engine.process())
        for vid in engine.state.reconstructed:
            self.assertTrue(sfm_data.is_pose_and_intrinsic_defined(vid))
        for lm in sfm_data.structure.values():
            self.assertGreaterEqual(len(lm.obs), 2)
            for vid in lm.obs:
                self.assertIn(sfm_data.views[vid].id_pose, sfm_data.poses)

    def test_sliding_window(self):
        sfm_data, features, matches, _, _ = make_scene()
        result = run_incremental_sfm(
            sfm_data, features, matches,
            config=get_sequential_config(window_size=1),
            logger=self.logger,
        )
        self.assertTrue(result.success)
        self.assertEqual(set(sfm_data.poses), {1, 2, 3, 4})

    def test_parallel_workers(self):
        sfm_data, features, matches, _, _ = make_scene()
        config = SfMConfig(num_workers=4)
        result = run_incremental_sfm(sfm_data, features, matches, config=config, logger=self.logger)
        self.assertTrue(result.success)
        self.assertEqual(set(sfm_data.poses), {1, 2, 3, 4})

    def test_view_without_intrinsic(self):
        sfm_data, features, matches, _, _ = make_scene(no_intrinsic=(4,))
        result = run_sfm(sfm_data, features, matches, camera_model="pinhole", verbose=False)
        self.assertTrue(result.success)
        self.assertIn(4, sfm_data.poses)
        self.assertEqual(sfm_data.views[4].id_intrinsic, 1)

    def test_configured_initial_pair(self):
        sfm_data, features, matches, _, _ = make_scene()
        result = run_sfm(sfm_data, features, matches, initial_pair=(2, 3), verbose=False)
        self.assertTrue(result.success)
        self.assertEqual(result.initial_pair, (2, 3))

    def test_no_valid_seed_fails(self):
        sfm_data, features, matches, _, _ = make_scene()
        config = SfMConfig()
        config.seed.min_inliers = 10_000
        engine = SequentialSfMEngine(sfm_data, features, matches, config, logger=self.logger)
        self.assertFalse(engine.process())
        self.assertEqual(engine.status, EngineStatus.FAILED)
        self.assertEqual(len(sfm_data.poses), 0)

    def test_unknown_override_rejected(self):
        sfm_data, features, matches, _, _ = make_scene()
        with self.assertRaises(ValueError):
            run_sfm(sfm_data, features, matches, not_an_option=1)


def structure_snapshot(sfm_data):
    return {
        tid: (lm.X.copy(), sorted((vid, ob.id_feat) for vid, ob in lm.obs.items()))
        for tid, lm in sfm_data.structure.items()
    }


class TestNoisyReconstruction(unittest.TestCase):
    """Pixel noise plus junk correspondences, with a tight rejection threshold."""

    def setUp(self):
        self.logger = logging.getLogger("seqsfm.tests")

    def noisy_config(self, num_workers=1):
        config = SfMConfig(num_workers=num_workers, verbose=False)
        config.cleanup.precision_px = 1.0
        config.cleanup.loop_min_removed = 20
        return config

    def noisy_scene(self):
        return make_scene(n_points=300, noise_px=0.5, n_outliers=40, seed=3)

    def test_rejection_loop_and_growth_invariants(self):
        sfm_data, features, matches, _, _ = self.noisy_scene()
        engine = SequentialSfMEngine(
            sfm_data, features, matches, self.noisy_config(), logger=self.logger
        )

        counts = []
        min_obs = []
        ba_rounds = []
        real_resection = engine_module.resection
        real_refine = engine_module.refine_until_stable

        def counting_resection(state, *args, **kwargs):
            before = len(state.sfm_data.structure)
            ok = real_resection(state, *args, **kwargs)
            counts.append((before, len(state.sfm_data.structure)))
            min_obs.append(min(len(lm.obs) for lm in state.sfm_data.structure.values()))
            return ok

        def counting_refine(*args, **kwargs):
            rounds = real_refine(*args, **kwargs)
            ba_rounds.append(rounds)
            return rounds

        with mock.patch.object(engine_module, "resection", counting_resection), \
                mock.patch.object(engine_module, "refine_until_stable", counting_refine):
            self.assertTrue(engine.process())

        self.assertEqual(engine.status, EngineStatus.DONE)
        self.assertEqual(set(sfm_data.poses), {1, 2, 3, 4})
        self.assertGreaterEqual(len(counts), 2)
        for before, after in counts:
            self.assertGreaterEqual(after, before)
        for n in min_obs:
            self.assertGreaterEqual(n, 2)
        self.assertTrue(ba_rounds)
        self.assertGreaterEqual(max(ba_rounds), 2)

        self.assertLessEqual(np.abs(sfm_data.all_residuals()).max(), 1.0)
        for lm in sfm_data.structure.values():
            self.assertGreaterEqual(len(lm.obs), 2)

    def test_worker_count_does_not_change_result(self):
        results = []
        for workers in (1, 4):
            sfm_data, features, matches, _, _ = self.noisy_scene()
            engine = SequentialSfMEngine(
                sfm_data, features, matches,
                self.noisy_config(num_workers=workers),
                logger=self.logger,
            )
            self.assertTrue(engine.process())
            results.append(structure_snapshot(sfm_data))

        serial, threaded = results
        self.assertEqual(set(serial), set(threaded))
        for tid, (X, obs) in serial.items():
            self.assertEqual(obs, threaded[tid][1])
            np.testing.assert_allclose(X, threaded[tid][0], rtol=1e-9, atol=1e-9)


if __name__ == "__main__":
    unittest.main()
