"""
Tests for resection candidate selection, the sliding window and single-view resection.
"""

import unittest

import numpy as np

from seqsfm.errors import WindowInvariantError
from seqsfm.pipeline.config import ResectionConfig, SeedConfig, TriangulationConfig
from seqsfm.pipeline.initialize import make_initial_pair_3d
from seqsfm.pipeline.registration import (
    find_images_with_possible_resection,
    resection,
    select_resection_group,
)
from seqsfm.pipeline.triangulation import triangulate_new_tracks
from seqsfm.scene import Landmark, LandmarkStore

from tests.synthetic import FOCAL, make_state


def seeded_state(**kwargs):
    state = make_state(**kwargs)
    if not make_initial_pair_3d(state, (1, 2), SeedConfig()):
        raise AssertionError("seeding failed on the synthetic scene")
    return state


class TestSelectResectionGroup(unittest.TestCase):

    def setUp(self):
        self.scores = [(1, 10), (2, 8), (3, 7), (4, 0), (5, 10)]

    def test_group_contents(self):
        self.assertEqual(select_resection_group(self.scores, 0.75), [1, 5, 2])
        self.assertEqual(select_resection_group(self.scores, 1.0), [1, 5])

    def test_lower_ratio_never_shrinks_group(self):
        previous = set()
        for ratio in (1.0, 0.9, 0.75, 0.5, 0.25, 0.01):
            group = set(select_resection_group(self.scores, ratio))
            self.assertTrue(previous <= group)
            previous = group
        self.assertNotIn(4, previous)

    def test_no_support(self):
        self.assertEqual(select_resection_group([(1, 0), (2, 0)], 0.75), [])
        self.assertEqual(select_resection_group([], 0.75), [])


class TestWindow(unittest.TestCase):

    def test_absorb_moves_views(self):
        state = make_state()
        state.remaining = {3, 4, 9}
        moved = state.absorb_window(2, 5)
        self.assertEqual(moved, 2)
        self.assertEqual(state.subset, {3, 4})
        self.assertEqual(state.remaining, {9})

    def test_overlap_raises(self):
        state = make_state()
        state.subset = {2}
        state.remaining = {2, 3}
        with self.assertRaises(WindowInvariantError):
            state.check_window_invariant()

    def test_readmitted_view_raises(self):
        state = make_state()
        state.reconstructed = {1}
        state.subset = {1}
        state.remaining = set()
        with self.assertRaises(WindowInvariantError):
            state.check_window_invariant()

    def test_restricted_group_stays_in_window(self):
        state = seeded_state()
        state.restricted = True
        group = find_images_with_possible_resection(state, ResectionConfig(window_size=1))
        self.assertEqual(group, [3])
        self.assertEqual(state.subset, {3})
        self.assertEqual(state.remaining, {4})

    def test_unrestricted_group(self):
        state = seeded_state()
        group = find_images_with_possible_resection(state, ResectionConfig())
        self.assertEqual(group, [3, 4])

    def test_nothing_left(self):
        state = seeded_state()
        state.remaining.clear()
        self.assertIsNone(find_images_with_possible_resection(state, ResectionConfig()))


class TestResection(unittest.TestCase):

    def test_resection_with_known_intrinsic(self):
        state = seeded_state()
        n_before = len(state.sfm_data.structure)
        ok = resection(state, 3, ResectionConfig(), TriangulationConfig())
        self.assertTrue(ok)

        sfm_data = state.sfm_data
        self.assertIn(3, sfm_data.poses)
        self.assertEqual(sfm_data.views[3].id_intrinsic, 0)
        self.assertGreaterEqual(len(sfm_data.structure), n_before)
        n_obs_3 = sum(1 for lm in sfm_data.structure.values() if 3 in lm.obs)
        self.assertGreater(n_obs_3, 150)
        self.assertLess(np.abs(sfm_data.all_residuals()).max(), 1.0)

    def test_resection_creates_intrinsic(self):
        state = seeded_state(no_intrinsic=(3,))
        ok = resection(state, 3, ResectionConfig(camera_model="pinhole"), TriangulationConfig())
        self.assertTrue(ok)

        sfm_data = state.sfm_data
        new_id = sfm_data.views[3].id_intrinsic
        self.assertEqual(new_id, 1)
        cam = sfm_data.intrinsics[new_id]
        self.assertAlmostEqual(cam.focal, FOCAL, delta=0.02 * FOCAL)
        self.assertIn(3, sfm_data.poses)

    def test_resection_without_correspondences_fails(self):
        state = seeded_state()
        state.track_index[4] = {}
        self.assertFalse(resection(state, 4, ResectionConfig(), TriangulationConfig()))
        self.assertNotIn(4, state.sfm_data.poses)


class TestNewTrackTriangulation(unittest.TestCase):

    def setUp(self):
        self.state = seeded_state(noise_px=0.5, n_outliers=20, seed=5)
        self.assertTrue(resection(self.state, 3, ResectionConfig(), TriangulationConfig()))
        # drop every other landmark so both partners of view 3 propose the same tracks
        for tid in sorted(self.state.sfm_data.structure.keys())[::2]:
            del self.state.sfm_data.structure[tid]
        self.snapshot = {
            tid: Landmark(X=lm.X.copy(), obs=dict(lm.obs))
            for tid, lm in self.state.sfm_data.structure.items()
        }

    def run_with_workers(self, num_workers):
        self.state.sfm_data.structure = LandmarkStore(
            {tid: Landmark(X=lm.X.copy(), obs=dict(lm.obs)) for tid, lm in self.snapshot.items()}
        )
        stats = triangulate_new_tracks(self.state, 3, TriangulationConfig(), num_workers)
        structure = {
            tid: (lm.X.copy(), sorted(lm.obs))
            for tid, lm in self.state.sfm_data.structure.items()
        }
        return stats, structure

    def test_partners_merged_in_view_order(self):
        stats, _ = self.run_with_workers(1)
        self.assertEqual([s.other_view for s in stats], [1, 2])
        self.assertGreater(stats[0].added, 50)
        # tracks view 1 already created are only extended from view 2
        self.assertGreater(stats[1].extended, 0)

    def test_result_independent_of_worker_count(self):
        stats_1, serial = self.run_with_workers(1)
        stats_4, threaded = self.run_with_workers(4)
        self.assertEqual(
            [(s.added, s.extended) for s in stats_1],
            [(s.added, s.extended) for s in stats_4],
        )
        self.assertEqual(set(serial), set(threaded))
        for tid, (X, obs) in serial.items():
            self.assertEqual(obs, threaded[tid][1])
            np.testing.assert_array_equal(X, threaded[tid][0])


if __name__ == "__main__":
    unittest.main()
