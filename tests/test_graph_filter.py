"""
Tests for the view-graph connectivity filter.
"""

import unittest

from seqsfm.pipeline.engine import SequentialSfMEngine
from seqsfm.pipeline.graph_filter import filter_view_graph, largest_biedge_connected_component
from seqsfm.pipeline.state import EngineStatus, SfMState

from tests.synthetic import make_scene


class TestLargestBiedgeComponent(unittest.TestCase):
    """2-edge-connected component selection."""

    def test_bridge_is_cut(self):
        pairs = [(1, 2), (2, 3), (1, 3), (3, 4)]
        self.assertEqual(largest_biedge_connected_component(pairs), {1, 2, 3})

    def test_result_is_subset_of_input_views(self):
        pairs = [(1, 2), (2, 3), (1, 3), (3, 4), (4, 5), (5, 6), (4, 6), (6, 7)]
        kept = largest_biedge_connected_component(pairs)
        views = {v for p in pairs for v in p}
        self.assertTrue(kept <= views)
        self.assertEqual(len(kept), 3)

    def test_idempotent(self):
        pairs = [(1, 2), (2, 3), (1, 3), (3, 4), (4, 5)]
        kept = largest_biedge_connected_component(pairs)
        again = largest_biedge_connected_component(
            [p for p in pairs if p[0] in kept and p[1] in kept]
        )
        self.assertEqual(kept, again)

    def test_tie_goes_to_smallest_view_id(self):
        pairs = [(4, 5), (5, 6), (4, 6), (1, 2), (2, 3), (1, 3)]
        self.assertEqual(largest_biedge_connected_component(pairs), {1, 2, 3})

    def test_tree_has_no_candidate(self):
        self.assertEqual(largest_biedge_connected_component([(1, 2), (2, 3)]), set())
        self.assertEqual(largest_biedge_connected_component([]), set())


class TestFilterViewGraph(unittest.TestCase):

    def test_matches_restricted_to_kept_views(self):
        sfm_data, features, matches, _, _ = make_scene(
            angles={1: 0.0, 2: 20.0, 3: 35.0, 4: 50.0},
            pairs=[(1, 2), (2, 3), (1, 3), (3, 4)],
        )
        state = SfMState(sfm_data, features, matches)
        self.assertTrue(filter_view_graph(state))
        self.assertEqual(state.remaining, {1, 2, 3})
        self.assertEqual(matches.pairs(), [(1, 2), (1, 3), (2, 3)])

    def test_engine_fails_without_cycle(self):
        sfm_data, features, matches, _, _ = make_scene(
            angles={1: 0.0, 2: 20.0, 3: 35.0},
            pairs=[(1, 2), (2, 3)],
        )
        engine = SequentialSfMEngine(sfm_data, features, matches)
        self.assertFalse(engine.process())
        self.assertEqual(engine.status, EngineStatus.FAILED)
        self.assertEqual(len(sfm_data.poses), 0)


if __name__ == "__main__":
    unittest.main()
