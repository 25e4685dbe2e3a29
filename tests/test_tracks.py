"""
Tests for track building.
"""

import unittest

import numpy as np

from seqsfm.features import MatchesProvider
from seqsfm.tracks import build_tracks, common_tracks, track_length_histogram, tracks_per_view


class TestBuildTracks(unittest.TestCase):

    def test_chains_are_merged(self):
        matches = {
            (0, 1): np.array([[0, 0], [1, 1]]),
            (1, 2): np.array([[0, 0]]),
        }
        tracks = build_tracks({0: 2, 1: 2, 2: 1}, matches)
        self.assertEqual(len(tracks), 2)
        self.assertEqual(dict(tracks[0].obs), {0: 0, 1: 0, 2: 0})
        self.assertEqual(dict(tracks[1].obs), {0: 1, 1: 1})
        self.assertEqual(track_length_histogram(tracks), {2: 1, 3: 1})

    def test_conflicting_component_is_dropped(self):
        # view 2 would hold features 0 and 1 in the same track
        matches = {
            (0, 1): np.array([[0, 0]]),
            (1, 2): np.array([[0, 0]]),
            (0, 2): np.array([[0, 1]]),
            (0, 3): np.array([[1, 0]]),
        }
        tracks = build_tracks({0: 2, 1: 1, 2: 2, 3: 1}, matches)
        self.assertEqual(len(tracks), 1)
        self.assertEqual(dict(tracks[0].obs), {0: 1, 3: 0})

    def test_unmatched_features_make_no_track(self):
        tracks = build_tracks({0: 5, 1: 5}, {(0, 1): np.array([[4, 2]])})
        self.assertEqual(len(tracks), 1)
        self.assertEqual(dict(tracks[0].obs), {0: 4, 1: 2})

    def test_reversed_pair_key_is_canonicalized(self):
        matches = MatchesProvider({(3, 1): np.array([[7, 2]])})
        self.assertEqual(matches.pairs(), [(1, 3)])
        self.assertEqual(matches.pairwise_matches[(1, 3)].tolist(), [[2, 7]])


class TestTrackIndex(unittest.TestCase):

    def setUp(self):
        matches = {
            (0, 1): np.array([[0, 0], [1, 1], [2, 2]]),
            (1, 2): np.array([[0, 1], [2, 0]]),
        }
        self.tracks = build_tracks({0: 3, 1: 3, 2: 2}, matches)
        self.index = tracks_per_view(self.tracks)

    def test_index_maps_back_to_features(self):
        for vid, entries in self.index.items():
            for tid, feat in entries.items():
                self.assertEqual(self.tracks[tid].obs[vid], feat)

    def test_common_tracks_sorted(self):
        common = common_tracks(self.index, (0, 2))
        self.assertEqual(common, sorted(common))
        self.assertEqual(len(common), 2)
        self.assertEqual(common_tracks(self.index, ()), [])


if __name__ == "__main__":
    unittest.main()
