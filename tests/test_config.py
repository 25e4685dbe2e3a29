"""
Tests for SfMConfig serialization and validation.
"""

import json
import os
import shutil
import tempfile
import unittest

import yaml

from seqsfm.ba import IntrinsicRefinement
from seqsfm.pipeline.config import (
    SfMConfig,
    get_default_config,
    get_sequential_config,
    load_config,
    parse_intrinsic_refinement,
)


class TestSfMConfig(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_defaults(self):
        config = get_default_config()
        config.validate()
        self.assertEqual(config.seed.min_inliers, 100)
        self.assertEqual(config.seed.min_angle_deg, 3.0)
        self.assertEqual(config.seed.max_angle_deg, 60.0)
        self.assertEqual(config.resection.group_ratio, 0.75)
        self.assertIsNone(config.resection.window_size)
        self.assertEqual(config.cleanup.loop_min_removed, 50)
        self.assertEqual(config.cleanup.min_points_per_pose, 6)

    def test_sequential_preset(self):
        self.assertEqual(get_sequential_config(3).resection.window_size, 3)

    def test_dict_round_trip(self):
        config = SfMConfig()
        config.initial_pair = (2, 5)
        config.resection.window_size = 4
        config.ba.intrinsic_refinement = "focal_length+distortion"
        again = SfMConfig.from_dict(config.to_dict())
        self.assertEqual(again.initial_pair, (2, 5))
        self.assertEqual(again.resection.window_size, 4)
        self.assertEqual(again.ba.intrinsic_refinement, "focal_length+distortion")

    def test_load_yaml_and_json(self):
        d = {"seed": {"min_inliers": 40}, "resection": {"window_size": 2}, "num_workers": 3}
        yaml_path = os.path.join(self.test_dir, "config.yaml")
        json_path = os.path.join(self.test_dir, "config.json")
        with open(yaml_path, "w") as f:
            yaml.safe_dump(d, f)
        with open(json_path, "w") as f:
            json.dump(d, f)

        for path in (yaml_path, json_path):
            config = load_config(path)
            self.assertEqual(config.seed.min_inliers, 40)
            self.assertEqual(config.resection.window_size, 2)
            self.assertEqual(config.num_workers, 3)
            self.assertEqual(config.seed.max_angle_deg, 60.0)

    def test_unsupported_format(self):
        path = os.path.join(self.test_dir, "config.txt")
        with open(path, "w") as f:
            f.write("seed: {}\n")
        with self.assertRaises(ValueError):
            load_config(path)

    def test_invalid_values(self):
        bad = [
            lambda c: setattr(c.seed, "min_angle_deg", 70.0),
            lambda c: setattr(c.resection, "group_ratio", 0.0),
            lambda c: setattr(c.resection, "window_size", 0),
            lambda c: setattr(c.resection, "camera_model", "orthographic"),
            lambda c: setattr(c.ba, "intrinsic_refinement", "focal_length+zoom"),
            lambda c: setattr(c, "num_workers", 0),
            lambda c: setattr(c, "initial_pair", (3, 3)),
        ]
        for mutate in bad:
            config = SfMConfig()
            mutate(config)
            with self.assertRaises(ValueError):
                config.validate()

    def test_intrinsic_refinement_parsing(self):
        self.assertEqual(parse_intrinsic_refinement("none"), IntrinsicRefinement.NONE)
        self.assertEqual(parse_intrinsic_refinement("all"), IntrinsicRefinement.ADJUST_ALL)
        flags = parse_intrinsic_refinement("focal_length, principal_point")
        self.assertIn(IntrinsicRefinement.ADJUST_FOCAL_LENGTH, flags)
        self.assertIn(IntrinsicRefinement.ADJUST_PRINCIPAL_POINT, flags)
        self.assertNotIn(IntrinsicRefinement.ADJUST_DISTORTION, flags)


if __name__ == "__main__":
    unittest.main()
