"""
Tests for the camera models: projection, (un)distortion and bearings agree.
"""

import unittest

import numpy as np

from seqsfm.cameras import CameraModel, PinholeIntrinsic, make_intrinsic
from seqsfm.geometry_utils.projective import Pose

DISTO = {
    CameraModel.PINHOLE: None,
    CameraModel.RADIAL1: [-0.05],
    CameraModel.RADIAL3: [-0.05, 0.01, -0.001],
    CameraModel.BROWN: [-0.05, 0.01, -0.001, 0.001, -0.0005],
    CameraModel.FISHEYE: [0.01, -0.002, 0.0005, 0.0],
}


class TestCameraModels(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(3)
        self.Xc = np.column_stack([
            rng.uniform(-0.5, 0.5, 50),
            rng.uniform(-0.4, 0.4, 50),
            rng.uniform(2.0, 4.0, 50),
        ])
        self.pose = Pose.identity()

    def _cameras(self):
        for model, disto in DISTO.items():
            yield model, make_intrinsic(model, 640, 480, 500.0, 320.0, 240.0, disto)

    def test_undistorted_pixel_matches_pinhole(self):
        pinhole = PinholeIntrinsic(640, 480, 500.0, 320.0, 240.0)
        expected = pinhole.project(self.pose, self.Xc)
        for model, cam in self._cameras():
            with self.subTest(model=model.value):
                x = cam.project(self.pose, self.Xc)
                np.testing.assert_allclose(cam.get_ud_pixel(x), expected, atol=1e-4)

    def test_distort_undistort_consistent(self):
        for model, cam in self._cameras():
            with self.subTest(model=model.value):
                x = cam.project(self.pose, self.Xc)
                np.testing.assert_allclose(cam.get_d_pixel(cam.get_ud_pixel(x)), x, atol=1e-4)

    def test_bearing_points_at_landmark(self):
        rays = self.Xc / np.linalg.norm(self.Xc, axis=1, keepdims=True)
        for model, cam in self._cameras():
            with self.subTest(model=model.value):
                b = cam.bearing(cam.project(self.pose, self.Xc))
                np.testing.assert_allclose(b, rays, atol=1e-6)

    def test_residual_zero_on_exact_projection(self):
        pose = Pose(np.eye(3), np.array([0.1, -0.2, 0.5]))
        for model, cam in self._cameras():
            with self.subTest(model=model.value):
                x = cam.project(pose, self.Xc)
                np.testing.assert_allclose(cam.residual(pose, self.Xc, x), 0.0, atol=1e-9)

    def test_params_round_trip_keeps_model(self):
        for model, cam in self._cameras():
            with self.subTest(model=model.value):
                again = cam.with_params(cam.params())
                self.assertIs(type(again), type(cam))
                self.assertEqual(again.param_count, cam.param_count)
                self.assertEqual(cam.have_disto(), model != CameraModel.PINHOLE)

    def test_wrong_distortion_size_rejected(self):
        with self.assertRaises(ValueError):
            make_intrinsic("radial3", 640, 480, 500.0, 320.0, 240.0, [0.1])
        with self.assertRaises(ValueError):
            make_intrinsic("not-a-model", 640, 480, 500.0, 320.0, 240.0)


if __name__ == "__main__":
    unittest.main()
