"""
Tests for camera adjustments and adjustment files.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from sensor_adjust.adjustment import (
    AdjustedCameraModel,
    CameraAdjustment,
    bundle_adjust_file_name,
    csm_state_file,
    write_adjustments,
)
from sensor_adjust.errors import AdjustmentFileError, ConfigurationError
from sensor_adjust.rotations import matrix_to_quaternion, roll_pitch_yaw


class TestCameraAdjustment:

    def test_identity_default(self):
        adj = CameraAdjustment()
        assert_allclose(adj.position(), np.zeros(3))
        assert_allclose(adj.rotation_matrix(), np.eye(3), atol=1e-12)

    def test_array_round_trip(self):
        """Packing then unpacking a camera block keeps position and rotation."""
        R = roll_pitch_yaw(5, -3, 40)
        adj = CameraAdjustment([1.0, -2.0, 3.5], matrix_to_quaternion(R))
        block = np.zeros(6)
        adj.pack_to_array(block)
        back = CameraAdjustment.from_array(block)
        assert_allclose(back.position(), [1.0, -2.0, 3.5])
        assert_allclose(back.rotation_matrix(), R, atol=1e-12)

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / 'run-img.adjust'
        R = roll_pitch_yaw(1, 2, 3)
        write_adjustments(path, [10.0, 20.0, 30.0], matrix_to_quaternion(R))

        adj = CameraAdjustment()
        adj.read_from_adjust_file(path)
        assert_allclose(adj.position(), [10.0, 20.0, 30.0])
        assert_allclose(adj.rotation_matrix(), R, atol=1e-12)

    def test_file_quaternion_order(self, tmp_path):
        """The second line is w x y z."""
        path = tmp_path / 'a.adjust'
        write_adjustments(path, [0, 0, 0], [0.1, 0.2, 0.3, 0.9])
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        w = float(lines[1].split()[0])
        assert w == pytest.approx(0.9)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CameraAdjustment().read_from_adjust_file(tmp_path / 'none.adjust')

    def test_short_file(self, tmp_path):
        path = tmp_path / 'bad.adjust'
        path.write_text('1 2 3\n1 0 0\n')
        with pytest.raises(AdjustmentFileError):
            CameraAdjustment().read_from_adjust_file(path)

    def test_zero_quaternion(self, tmp_path):
        path = tmp_path / 'zero.adjust'
        path.write_text('1 2 3\n0 0 0 0\n')
        with pytest.raises(AdjustmentFileError):
            CameraAdjustment().read_from_adjust_file(path)


class TestFileNames:

    def test_from_image(self):
        assert bundle_adjust_file_name('out/run', 'data/img1.tif', 'cams/c1.tsai') == \
            'out/run-img1.adjust'

    def test_from_camera_without_image(self):
        assert bundle_adjust_file_name('run', '', 'cams/c1.tsai') == 'run-c1.adjust'

    def test_csm_state_file(self):
        assert csm_state_file('run-img1.adjust') == 'run-img1.adjusted_state.json'


class TestAdjustedCameraModel:

    def test_identity_adjustment_projects_like_camera(self, pinhole_model):
        adj = AdjustedCameraModel(pinhole_model)
        xyz = np.array([150.0, 180.0, 0.0])
        assert_allclose(adj.point_to_pixel(xyz), pinhole_model.point_to_pixel(xyz), atol=1e-9)

    def test_translation_moves_center(self, pinhole_model):
        adj = AdjustedCameraModel(pinhole_model, translation=[5.0, 0.0, 0.0])
        assert_allclose(adj.camera_center(), pinhole_model.camera_center() + [5.0, 0.0, 0.0])

    def test_apply_transform_composes(self, pinhole_model):
        """Transforming the adjusted camera moves its projections with the world."""
        M = np.eye(4)
        M[:3, :3] = roll_pitch_yaw(0, 0, 2)
        M[:3, 3] = [3.0, -4.0, 1.0]

        adj = AdjustedCameraModel(pinhole_model)
        adj.apply_transform(M)

        xyz = np.array([120.0, 230.0, 10.0])
        moved = M[:3, :3] @ xyz + M[:3, 3]
        assert_allclose(adj.point_to_pixel(moved), pinhole_model.point_to_pixel(xyz), atol=1e-6)
        assert_allclose(adj.ecef_transform(), M, atol=1e-9)

    def test_apply_transform_rejects_scale(self, pinhole_model):
        M = np.eye(4)
        M[:3, :3] *= 1.5
        with pytest.raises(ConfigurationError):
            AdjustedCameraModel(pinhole_model).apply_transform(M)
