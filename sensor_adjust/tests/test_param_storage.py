"""
Tests for parameter storage and intrinsics sharing.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from sensor_adjust.errors import ConfigurationError, InvariantError
from sensor_adjust.intrinsics_options import IntrinsicOptions
from sensor_adjust.param_storage import IDENTITY_MULTIPLIER, ParamStorage


class TestLayout:

    def test_sizes_and_initial_values(self):
        storage = ParamStorage(5, 3, [4, 4, 4])
        assert storage.num_points() == 5
        assert storage.num_cameras() == 3
        assert storage.get_camera_ptr(0).shape == (6,)
        assert storage.get_point_ptr(4).shape == (3,)
        assert storage.get_intrinsic_center_ptr(1).shape == (2,)
        assert storage.get_intrinsic_focus_ptr(1).shape == (1,)
        assert storage.num_distortion_params(2) == 4
        assert_allclose(storage.get_camera_ptr(2), np.zeros(6))
        assert_allclose(storage.get_intrinsic_center_ptr(2), [IDENTITY_MULTIPLIER] * 2)

    def test_accessors_are_views(self):
        """Writes through an accessor are seen by later reads."""
        storage = ParamStorage(2, 2, [1, 1])
        storage.get_point_ptr(1)[:] = [1.0, 2.0, 3.0]
        storage.get_camera_ptr(0)[3] = 0.5
        assert_allclose(storage.get_point_ptr(1), [1.0, 2.0, 3.0])
        assert storage.get_camera_ptr(0)[3] == 0.5

    def test_index_out_of_range(self):
        storage = ParamStorage(2, 2)
        with pytest.raises(InvariantError):
            storage.get_camera_ptr(2)
        with pytest.raises(InvariantError):
            storage.get_point_ptr(-1)

    def test_distortion_size_count_mismatch(self):
        with pytest.raises(ConfigurationError):
            ParamStorage(1, 3, [4, 4])

    def test_zero_cameras(self):
        storage = ParamStorage(0, 0)
        assert storage.num_cameras() == 0
        assert storage.num_outliers() == 0


class TestSharing:

    def test_no_sharing_by_default(self):
        storage = ParamStorage(0, 2, [4, 4])
        storage.get_intrinsic_focus_ptr(0)[0] = 1.1
        assert storage.get_intrinsic_focus_ptr(1)[0] == IDENTITY_MULTIPLIER

    def test_shared_across_all_cameras(self):
        """Shared blocks are one block: all cameras see the same values."""
        opts = IntrinsicOptions(center_shared=True, focus_shared=True, distortion_shared=True)
        storage = ParamStorage(0, 3, [4, 4, 4], opts)
        storage.get_intrinsic_focus_ptr(2)[0] = 1.05
        storage.get_intrinsic_distortion_ptr(1)[3] = 0.9
        for cam in range(3):
            assert storage.get_intrinsic_focus_ptr(cam)[0] == 1.05
            assert storage.get_intrinsic_distortion_ptr(cam)[3] == 0.9
        assert storage.get_intrinsic_focus_ptr(0) is not None
        assert np.shares_memory(storage.get_intrinsic_center_ptr(0),
                                storage.get_intrinsic_center_ptr(2))

    def test_partial_sharing(self):
        opts = IntrinsicOptions(center_shared=False, focus_shared=True, distortion_shared=False)
        storage = ParamStorage(0, 2, [1, 1], opts)
        storage.get_intrinsic_center_ptr(0)[:] = [1.2, 1.3]
        storage.get_intrinsic_focus_ptr(0)[0] = 1.4
        assert_allclose(storage.get_intrinsic_center_ptr(1), [1.0, 1.0])
        assert storage.get_intrinsic_focus_ptr(1)[0] == 1.4

    def test_per_sensor_sharing(self):
        """Cameras of one sensor share, different sensors never do."""
        opts = IntrinsicOptions(share_intrinsics_per_sensor=True, num_sensors=2,
                                cam2sensor=[0, 1, 0, 1])
        storage = ParamStorage(0, 4, [4, 1, 4, 1], opts)
        storage.get_intrinsic_focus_ptr(2)[0] = 1.5
        storage.get_intrinsic_focus_ptr(3)[0] = 0.7
        assert storage.get_intrinsic_focus_ptr(0)[0] == 1.5
        assert storage.get_intrinsic_focus_ptr(1)[0] == 0.7
        assert storage.num_distortion_params(3) == 1

    def test_shared_distortion_size_mismatch(self):
        opts = IntrinsicOptions(distortion_shared=True)
        with pytest.raises(ConfigurationError):
            ParamStorage(0, 2, [4, 5], opts)

    def test_per_sensor_needs_sensor_for_each_camera(self):
        opts = IntrinsicOptions(share_intrinsics_per_sensor=True, num_sensors=1, cam2sensor=[0])
        with pytest.raises(ConfigurationError):
            ParamStorage(0, 2, [0, 0], opts)


class TestState:

    def test_init_cams_as_zero(self):
        storage = ParamStorage(1, 2, [2, 2])
        storage.get_camera_ptr(1)[:] = 3.0
        storage.get_intrinsic_focus_ptr(0)[0] = 2.0
        storage.get_intrinsic_distortion_ptr(1)[:] = 0.5
        storage.get_point_ptr(0)[:] = 7.0

        storage.init_cams_as_zero()

        assert_allclose(storage.get_camera_ptr(1), np.zeros(6))
        assert storage.get_intrinsic_focus_ptr(0)[0] == IDENTITY_MULTIPLIER
        assert_allclose(storage.get_intrinsic_distortion_ptr(1), [1.0, 1.0])
        # Points are not cameras
        assert_allclose(storage.get_point_ptr(0), [7.0, 7.0, 7.0])

    def test_intrinsics_changed(self):
        storage = ParamStorage(0, 2, [3, 3])
        assert not storage.intrinsics_changed(0)
        storage.get_intrinsic_distortion_ptr(1)[2] = 1.01
        assert storage.intrinsics_changed(1)
        assert not storage.intrinsics_changed(0)

    def test_outliers(self):
        storage = ParamStorage(3, 0)
        storage.set_outlier(1, True)
        assert storage.get_outlier(1)
        assert not storage.get_outlier(0)
        assert storage.num_outliers() == 1

    def test_copy_is_independent(self):
        opts = IntrinsicOptions(focus_shared=True)
        storage = ParamStorage(1, 2, [0, 0], opts)
        clone = storage.copy()
        clone.get_intrinsic_focus_ptr(1)[0] = 3.0
        clone.get_point_ptr(0)[0] = 9.0
        assert storage.get_intrinsic_focus_ptr(0)[0] == IDENTITY_MULTIPLIER
        assert storage.get_point_ptr(0)[0] == 0.0
        # The copy keeps the sharing layout
        assert clone.get_intrinsic_focus_ptr(0)[0] == 3.0
