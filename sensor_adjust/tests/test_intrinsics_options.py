"""
Tests for the intrinsics float and share options.
"""

import pytest

from sensor_adjust.errors import ConfigurationError
from sensor_adjust.intrinsics_options import (
    IntrinsicOptions,
    coarse_grained_parse,
    distortion_sanity_check,
    fine_grained_parse,
    is_str_non_neg_integer,
    load_intrinsics_options,
    parse_intrinsics_limits,
    read_image_cam_lists,
    replace_separators_with_space,
)


def per_sensor_opts(num_sensors=3, cams_per_sensor=1):
    opts = IntrinsicOptions(share_intrinsics_per_sensor=True, num_sensors=num_sensors)
    opts.cam2sensor = [s for s in range(num_sensors) for _ in range(cams_per_sensor)]
    return opts


class TestSeparators:

    def test_all_separators_become_spaces(self):
        text = "1:focal_length,optical_center;2\\all\t3\nnone"
        assert replace_separators_with_space(text).split() == [
            '1', 'focal_length', 'optical_center', '2', 'all', '3', 'none']

    def test_non_negative_integer(self):
        assert is_str_non_neg_integer('0')
        assert is_str_non_neg_integer('12')
        assert not is_str_non_neg_integer('-1')
        assert not is_str_non_neg_integer('1.5')
        assert not is_str_non_neg_integer('focal_length')
        assert not is_str_non_neg_integer('')


class TestFineGrainedParse:

    def test_mixed_sensors(self):
        """Sensor 1 floats focus, sensor 2 everything, sensor 3 nothing."""
        options = replace_separators_with_space("1:focal_length 2:all 3:none").split()
        center, focus, distortion = fine_grained_parse(True, 3, options)

        assert (center[0], focus[0], distortion[0]) == (False, True, False)
        assert (center[1], focus[1], distortion[1]) == (True, True, True)
        assert (center[2], focus[2], distortion[2]) == (False, False, False)

    def test_unlisted_sensor_floats_nothing(self):
        center, focus, distortion = fine_grained_parse(True, 2, ['2', 'optical_center'])
        assert center == [False, True]
        assert focus == [False, False]
        assert distortion == [False, False]

    def test_requires_per_sensor_sharing(self):
        with pytest.raises(ConfigurationError, match="per sensor"):
            fine_grained_parse(False, 3, ['1', 'all'])

    def test_first_token_must_be_integer(self):
        with pytest.raises(ConfigurationError, match="integer"):
            fine_grained_parse(True, 3, ['all', '1'])

    def test_sensor_out_of_bounds(self):
        with pytest.raises(ConfigurationError, match="out of bounds"):
            fine_grained_parse(True, 2, ['3', 'all'])
        with pytest.raises(ConfigurationError, match="out of bounds"):
            fine_grained_parse(True, 2, ['0', 'all'])

    def test_repeated_sensor(self):
        with pytest.raises(ConfigurationError, match="repeated"):
            fine_grained_parse(True, 2, ['1', 'all', '1', 'none'])

    def test_unknown_token(self):
        with pytest.raises(ConfigurationError, match="unknown option"):
            fine_grained_parse(True, 2, ['1', 'lens'])


class TestCoarseGrainedParse:

    def test_same_flags_for_all_sensors(self):
        """A coarse option applies to every sensor."""
        center, focus, distortion = coarse_grained_parse(3, ['optical_center'])
        assert center == [True, True, True]
        assert focus == [False, False, False]
        assert distortion == [False, False, False]

    def test_no_sensors_gives_one_entry(self):
        center, focus, distortion = coarse_grained_parse(0, ['focal_length', 'distortion'])
        assert center == [False]
        assert focus == [True]
        assert distortion == [True]

    def test_rejects_integer(self):
        with pytest.raises(ConfigurationError):
            coarse_grained_parse(3, ['1', 'all'])


class TestLoadIntrinsicsOptions:

    def test_not_solving(self):
        opts = load_intrinsics_options(False)
        assert not opts.float_any()

    def test_options_without_solving_rejected(self):
        with pytest.raises(ConfigurationError, match="solve_intrinsics"):
            load_intrinsics_options(False, intrinsics_to_float='focal_length')

    def test_default_floats_and_shares_everything(self):
        opts = load_intrinsics_options(True)
        assert opts.float_center == [True]
        assert opts.float_focus == [True]
        assert opts.float_distortion == [True]
        assert opts.center_shared and opts.focus_shared and opts.distortion_shared

    def test_share_subset(self):
        opts = load_intrinsics_options(True, 'focal_length optical_center', 'focal_length')
        assert opts.focus_shared
        assert not opts.center_shared
        assert not opts.distortion_shared
        assert opts.float_distortion == [False]

    def test_share_none(self):
        opts = load_intrinsics_options(True, 'all', 'none')
        assert not (opts.center_shared or opts.focus_shared or opts.distortion_shared)

    def test_unknown_share_token(self):
        with pytest.raises(ConfigurationError, match="unknown intrinsic to share"):
            load_intrinsics_options(True, 'all', 'lens')

    def test_coarse_shared_mode_three_sensors(self):
        opts = IntrinsicOptions(num_sensors=3)
        load_intrinsics_options(True, 'optical_center', None, opts)
        assert opts.float_center == [True, True, True]
        assert opts.float_focus == [False, False, False]
        assert opts.float_distortion == [False, False, False]

    def test_per_sensor_fine_grammar(self):
        opts = per_sensor_opts(3)
        load_intrinsics_options(True, '1:focal_length 2:all 3:none', None, opts)
        assert opts.float_focus == [True, True, False]
        assert opts.float_center == [False, True, False]

    def test_share_ignored_per_sensor(self, caplog):
        opts = per_sensor_opts(2)
        load_intrinsics_options(True, 'all', 'focal_length', opts)
        assert "ignored" in caplog.text
        assert opts.center_shared and opts.focus_shared and opts.distortion_shared

    def test_sensor_of(self):
        opts = per_sensor_opts(2, cams_per_sensor=2)
        assert [opts.sensor_of(i) for i in range(4)] == [0, 0, 1, 1]
        assert IntrinsicOptions().sensor_of(3) == 0


class TestIntrinsicsLimits:

    def test_pairs(self):
        assert parse_intrinsics_limits("0.9 1.1 0.8 1.2") == [0.9, 1.1, 0.8, 1.2]

    def test_empty(self):
        assert parse_intrinsics_limits('') == []

    def test_odd_count(self):
        with pytest.raises(ConfigurationError, match="pairs"):
            parse_intrinsics_limits("0.9 1.1 0.8")

    def test_min_after_max(self):
        with pytest.raises(ConfigurationError, match="min before max"):
            parse_intrinsics_limits("1.1 0.9")


class TestDistortionSanityCheck:

    def test_shared_sizes_must_match(self):
        opts = IntrinsicOptions(distortion_shared=True)
        distortion_sanity_check([4, 4, 4], opts, [])
        with pytest.raises(ConfigurationError):
            distortion_sanity_check([4, 5, 4], opts, [])

    def test_unshared_sizes_may_differ(self):
        opts = IntrinsicOptions(distortion_shared=False)
        distortion_sanity_check([4, 5, 1], opts, [])

    def test_per_sensor(self):
        opts = per_sensor_opts(2, cams_per_sensor=2)
        distortion_sanity_check([4, 4, 5, 5], opts, [])
        with pytest.raises(ConfigurationError, match="sensor 2"):
            distortion_sanity_check([4, 4, 5, 1], opts, [])

    def test_limits_need_equal_sizes(self):
        opts = IntrinsicOptions(distortion_shared=False)
        with pytest.raises(ConfigurationError, match="limits"):
            distortion_sanity_check([4, 5], opts, [0.9, 1.1])


class TestImageCamLists:

    def write_list(self, path, names):
        path.write_text('\n'.join(names) + '\n')
        return str(path)

    def test_single_list(self, tmp_path):
        images = self.write_list(tmp_path / 'images.txt', ['a.tif', 'b.tif'])
        cameras = self.write_list(tmp_path / 'cameras.txt', ['a.tsai', 'b.tsai'])
        opts = IntrinsicOptions()
        imgs, cams = read_image_cam_lists(images, cameras, opts)
        assert imgs == ['a.tif', 'b.tif']
        assert cams == ['a.tsai', 'b.tsai']
        assert not opts.share_intrinsics_per_sensor

    def test_per_sensor_lists(self, tmp_path):
        img1 = self.write_list(tmp_path / 'img1.txt', ['a.tif', 'b.tif'])
        img2 = self.write_list(tmp_path / 'img2.txt', ['c.tif'])
        cam1 = self.write_list(tmp_path / 'cam1.txt', ['a.tsai', 'b.tsai'])
        cam2 = self.write_list(tmp_path / 'cam2.txt', ['c.tsai'])
        opts = IntrinsicOptions()
        imgs, cams = read_image_cam_lists(f"{img1},{img2}", f"{cam1},{cam2}", opts)
        assert imgs == ['a.tif', 'b.tif', 'c.tif']
        assert opts.share_intrinsics_per_sensor
        assert opts.cam2sensor == [0, 0, 1]
        assert opts.num_sensors == 2

    def test_mismatched_lengths(self, tmp_path):
        images = self.write_list(tmp_path / 'images.txt', ['a.tif', 'b.tif'])
        cameras = self.write_list(tmp_path / 'cameras.txt', ['a.tsai'])
        with pytest.raises(ConfigurationError):
            read_image_cam_lists(images, cameras, IntrinsicOptions())

    def test_missing_list(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_image_cam_lists(str(tmp_path / 'none.txt'), '', IntrinsicOptions())
