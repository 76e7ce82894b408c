"""
Tests for loading and saving run options.
"""

import pytest

from sensor_adjust.config import BundleAdjustOptions
from sensor_adjust.errors import ConfigurationError


class TestBundleAdjustOptions:

    def test_defaults(self):
        opt = BundleAdjustOptions()
        assert opt.camera_type == 'other'
        assert opt.intrinsics_to_share is None
        assert opt.max_init_reproj_error == 5.0
        assert opt.robust_threshold == 0.5
        assert opt.camera_models == []

    def test_from_yaml_resolves_paths(self, tmp_path):
        """Paths in the file are relative to the file."""
        config = tmp_path / 'run.yaml'
        config.write_text(
            "camera_type: ' CSM '\n"
            "stereo_session: csm\n"
            "image_files: [left.tif, right.tif]\n"
            "camera_files: [left.json, right.json]\n"
            "out_prefix: run/run\n"
            "initial_transform: align.txt\n"
            "roll_weight: 2.5\n"
            "intrinsics_to_share: ''\n"
        )

        opt = BundleAdjustOptions.from_yaml(str(config))

        assert opt.camera_type == 'csm'
        assert opt.image_files == [str(tmp_path / 'left.tif'), str(tmp_path / 'right.tif')]
        assert opt.camera_files[1] == str(tmp_path / 'right.json')
        assert opt.out_prefix == str(tmp_path / 'run' / 'run')
        assert opt.initial_transform == str(tmp_path / 'align.txt')
        assert opt.input_prefix == ''
        assert opt.roll_weight == 2.5
        # An empty string is specified, unlike a missing value
        assert opt.intrinsics_to_share == ''
        assert opt.is_csm_like_session()

    def test_gcp_paths(self, tmp_path):
        config = tmp_path / 'run.yaml'
        config.write_text("camera_type: pinhole\n"
                          "gcp: gcp/points.csv\n"
                          "gcp_observations: gcp/obs.csv\n"
                          "gcp_alignment: mono\n")
        opt = BundleAdjustOptions.from_yaml(str(config))
        assert opt.gcp == str(tmp_path / 'gcp' / 'points.csv')
        assert opt.gcp_observations == str(tmp_path / 'gcp' / 'obs.csv')
        assert opt.gcp_alignment == 'mono'

    def test_empty_file(self, tmp_path):
        config = tmp_path / 'empty.yaml'
        config.write_text('')
        opt = BundleAdjustOptions.from_yaml(str(config))
        assert opt.camera_files == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BundleAdjustOptions.from_yaml(str(tmp_path / 'none.yaml'))

    def test_unknown_option(self, tmp_path):
        config = tmp_path / 'run.yaml'
        config.write_text("camera_type: pinhole\nsolve_intrinsic: true\n")
        with pytest.raises(ConfigurationError, match="solve_intrinsic"):
            BundleAdjustOptions.from_yaml(str(config))

    def test_not_a_mapping(self, tmp_path):
        config = tmp_path / 'run.yaml'
        config.write_text("- pinhole\n- csm\n")
        with pytest.raises(ConfigurationError):
            BundleAdjustOptions.from_yaml(str(config))

    def test_round_trip(self, tmp_path):
        opt = BundleAdjustOptions(camera_type='pinhole', solve_intrinsics=True,
                                  intrinsics_to_float='focal_length',
                                  intrinsics_limits='0.9 1.1', max_num_iterations=20)
        opt.camera_models = ['not saved']
        path = tmp_path / 'saved.yaml'
        opt.to_yaml(str(path))

        assert 'camera_models' not in path.read_text()
        back = BundleAdjustOptions.from_yaml(str(path))
        assert back.camera_type == 'pinhole'
        assert back.solve_intrinsics
        assert back.intrinsics_to_float == 'focal_length'
        assert back.intrinsics_limits == '0.9 1.1'
        assert back.max_num_iterations == 20
        assert back.intrinsics_to_share is None

    def test_session_kind(self):
        assert BundleAdjustOptions(stereo_session='dg').is_csm_like_session()
        assert not BundleAdjustOptions(stereo_session='pinhole').is_csm_like_session()
