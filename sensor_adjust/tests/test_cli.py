"""
End-to-end tests for the command-line driver.
"""

import sys

import pytest
import numpy as np
from numpy.testing import assert_allclose

from sensor_adjust.camera_variants import load_camera
from sensor_adjust.cli import main, run, solve_jitter
from sensor_adjust.config import BundleAdjustOptions
from sensor_adjust.csm import CsmFrameModel, pack_frame_params, unpack_frame_params
from sensor_adjust.errors import ConfigurationError
from sensor_adjust.observations import Observation
from sensor_adjust.param_storage import ParamStorage
from sensor_adjust.pinhole import PinholeModel
from sensor_adjust.rig_set import (RigCamInfo, RigSet, affine_to_rigid_params,
                                   linescan_to_curr_sensor_trans)
from sensor_adjust.rotations import is_rotation_matrix, roll_pitch_yaw


@pytest.fixture
def pinhole_run(tmp_path, pinhole_model):
    pinhole_model.write(tmp_path / 'cam0.tsai')
    M = np.eye(4)
    M[:3, 3] = [1.0, 2.0, 3.0]
    np.savetxt(tmp_path / 'align.txt', M)
    config = tmp_path / 'run.yaml'
    config.write_text("camera_type: pinhole\n"
                      "camera_files: [cam0.tsai]\n"
                      "initial_transform: align.txt\n"
                      "out_prefix: out/run\n")
    (tmp_path / 'out').mkdir()
    return config


def test_run_applies_initial_transform(pinhole_run, pinhole_model, tmp_path):
    opt = BundleAdjustOptions.from_yaml(str(pinhole_run))
    assert run(opt) == 1

    cam = load_camera(tmp_path / 'out' / 'run-cam0.tsai')
    assert_allclose(cam.camera_center(), pinhole_model.camera_center() + [1.0, 2.0, 3.0],
                    atol=1e-9)


def test_run_needs_cameras():
    with pytest.raises(ConfigurationError):
        run(BundleAdjustOptions(camera_type='pinhole', out_prefix='run'))


def test_pinhole_bundle_floats_only_selected_intrinsics(tmp_path, pinhole_model):
    """Observations on pinhole cameras are bundle adjusted, with only the focal length floated."""
    ground = [(x, y, 0.0) for x in (0.0, 100.0, 200.0) for y in (100.0, 200.0, 300.0)]
    truth = pinhole_model.copy()
    truth.set_focal_length(pinhole_model.focal_length() * 1.02)
    pixels = [truth.point_to_pixel(p) for p in ground]

    pinhole_model.write(tmp_path / 'cam0.tsai')
    with open(tmp_path / 'points.csv', 'w') as f:
        for i, p in enumerate(ground):
            f.write(f"p{i},{p[0]},{p[1]},{p[2]}\n")
    with open(tmp_path / 'obs.csv', 'w') as f:
        for i, pix in enumerate(pixels):
            f.write(f"p{i},0,{pix[0]},{pix[1]}\n")

    opt = BundleAdjustOptions(camera_type='pinhole',
                              camera_files=[str(tmp_path / 'cam0.tsai')],
                              points=str(tmp_path / 'points.csv'),
                              observations=str(tmp_path / 'obs.csv'),
                              solve_intrinsics=True, intrinsics_to_float='focal_length',
                              out_prefix=str(tmp_path / 'run'))
    assert run(opt) == 1

    cam = load_camera(tmp_path / 'run-cam0.tsai')
    assert_allclose(cam.point_offset(), pinhole_model.point_offset())
    assert_allclose(cam.lens_distortion().distortion_parameters(),
                    pinhole_model.lens_distortion().distortion_parameters())
    assert not np.allclose(cam.focal_length(), pinhole_model.focal_length())


def test_pinhole_gcp_alignment(tmp_path, down_rotation):
    """Cameras in an arbitrary frame are moved to the frame of the GCP."""
    world = [PinholeModel(camera_center=(x, 0.0, 1000.0), rotation=down_rotation,
                          focal_length=(1000.0, 1000.0), point_offset=(500.0, 500.0),
                          image_size=(1000, 1000))
             for x in (0.0, 300.0)]
    gcp = [(-100.0, -150.0, 0.0), (150.0, 100.0, 10.0), (50.0, -80.0, -5.0),
           (200.0, 180.0, 0.0), (350.0, -100.0, 20.0)]
    to_world = np.eye(4)
    to_world[:3, :3] = 3.0 * roll_pitch_yaw(0.0, 0.0, 45.0)
    to_world[:3, 3] = [10.0, 20.0, 30.0]

    with open(tmp_path / 'gcp.csv', 'w') as f:
        for i, p in enumerate(gcp):
            f.write(f"g{i},{p[0]},{p[1]},{p[2]}\n")
    with open(tmp_path / 'gcp_obs.csv', 'w') as f:
        for icam, cam in enumerate(world):
            for i, p in enumerate(gcp):
                pix = cam.point_to_pixel(p)
                f.write(f"g{i},{icam},{pix[0]},{pix[1]}\n")
    for icam, cam in enumerate(world):
        sfm = cam.copy()
        sfm.apply_transform(np.linalg.inv(to_world))
        sfm.write(tmp_path / f'cam{icam}.tsai')

    opt = BundleAdjustOptions(camera_type='pinhole',
                              camera_files=[str(tmp_path / f'cam{i}.tsai') for i in range(2)],
                              gcp=str(tmp_path / 'gcp.csv'),
                              gcp_observations=str(tmp_path / 'gcp_obs.csv'),
                              gcp_alignment='multi',
                              out_prefix=str(tmp_path / 'run'))
    assert run(opt) == 2

    for icam, cam in enumerate(world):
        out = load_camera(tmp_path / f'run-cam{icam}.tsai')
        assert_allclose(out.camera_center(), cam.camera_center(), atol=1e-4)
        assert_allclose(out.camera_pose(), cam.camera_pose(), atol=1e-8)


def test_gcp_alignment_needs_pinhole(tmp_path, frame_model):
    frame_model.save_state(tmp_path / 'frame.json')
    opt = BundleAdjustOptions(camera_type='csm', stereo_session='csm',
                              camera_files=[str(tmp_path / 'frame.json')],
                              gcp_alignment='multi', out_prefix=str(tmp_path / 'run'))
    with pytest.raises(ConfigurationError, match="only for pinhole"):
        run(opt)


def test_frame_jitter_solve(tmp_path, frame_model):
    """A frame camera with a small position error is refined against its observations."""
    ground = [(x, y, 0.0) for x in (-100.0, 0.0, 100.0) for y in (-100.0, 0.0, 100.0)]
    pixels = [frame_model.point_to_pixel(p) for p in ground]

    shifted = CsmFrameModel(image_size=frame_model.image_size, focal_length=1000.0,
                            optical_center=(500.0, 500.0),
                            position=frame_model.position + [2.0, -1.0, 0.0],
                            quaternion=frame_model.quaternion)
    shifted.save_state(tmp_path / 'frame.json')

    with open(tmp_path / 'points.csv', 'w') as f:
        f.write("point_id,x,y,z\n")
        for i, p in enumerate(ground):
            f.write(f"p{i},{p[0]},{p[1]},{p[2]}\n")
    with open(tmp_path / 'obs.csv', 'w') as f:
        for i, pix in enumerate(pixels):
            f.write(f"p{i},0,{pix[0]},{pix[1]}\n")

    opt = BundleAdjustOptions(camera_type='csm', stereo_session='csm',
                              camera_files=[str(tmp_path / 'frame.json')],
                              points=str(tmp_path / 'points.csv'),
                              observations=str(tmp_path / 'obs.csv'),
                              out_prefix=str(tmp_path / 'run'))
    assert run(opt) == 1

    cam = load_camera(tmp_path / 'run-frame.adjusted_state.json')
    assert isinstance(cam, CsmFrameModel)
    before = np.mean([np.linalg.norm(shifted.point_to_pixel(p) - pix)
                      for p, pix in zip(ground, pixels)])
    assert before > 1.0
    assert not np.allclose(cam.position, shifted.position)


def test_rig_jitter_solve(linescan_model, frame_model):
    """A frame sensor tied to a linescan reference by a rig transform that is 2 m off."""
    true_trans = np.eye(4)
    true_trans[:3, 3] = [-3.0, 0.0, 0.0]
    at_zero = RigCamInfo(beg_pose_time=0.0, end_pose_time=0.0)
    frame = frame_model.copy()
    unpack_frame_params(linescan_to_curr_sensor_trans(linescan_model, at_zero,
                                                      affine_to_rigid_params(true_trans)), frame)

    ground = [np.array([x, y, 0.0]) for x in (-20.0, 0.0, 20.0) for y in (-100.0, 0.0, 100.0)]
    observations = []
    for ipt, p in enumerate(ground):
        observations.append(Observation(ipt, 0, linescan_model.point_to_pixel(p)))
        observations.append(Observation(ipt, 1, frame.point_to_pixel(p)))

    start = np.eye(4)
    start[:3, 3] = [-1.0, 0.0, 0.0]
    rig = RigSet(cam_set=[['linescan', 'frame']], cam_names=['linescan', 'frame'],
                 ref_to_cam_trans=[np.eye(4), start.copy()])
    opt = BundleAdjustOptions(camera_type='csm',
                              camera_files=['img_linescan.json', 'img_frame.json'])
    storage = ParamStorage(len(ground), 2)
    for ipt, p in enumerate(ground):
        storage.get_point_ptr(ipt)[:] = p
    cameras = [linescan_model.copy(), frame_model.copy()]

    solve_jitter(opt, cameras, storage, observations, rig)

    solved = rig.ref_to_cam_trans[1]
    assert not np.allclose(solved, start)
    assert is_rotation_matrix(solved[:3, :3])
    expected = linescan_to_curr_sensor_trans(cameras[0], at_zero, affine_to_rigid_params(solved))
    assert_allclose(pack_frame_params(cameras[1])[:3], expected[:3], atol=1e-5)
    errors = [np.linalg.norm(cameras[1].point_to_pixel(storage.get_point_ptr(ipt))
                             - frame.point_to_pixel(p)) for ipt, p in enumerate(ground)]
    assert np.mean(errors) < 0.5


class TestMain:

    def test_success(self, pinhole_run, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['sensor-adjust', str(pinhole_run)])
        assert main() == 0
        assert (tmp_path / 'out' / 'run-cam0.tsai').exists()

    def test_out_prefix_override(self, pinhole_run, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['sensor-adjust', str(pinhole_run),
                                          '-o', str(tmp_path / 'other')])
        assert main() == 0
        assert (tmp_path / 'other-cam0.tsai').exists()

    def test_missing_config(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['sensor-adjust', str(tmp_path / 'none.yaml')])
        assert main() == 1

    def test_bad_config(self, tmp_path, monkeypatch):
        config = tmp_path / 'run.yaml'
        config.write_text("camera_type: rpc\ncamera_files: [a.tsai]\nout_prefix: run\n")
        monkeypatch.setattr(sys, 'argv', ['sensor-adjust', str(config)])
        assert main() == 1
