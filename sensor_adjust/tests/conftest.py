"""
Shared fixtures: synthetic cameras with simple, known geometry.

The linescan camera flies along +X at 1000 m above the Z = 0 plane at
100 m/s, looking straight down. The detector runs along Y. Line y is
acquired at time -5 + 0.01 * y, when the camera is at X = 100 * time.
So the ground point (0, 50, 0) is seen at pixel (550, 500).
"""

import pytest
import numpy as np

from sensor_adjust.csm import CsmFrameModel, CsmLinescanModel
from sensor_adjust.distortion import RadTanDistortion
from sensor_adjust.optical_bar import OpticalBarModel
from sensor_adjust.pinhole import PinholeModel
from sensor_adjust.rotations import matrix_to_quaternion

ALTITUDE = 1000.0
SPEED = 100.0


@pytest.fixture
def down_rotation():
    """Camera-to-world rotation looking down -Z, camera x along world Y, camera y along world X."""
    return np.array([[0.0, 1.0, 0.0],
                     [1.0, 0.0, 0.0],
                     [0.0, 0.0, -1.0]])


@pytest.fixture
def linescan_model(down_rotation):
    times = np.arange(-10.0, 10.0 + 0.5, 1.0)
    positions = np.array([[SPEED * t, 0.0, ALTITUDE] for t in times])
    q = matrix_to_quaternion(down_rotation)
    quaternions = np.tile(q, (len(times), 1))
    return CsmLinescanModel(
        image_size=(1000, 1000), focal_length=1000.0, optical_center=(500.0, 0.0),
        t0_line=-5.0, dt_line=0.01,
        positions=positions, t0_ephem=-10.0, dt_ephem=1.0,
        quaternions=quaternions, t0_quat=-10.0, dt_quat=1.0)


@pytest.fixture
def frame_model(down_rotation):
    """Frame camera at (0, 0, 1000). The point (10, 20, 0) is seen at pixel (520, 510)."""
    return CsmFrameModel(
        image_size=(1000, 1000), focal_length=1000.0, optical_center=(500.0, 500.0),
        position=(0.0, 0.0, ALTITUDE), quaternion=matrix_to_quaternion(down_rotation))


@pytest.fixture
def pinhole_model(down_rotation):
    return PinholeModel(
        camera_center=(100.0, 200.0, ALTITUDE),
        rotation=down_rotation,
        focal_length=(1000.0, 1000.0),
        point_offset=(500.0, 400.0),
        lens=RadTanDistortion([1e-3, -2e-4, 1e-5, 2e-5]),
        image_size=(1000, 800),
    )


@pytest.fixture
def optical_bar_model(down_rotation):
    return OpticalBarModel(
        image_size=(20000, 2000),
        optical_center=(10000.0, 1000.0),
        pixel_size=7e-6,
        focal_length=0.61,
        scan_angle=np.deg2rad(70.0),
        scan_time=0.5,
        camera_center=(6371000.0 + 150000.0, 0.0, 0.0),
        rotation=np.array([[0.0, 0.0, -1.0],
                           [0.0, 1.0, 0.0],
                           [1.0, 0.0, 0.0]]),
        speed=7700.0,
        motion_compensation=1.0,
    )
