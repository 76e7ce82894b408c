"""
Camera adjustments.

A CameraAdjustment is a position plus a rotation. Applied to a camera it
moves the camera center by the position (translation) and turns the
camera around its own center by the rotation. In the optimizer a camera
block holds NUM_CAMERA_PARAMS values: the position followed by the
rotation as an axis-angle vector.
"""

from pathlib import Path
import logging

import numpy as np

from .errors import AdjustmentFileError, ConfigurationError
from .rotations import (axis_angle_to_matrix, decompose_similarity, matrix_to_axis_angle,
                        matrix_to_quaternion, normalize_quaternion, quaternion_to_matrix)

logger = logging.getLogger(__name__)

NUM_CAMERA_PARAMS = 6
ADJUST_PRECISION = 18


class CameraAdjustment:
    """Position and orientation correction of one camera."""

    def __init__(self, position=(0.0, 0.0, 0.0), pose=(0.0, 0.0, 0.0, 1.0)):
        self._position = np.array(position, dtype=np.float64)
        self._pose = normalize_quaternion(pose)

    @classmethod
    def from_array(cls, arr) -> "CameraAdjustment":
        """Read from a camera block: position then axis-angle."""
        arr = np.asarray(arr, dtype=np.float64)
        return cls(arr[:3], matrix_to_quaternion(axis_angle_to_matrix(arr[3:NUM_CAMERA_PARAMS])))

    def position(self) -> np.ndarray:
        return self._position.copy()

    def pose(self) -> np.ndarray:
        """Rotation as a quaternion (x, y, z, w)."""
        return self._pose.copy()

    def rotation_matrix(self) -> np.ndarray:
        return quaternion_to_matrix(self._pose)

    def pack_to_array(self, arr) -> None:
        """Write into a camera block in place."""
        arr[:3] = self._position
        arr[3:NUM_CAMERA_PARAMS] = matrix_to_axis_angle(self.rotation_matrix())

    def copy_from_camera(self, camera) -> None:
        """Take the absolute pose of a pinhole or optical bar camera."""
        self._position = np.asarray(camera.camera_center(), dtype=np.float64).copy()
        self._pose = matrix_to_quaternion(camera.camera_pose())

    def copy_from_adjusted_camera(self, adj_cam: "AdjustedCameraModel") -> None:
        self._position = adj_cam.translation()
        self._pose = adj_cam.rotation()

    def read_from_adjust_file(self, path) -> None:
        """
        Read an adjustment file: the position on one line, then the
        quaternion as w x y z on the next.

        Raises:
            FileNotFoundError: if the file does not exist
            AdjustmentFileError: if the file is malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Adjustment file not found: {path}")
        logger.debug(f"Reading adjustment: {path}")

        with open(path, 'r') as f:
            tokens = f.read().split()
        if len(tokens) < 7:
            raise AdjustmentFileError(path, f"expecting 7 values, got {len(tokens)}")
        try:
            vals = [float(t) for t in tokens[:7]]
        except ValueError as e:
            raise AdjustmentFileError(path, str(e)) from None
        if not np.all(np.isfinite(vals)):
            raise AdjustmentFileError(path, "non-finite value")

        w, x, y, z = vals[3:7]
        if w == 0 and x == 0 and y == 0 and z == 0:
            raise AdjustmentFileError(path, "zero quaternion")
        self._position = np.array(vals[:3])
        self._pose = normalize_quaternion([x, y, z, w])

    def __repr__(self) -> str:
        return f"CameraAdjustment(position={self._position.tolist()}, pose={self._pose.tolist()})"


def write_adjustments(path, position, pose) -> None:
    """Write an adjustment file. The pose is a quaternion (x, y, z, w)."""
    x, y, z, w = pose
    logger.info(f"Writing: {path}")
    with open(path, 'w') as f:
        f.write(' '.join(f"{v:.{ADJUST_PRECISION}g}" for v in position) + '\n')
        f.write(' '.join(f"{v:.{ADJUST_PRECISION}g}" for v in (w, x, y, z)) + '\n')


def bundle_adjust_file_name(prefix: str, image_file: str, camera_file: str) -> str:
    """
    Name of the adjustment file of a camera: prefix-<stem>.adjust.

    The stem comes from the image file, or from the camera file if no
    image file is given.
    """
    name = image_file if image_file else camera_file
    return f"{prefix}-{Path(name).stem}.adjust"


def csm_state_file(adjust_file: str) -> str:
    """CSM state file that accompanies an adjustment file."""
    return str(Path(adjust_file).with_suffix('')) + '.adjusted_state.json'


class AdjustedCameraModel:
    """
    A camera with a position and rotation correction applied on top.

    The underlying camera is not modified. The rotation is about the
    rotation center, which defaults to the underlying camera center.
    """

    def __init__(self, camera, translation=(0.0, 0.0, 0.0), rotation=(0.0, 0.0, 0.0, 1.0),
                 rotation_center=None):
        self.camera = camera
        self._translation = np.array(translation, dtype=np.float64)
        self._rotation = normalize_quaternion(rotation)
        if rotation_center is None:
            rotation_center = camera.camera_center()
        self._rotation_center = np.array(rotation_center, dtype=np.float64)

    def copy(self) -> "AdjustedCameraModel":
        return AdjustedCameraModel(self.camera, self._translation, self._rotation,
                                   self._rotation_center)

    def translation(self) -> np.ndarray:
        return self._translation.copy()

    def rotation(self) -> np.ndarray:
        return self._rotation.copy()

    def rotation_center(self) -> np.ndarray:
        return self._rotation_center.copy()

    def ecef_transform(self) -> np.ndarray:
        """4x4 transform taking the underlying camera to the adjusted one."""
        R = quaternion_to_matrix(self._rotation)
        M = np.eye(4)
        M[:3, :3] = R
        M[:3, 3] = self._rotation_center + self._translation - R @ self._rotation_center
        return M

    def apply_transform(self, M) -> None:
        """Compose a rigid 4x4 transform on top of the current adjustment."""
        R_new, T_new, scale = decompose_similarity(M)
        if abs(scale - 1.0) > 1e-6:
            raise ConfigurationError("Adjusted camera models do not support a transform with a scale")
        total = np.eye(4)
        total[:3, :3] = R_new
        total[:3, 3] = T_new
        total = total @ self.ecef_transform()
        R = total[:3, :3]
        self._rotation = matrix_to_quaternion(R)
        self._translation = total[:3, 3] - self._rotation_center + R @ self._rotation_center

    def camera_center(self, pix=None) -> np.ndarray:
        R = quaternion_to_matrix(self._rotation)
        C = self.camera.camera_center(pix)
        return R @ (C - self._rotation_center) + self._rotation_center + self._translation

    def pixel_to_vector(self, pix) -> np.ndarray:
        return quaternion_to_matrix(self._rotation) @ self.camera.pixel_to_vector(pix)

    def point_to_pixel(self, xyz) -> np.ndarray:
        R = quaternion_to_matrix(self._rotation)
        offset = np.asarray(xyz, dtype=np.float64) - self._rotation_center - self._translation
        return self.camera.point_to_pixel(R.T @ offset + self._rotation_center)

    def __repr__(self) -> str:
        return (f"AdjustedCameraModel(translation={self._translation.tolist()}, "
                f"rotation={self._rotation.tolist()}, camera={self.camera!r})")
