"""
Pinhole camera model with lens distortion.

Coordinate System:
    - Camera frame: looking along +Z, X and Y aligned with image columns and rows
    - Image frame: x-right (columns), y-down (rows), origin at top-left pixel

Projection Model:
    1. World to camera: p_cam = R^T (p - C), R being camera-to-world
    2. Perspective projection: x' = X/Z, y' = Y/Z
    3. Distortion (optional): see sensor_adjust.distortion
    4. Pixel mapping: u = (fu*x'' + cu) / pitch, v = (fv*y'' + cv) / pitch

Focal length and optical center are expressed in the same units as the
pixel pitch, as in the .tsai file format.
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np

from .distortion import DistortionType, LensDistortion, NoDistortion, make_distortion
from .errors import ConfigurationError, ProjectionError
from .rotations import decompose_similarity

logger = logging.getLogger(__name__)

TSAI_VERSION = 'VERSION_4'

# Name of each distortion model in .tsai files, and the names of its coefficients
_TSAI_DISTORTION_NAMES = {
    DistortionType.NONE: 'NULL',
    DistortionType.FOV: 'FOV',
    DistortionType.FISHEYE: 'FISHEYE',
    DistortionType.RADTAN: 'RADTAN',
    DistortionType.RPC: 'RPC',
}
_TSAI_COEFF_NAMES = {
    DistortionType.FOV: ['k1'],
    DistortionType.FISHEYE: ['k1', 'k2', 'k3', 'k4'],
    DistortionType.RADTAN: ['k1', 'k2', 'p1', 'p2', 'k3'],
}


def read_keyed_lines(path) -> Tuple[List[str], Dict[str, List[str]]]:
    """
    Read a text camera file of 'key = values' lines.

    Returns:
        Tuple of (bare lines without '=', in order; dict of key -> value tokens)
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Camera file not found: {path}")

    bare = []
    keyed = {}
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if '=' in line:
                key, _, value = line.partition('=')
                keyed[key.strip()] = value.split()
            else:
                bare.append(line)
    return bare, keyed


def _floats(keyed: Dict[str, List[str]], key: str, count: int, path) -> np.ndarray:
    if key not in keyed:
        raise ConfigurationError(f"Missing field '{key}' in camera file {path}")
    try:
        vals = np.array([float(v) for v in keyed[key]])
    except ValueError:
        raise ConfigurationError(f"Non-numeric value for '{key}' in camera file {path}") from None
    if count >= 0 and vals.size != count:
        raise ConfigurationError(
            f"Expecting {count} values for '{key}' in camera file {path}, got {vals.size}")
    return vals


def _fmt(vals) -> str:
    return ' '.join(f"{v:.17g}" for v in np.atleast_1d(vals))


class PinholeModel:
    """
    Frame camera with closed-form intrinsics and extrinsics.

    Attributes are accessed through getters/setters so that variants can
    treat pinhole and optical bar cameras uniformly.
    """

    def __init__(
        self,
        camera_center=(0.0, 0.0, 0.0),
        rotation=None,
        focal_length=(1.0, 1.0),
        point_offset=(0.0, 0.0),
        lens: Optional[LensDistortion] = None,
        pixel_pitch: float = 1.0,
        image_size: Optional[Tuple[int, int]] = None,
    ):
        self._center = np.array(camera_center, dtype=np.float64)
        self._rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        self._focal = np.array(focal_length, dtype=np.float64)
        self._offset = np.array(point_offset, dtype=np.float64)
        self._lens = lens.copy() if lens is not None else NoDistortion()
        self.pixel_pitch = float(pixel_pitch)
        self.image_size = image_size

    # Extrinsics

    def camera_center(self, pix=None) -> np.ndarray:
        return self._center.copy()

    def set_camera_center(self, center) -> None:
        self._center = np.array(center, dtype=np.float64)

    def camera_pose(self) -> np.ndarray:
        """Camera-to-world rotation matrix."""
        return self._rotation.copy()

    def set_camera_pose(self, rotation) -> None:
        self._rotation = np.array(rotation, dtype=np.float64)

    # Intrinsics

    def focal_length(self) -> np.ndarray:
        return self._focal.copy()

    def set_focal_length(self, focal_length) -> None:
        self._focal = np.array(focal_length, dtype=np.float64)

    def point_offset(self) -> np.ndarray:
        return self._offset.copy()

    def set_point_offset(self, offset) -> None:
        self._offset = np.array(offset, dtype=np.float64)

    def lens_distortion(self) -> LensDistortion:
        return self._lens

    def set_lens_distortion(self, lens: LensDistortion) -> None:
        self._lens = lens.copy()

    def copy(self) -> "PinholeModel":
        return PinholeModel(
            camera_center=self._center,
            rotation=self._rotation,
            focal_length=self._focal,
            point_offset=self._offset,
            lens=self._lens,
            pixel_pitch=self.pixel_pitch,
            image_size=self.image_size,
        )

    # Projection

    def point_to_pixel(self, xyz) -> np.ndarray:
        p_cam = self._rotation.T @ (np.asarray(xyz, dtype=np.float64) - self._center)
        if p_cam[2] <= 0:
            raise ProjectionError(f"Point behind camera: Z={p_cam[2]}")
        x_dist, y_dist = self._lens.distort(p_cam[0] / p_cam[2], p_cam[1] / p_cam[2])
        u = (self._focal[0] * x_dist + self._offset[0]) / self.pixel_pitch
        v = (self._focal[1] * y_dist + self._offset[1]) / self.pixel_pitch
        return np.array([u, v])

    def pixel_to_vector(self, pix) -> np.ndarray:
        x_dist = (pix[0] * self.pixel_pitch - self._offset[0]) / self._focal[0]
        y_dist = (pix[1] * self.pixel_pitch - self._offset[1]) / self._focal[1]
        x_norm, y_norm = self._lens.undistort(x_dist, y_dist)
        direction = self._rotation @ np.array([x_norm, y_norm, 1.0])
        return direction / np.linalg.norm(direction)

    def apply_transform(self, rotation, translation=None, scale: float = 1.0) -> None:
        """
        Apply a similarity transform x -> scale * rotation * x + translation.

        A single 4x4 matrix may be passed instead, in which case the scale is
        extracted from its determinant.
        """
        if translation is None:
            rotation, translation, scale = decompose_similarity(rotation)
        rotation = np.asarray(rotation, dtype=np.float64)
        self._center = scale * rotation @ self._center + np.asarray(translation)
        self._rotation = rotation @ self._rotation

    # I/O

    def write(self, path) -> None:
        """Write the camera in .tsai format."""
        lens = self._lens
        lines = [
            TSAI_VERSION,
            'PINHOLE',
            f"fu = {self._focal[0]:.17g}",
            f"fv = {self._focal[1]:.17g}",
            f"cu = {self._offset[0]:.17g}",
            f"cv = {self._offset[1]:.17g}",
            'u_direction = 1 0 0',
            'v_direction = 0 1 0',
            'w_direction = 0 0 1',
            f"C = {_fmt(self._center)}",
            f"R = {_fmt(self._rotation.ravel())}",
            f"pitch = {self.pixel_pitch:.17g}",
        ]
        if self.image_size is not None:
            lines.append(f"image_size = {int(self.image_size[0])} {int(self.image_size[1])}")
        lines.append(_TSAI_DISTORTION_NAMES[lens.dist_type])
        params = lens.distortion_parameters()
        if lens.dist_type == DistortionType.RPC:
            lines.append(f"coeffs = {_fmt(params)}")
        elif lens.dist_type != DistortionType.NONE:
            for name, val in zip(_TSAI_COEFF_NAMES[lens.dist_type], params):
                lines.append(f"{name} = {val:.17g}")

        with open(path, 'w') as f:
            f.write('\n'.join(lines) + '\n')

    @classmethod
    def read(cls, path) -> "PinholeModel":
        bare, keyed = read_keyed_lines(path)
        if 'PINHOLE' not in bare:
            raise ConfigurationError(f"Not a pinhole camera file: {path}")

        dist_names = {v: k for k, v in _TSAI_DISTORTION_NAMES.items()}
        dist_type = DistortionType.NONE
        for line in bare:
            if line in dist_names:
                dist_type = dist_names[line]
        if dist_type == DistortionType.RPC:
            params = _floats(keyed, 'coeffs', -1, path)
        elif dist_type == DistortionType.NONE:
            params = np.zeros(0)
        else:
            names = [n for n in _TSAI_COEFF_NAMES[dist_type] if n in keyed]
            params = np.array([_floats(keyed, n, 1, path)[0] for n in names])

        image_size = None
        if 'image_size' in keyed:
            image_size = tuple(int(v) for v in _floats(keyed, 'image_size', 2, path))

        return cls(
            camera_center=_floats(keyed, 'C', 3, path),
            rotation=_floats(keyed, 'R', 9, path).reshape(3, 3),
            focal_length=(_floats(keyed, 'fu', 1, path)[0], _floats(keyed, 'fv', 1, path)[0]),
            point_offset=(_floats(keyed, 'cu', 1, path)[0], _floats(keyed, 'cv', 1, path)[0]),
            lens=make_distortion(dist_type, params),
            pixel_pitch=_floats(keyed, 'pitch', 1, path)[0] if 'pitch' in keyed else 1.0,
            image_size=image_size,
        )

    def __repr__(self) -> str:
        return (f"PinholeModel(C={self._center.tolist()}, f={self._focal.tolist()}, "
                f"c={self._offset.tolist()}, lens={self._lens!r})")
