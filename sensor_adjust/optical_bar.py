"""
Optical bar (panoramic) camera model.

The film lies on a cylinder of radius equal to the focal length. A lens
sweeps across the scan angle during the scan time while the platform
moves along track, so each image column has its own exposure time and
camera center.

Pixel to ray:
    alpha = (col - cx) * pixel_size / f             (scan angle of the column)
    dt    = scan_time * alpha / scan_angle          (time relative to mid-scan)
    C(dt) = C + speed * dt * along_track
    h     = (row - cy) * pixel_size + mc * speed * dt * f / altitude
    ray   = pose @ R1(tilt) @ [sin(alpha), h / f, cos(alpha)]

The image motion compensation term (mc) shifts the film along track to
counter the platform motion.
"""

from typing import Optional, Tuple
import logging

import numpy as np

from .errors import ConfigurationError, ProjectionError
from .pinhole import TSAI_VERSION, _floats, _fmt, read_keyed_lines
from .rotations import R1, decompose_similarity

logger = logging.getLogger(__name__)


class OpticalBarModel:
    """Panoramic camera. Intrinsics: focal length, optical center, speed, motion compensation, scan time."""

    def __init__(
        self,
        image_size: Tuple[int, int] = (0, 0),
        optical_center=(0.0, 0.0),
        pixel_size: float = 1e-5,
        focal_length: float = 0.6,
        scan_angle: float = np.deg2rad(70.0),
        scan_time: float = 0.5,
        forward_tilt: float = 0.0,
        camera_center=(0.0, 0.0, 0.0),
        rotation=None,
        speed: float = 7700.0,
        mean_earth_radius: float = 6371000.0,
        mean_surface_elevation: float = 0.0,
        motion_compensation: float = 1.0,
        scan_left_to_right: bool = True,
    ):
        self.image_size = tuple(int(v) for v in image_size)
        self._optical_center = np.array(optical_center, dtype=np.float64)
        self.pixel_size = float(pixel_size)
        self._focal_length = float(focal_length)
        self.scan_angle = float(scan_angle)
        self._scan_time = float(scan_time)
        self.forward_tilt = float(forward_tilt)
        self._center = np.array(camera_center, dtype=np.float64)
        self._rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=np.float64)
        self._speed = float(speed)
        self.mean_earth_radius = float(mean_earth_radius)
        self.mean_surface_elevation = float(mean_surface_elevation)
        self._motion_compensation = float(motion_compensation)
        self.scan_left_to_right = bool(scan_left_to_right)

    def copy(self) -> "OpticalBarModel":
        return OpticalBarModel(
            image_size=self.image_size,
            optical_center=self._optical_center,
            pixel_size=self.pixel_size,
            focal_length=self._focal_length,
            scan_angle=self.scan_angle,
            scan_time=self._scan_time,
            forward_tilt=self.forward_tilt,
            camera_center=self._center,
            rotation=self._rotation,
            speed=self._speed,
            mean_earth_radius=self.mean_earth_radius,
            mean_surface_elevation=self.mean_surface_elevation,
            motion_compensation=self._motion_compensation,
            scan_left_to_right=self.scan_left_to_right,
        )

    # Getters and setters

    def camera_pose(self) -> np.ndarray:
        return self._rotation.copy()

    def set_camera_pose(self, rotation) -> None:
        self._rotation = np.array(rotation, dtype=np.float64)

    def set_camera_center(self, center) -> None:
        self._center = np.array(center, dtype=np.float64)

    def get_focal_length(self) -> float:
        return self._focal_length

    def set_focal_length(self, f: float) -> None:
        self._focal_length = float(f)

    def get_optical_center(self) -> np.ndarray:
        return self._optical_center.copy()

    def set_optical_center(self, center) -> None:
        self._optical_center = np.array(center, dtype=np.float64)

    def get_speed(self) -> float:
        return self._speed

    def set_speed(self, speed: float) -> None:
        self._speed = float(speed)

    def get_motion_compensation(self) -> float:
        return self._motion_compensation

    def set_motion_compensation(self, mc: float) -> None:
        self._motion_compensation = float(mc)

    def get_scan_time(self) -> float:
        return self._scan_time

    def set_scan_time(self, scan_time: float) -> None:
        self._scan_time = float(scan_time)

    # Geometry

    def _along_track(self) -> np.ndarray:
        return self._rotation[:, 1]

    def _altitude(self) -> float:
        altitude = np.linalg.norm(self._center) - (self.mean_earth_radius
                                                   + self.mean_surface_elevation)
        return altitude if altitude > 0 else 1.0

    def _cam2world(self) -> np.ndarray:
        return self._rotation @ R1(self.forward_tilt)

    def _col_to_alpha(self, col: float) -> float:
        alpha = (col - self._optical_center[0]) * self.pixel_size / self._focal_length
        return alpha if self.scan_left_to_right else -alpha

    def _time_offset(self, alpha: float) -> float:
        return self._scan_time * alpha / self.scan_angle

    def camera_center(self, pix=None) -> np.ndarray:
        if pix is None:
            return self._center.copy()
        dt = self._time_offset(self._col_to_alpha(pix[0]))
        return self._center + self._speed * dt * self._along_track()

    def pixel_to_vector(self, pix) -> np.ndarray:
        alpha = self._col_to_alpha(pix[0])
        dt = self._time_offset(alpha)
        f = self._focal_length
        h = ((pix[1] - self._optical_center[1]) * self.pixel_size
             + self._motion_compensation * self._speed * dt * f / self._altitude())
        ray = self._cam2world() @ np.array([np.sin(alpha), h / f, np.cos(alpha)])
        return ray / np.linalg.norm(ray)

    def point_to_pixel(self, xyz, max_iterations: int = 50, tolerance: float = 1e-12) -> np.ndarray:
        """
        Project a point by iterating on the exposure time of its column.

        Raises:
            ProjectionError: if the point is behind the lens or the iteration diverges
        """
        xyz = np.asarray(xyz, dtype=np.float64)
        cam2world = self._cam2world()
        along = self._along_track()
        f = self._focal_length

        dt = 0.0
        for _ in range(max_iterations):
            p = cam2world.T @ (xyz - (self._center + self._speed * dt * along))
            if p[2] <= 0:
                raise ProjectionError(f"Point behind optical bar camera: Z={p[2]}")
            alpha = np.arctan2(p[0], p[2])
            h = f * p[1] / np.hypot(p[0], p[2])
            new_dt = self._time_offset(alpha)
            converged = abs(new_dt - dt) < tolerance
            dt = new_dt
            if converged:
                break
        else:
            raise ProjectionError("Optical bar projection did not converge")

        h -= self._motion_compensation * self._speed * dt * f / self._altitude()
        if not self.scan_left_to_right:
            alpha = -alpha
        col = alpha * f / self.pixel_size + self._optical_center[0]
        row = h / self.pixel_size + self._optical_center[1]
        return np.array([col, row])

    def apply_transform(self, rotation, translation=None, scale: float = 1.0) -> None:
        """Apply a similarity transform, or a 4x4 matrix if translation is None."""
        if translation is None:
            rotation, translation, scale = decompose_similarity(rotation)
        rotation = np.asarray(rotation, dtype=np.float64)
        self._center = scale * rotation @ self._center + np.asarray(translation)
        self._rotation = rotation @ self._rotation

    # I/O

    def write(self, path) -> None:
        lines = [
            TSAI_VERSION,
            'OPTICAL_BAR',
            f"image_size = {self.image_size[0]} {self.image_size[1]}",
            f"image_center = {_fmt(self._optical_center)}",
            f"pitch = {self.pixel_size:.17g}",
            f"f = {self._focal_length:.17g}",
            f"scan_angle = {self.scan_angle:.17g}",
            f"scan_time = {self._scan_time:.17g}",
            f"forward_tilt = {self.forward_tilt:.17g}",
            f"iC = {_fmt(self._center)}",
            f"iR = {_fmt(self._rotation.ravel())}",
            f"speed = {self._speed:.17g}",
            f"mean_earth_radius = {self.mean_earth_radius:.17g}",
            f"mean_surface_elevation = {self.mean_surface_elevation:.17g}",
            f"motion_compensation_factor = {self._motion_compensation:.17g}",
            f"scan_dir = {'right' if self.scan_left_to_right else 'left'}",
        ]
        with open(path, 'w') as f:
            f.write('\n'.join(lines) + '\n')

    @classmethod
    def read(cls, path) -> "OpticalBarModel":
        bare, keyed = read_keyed_lines(path)
        if 'OPTICAL_BAR' not in bare:
            raise ConfigurationError(f"Not an optical bar camera file: {path}")

        def one(key):
            return _floats(keyed, key, 1, path)[0]

        scan_dir = keyed.get('scan_dir', ['right'])[0].lower()
        if scan_dir not in ('left', 'right'):
            raise ConfigurationError(f"Unknown scan_dir '{scan_dir}' in camera file {path}")

        return cls(
            image_size=tuple(int(v) for v in _floats(keyed, 'image_size', 2, path)),
            optical_center=_floats(keyed, 'image_center', 2, path),
            pixel_size=one('pitch'),
            focal_length=one('f'),
            scan_angle=one('scan_angle'),
            scan_time=one('scan_time'),
            forward_tilt=one('forward_tilt'),
            camera_center=_floats(keyed, 'iC', 3, path),
            rotation=_floats(keyed, 'iR', 9, path).reshape(3, 3),
            speed=one('speed'),
            mean_earth_radius=one('mean_earth_radius'),
            mean_surface_elevation=one('mean_surface_elevation'),
            motion_compensation=one('motion_compensation_factor'),
            scan_left_to_right=(scan_dir == 'right'),
        )

    def __repr__(self) -> str:
        return (f"OpticalBarModel(C={self._center.tolist()}, f={self._focal_length}, "
                f"c={self._optical_center.tolist()}, speed={self._speed}, "
                f"mc={self._motion_compensation}, scan_time={self._scan_time})")
