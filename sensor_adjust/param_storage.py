"""
Storage for the optimization variables of a bundle adjustment run.

For each camera there is a pose block of NUM_CAMERA_PARAMS values and,
for intrinsics, an optical center pair, a focal length, and a distortion
vector whose size depends on the lens model of that camera. Intrinsics
are stored as multipliers of the values of the original camera, so they
start at IDENTITY_MULTIPLIER and a camera whose multipliers are all still
at identity has unchanged intrinsics.

Cameras that share intrinsics read and write the same blocks. All
accessors return numpy views into the backing arrays, which is what the
solver optimizes in place.
"""

from typing import List, Optional
import logging

import numpy as np

from .adjustment import NUM_CAMERA_PARAMS
from .errors import ConfigurationError, InvariantError
from .intrinsics_options import IntrinsicOptions

logger = logging.getLogger(__name__)

NUM_XYZ_PARAMS = 3
NUM_CENTER_PARAMS = 2
NUM_FOCUS_PARAMS = 1
IDENTITY_MULTIPLIER = 1.0


class ParamStorage:
    """
    Camera, intrinsics and point variables, sized once per run.

    Args:
        num_points: Number of triangulated points
        num_cameras: Number of cameras
        num_dist_params: Number of distortion multipliers for each camera
        intrinsics_opts: Sharing policy. If None, nothing is shared.
    """

    def __init__(self, num_points: int, num_cameras: int,
                 num_dist_params: Optional[List[int]] = None,
                 intrinsics_opts: Optional[IntrinsicOptions] = None):
        if num_dist_params is None:
            num_dist_params = [0] * num_cameras
        if len(num_dist_params) != num_cameras:
            raise ConfigurationError(
                f"Expecting {num_cameras} distortion sizes, got {len(num_dist_params)}")
        if intrinsics_opts is None:
            intrinsics_opts = IntrinsicOptions(center_shared=False, focus_shared=False,
                                               distortion_shared=False)
        if intrinsics_opts.share_intrinsics_per_sensor and \
                len(intrinsics_opts.cam2sensor) != num_cameras:
            raise ConfigurationError(
                f"Expecting a sensor for each of the {num_cameras} cameras, got "
                f"{len(intrinsics_opts.cam2sensor)}")

        self._num_points = num_points
        self._num_cameras = num_cameras
        self.intrinsics_opts = intrinsics_opts

        self._points = np.zeros((num_points, NUM_XYZ_PARAMS))
        self._outliers = np.zeros(num_points, dtype=bool)
        self._cameras = np.zeros((num_cameras, NUM_CAMERA_PARAMS))
        self._centers = np.full((num_cameras, NUM_CENTER_PARAMS), IDENTITY_MULTIPLIER)
        self._focus = np.full((num_cameras, NUM_FOCUS_PARAMS), IDENTITY_MULTIPLIER)
        self._distortion = [np.full(n, IDENTITY_MULTIPLIER) for n in num_dist_params]

        # Which camera's block each camera reads
        self._center_owner = [self._owner(i, intrinsics_opts.center_shared)
                              for i in range(num_cameras)]
        self._focus_owner = [self._owner(i, intrinsics_opts.focus_shared)
                             for i in range(num_cameras)]
        self._distortion_owner = [self._owner(i, intrinsics_opts.distortion_shared)
                                  for i in range(num_cameras)]

        for cam, owner in enumerate(self._distortion_owner):
            if num_dist_params[cam] != num_dist_params[owner]:
                raise ConfigurationError(
                    f"Camera {cam} shares distortion with camera {owner} but has "
                    f"{num_dist_params[cam]} distortion parameters instead of "
                    f"{num_dist_params[owner]}")

    def _owner(self, cam: int, shared: bool) -> int:
        opts = self.intrinsics_opts
        if opts.share_intrinsics_per_sensor:
            # Intrinsics are always shared within a sensor and never across
            sensor = opts.cam2sensor[cam]
            return opts.cam2sensor.index(sensor)
        if shared:
            return 0
        return cam

    def num_cameras(self) -> int:
        return self._num_cameras

    def num_points(self) -> int:
        return self._num_points

    def num_distortion_params(self, cam: int) -> int:
        self._check_camera(cam)
        return len(self._distortion[self._distortion_owner[cam]])

    def _check_camera(self, cam: int) -> None:
        if cam < 0 or cam >= self._num_cameras:
            raise InvariantError(f"Camera index {cam} out of range [0, {self._num_cameras})")

    def _check_point(self, pt: int) -> None:
        if pt < 0 or pt >= self._num_points:
            raise InvariantError(f"Point index {pt} out of range [0, {self._num_points})")

    def init_cams_as_zero(self) -> None:
        """Identity adjustment for every camera and identity intrinsics multipliers."""
        self._cameras[:] = 0.0
        self._centers[:] = IDENTITY_MULTIPLIER
        self._focus[:] = IDENTITY_MULTIPLIER
        for dist in self._distortion:
            dist[:] = IDENTITY_MULTIPLIER

    def get_camera_ptr(self, cam: int) -> np.ndarray:
        self._check_camera(cam)
        return self._cameras[cam]

    def get_intrinsic_center_ptr(self, cam: int) -> np.ndarray:
        self._check_camera(cam)
        return self._centers[self._center_owner[cam]]

    def get_intrinsic_focus_ptr(self, cam: int) -> np.ndarray:
        self._check_camera(cam)
        return self._focus[self._focus_owner[cam]]

    def get_intrinsic_distortion_ptr(self, cam: int) -> np.ndarray:
        self._check_camera(cam)
        return self._distortion[self._distortion_owner[cam]]

    def get_point_ptr(self, pt: int) -> np.ndarray:
        self._check_point(pt)
        return self._points[pt]

    def get_outlier(self, pt: int) -> bool:
        self._check_point(pt)
        return bool(self._outliers[pt])

    def set_outlier(self, pt: int, flag: bool) -> None:
        self._check_point(pt)
        self._outliers[pt] = flag

    def num_outliers(self) -> int:
        return int(self._outliers.sum())

    def intrinsics_changed(self, cam: int) -> bool:
        """Whether any intrinsics multiplier of this camera moved away from identity."""
        blocks = (self.get_intrinsic_center_ptr(cam), self.get_intrinsic_focus_ptr(cam),
                  self.get_intrinsic_distortion_ptr(cam))
        return any(np.any(b != IDENTITY_MULTIPLIER) for b in blocks)

    def copy(self) -> "ParamStorage":
        """Deep copy with the same sharing layout."""
        out = ParamStorage.__new__(ParamStorage)
        out.__dict__.update(self.__dict__)
        out._points = self._points.copy()
        out._outliers = self._outliers.copy()
        out._cameras = self._cameras.copy()
        out._centers = self._centers.copy()
        out._focus = self._focus.copy()
        out._distortion = [d.copy() for d in self._distortion]
        return out
