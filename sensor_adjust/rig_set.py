"""
Rig set: sensors grouped in rigs, each rig having a reference sensor.

For every sensor the rig set stores its intrinsics, the transform from
the reference sensor of its rig to it, a depth-to-image transform, and
the timestamp offset from the reference sensor.

Rig configuration files are line oriented. Each value is preceded by
its tag, '#' starts a comment, and commas count as spaces:

    ref_sensor_name: nav_cam
    sensor_name: nav_cam
    focal_length: 608.8
    optical_center: 632.5 505.3
    distortion_coeffs: 0.998
    distortion_type: fov
    image_size: 1280 960
    distorted_crop_size: 1280 960
    undistorted_image_size: 1500 1200
    ref_to_sensor_transform: 1 0 0 0 1 0 0 0 1 0 0 0
    depth_to_image_transform: 1 0 0 0 1 0 0 0 1 0 0 0
    ref_to_sensor_timestamp_offset: 0
    sensor_name: haz_cam
    ...
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np
from scipy.optimize import minimize_scalar

from .csm import CsmFrameModel, CsmLinescanModel, NUM_QUAT_PARAMS, NUM_XYZ_PARAMS, to_csm_pixel
from .distortion import DistortionType, check_distortion_count
from .errors import ConfigurationError, InvariantError
from .rotations import (affine_to_vec, is_rotation_matrix, matrix_to_quaternion,
                        normalize_quaternion, quaternion_to_matrix, vec_to_affine)

logger = logging.getLogger(__name__)

NUM_RIGID_PARAMS = 7  # translation, then quaternion (x, y, z, w)


@dataclass
class CameraParameters:
    """Intrinsics of one rig sensor."""
    image_size: Tuple[int, int]
    focal_length: float
    optical_center: np.ndarray
    distortion: np.ndarray
    distortion_type: DistortionType = DistortionType.NONE
    distorted_crop_size: Optional[Tuple[int, int]] = None
    undistorted_size: Optional[Tuple[int, int]] = None


@dataclass
class RigSet:
    """
    Attributes:
        cam_set: For each rig, its sensor names, the reference sensor first
        cam_names: All sensor names, in file order
        ref_to_cam_trans: 4x4 transform from the rig reference sensor to each sensor
        depth_to_image: 4x4 depth-to-image transform of each sensor
        ref_to_cam_timestamp_offsets: Timestamp offset of each sensor
        cam_params: Intrinsics of each sensor
    """
    cam_set: List[List[str]] = field(default_factory=list)
    cam_names: List[str] = field(default_factory=list)
    ref_to_cam_trans: List[np.ndarray] = field(default_factory=list)
    depth_to_image: List[np.ndarray] = field(default_factory=list)
    ref_to_cam_timestamp_offsets: List[float] = field(default_factory=list)
    cam_params: List[CameraParameters] = field(default_factory=list)

    def is_ref_sensor(self, cam_name: str) -> bool:
        return any(rig[0] == cam_name for rig in self.cam_set)

    def rig_id(self, cam_id: int) -> int:
        """Index of the rig containing the sensor with the given index in cam_names."""
        if cam_id < 0 or cam_id >= len(self.cam_names):
            raise InvariantError(f"Out of bounds sensor id: {cam_id}")
        cam_name = self.cam_names[cam_id]
        for rig_it, rig in enumerate(self.cam_set):
            if cam_name in rig:
                return rig_it
        raise InvariantError(f"Could not look up in the rig the sensor: {cam_name}")

    def ref_sensor(self, cam_id: int) -> str:
        """Name of the reference sensor of the rig having the given sensor."""
        return self.cam_set[self.rig_id(cam_id)][0]

    def sensor_index(self, sensor_name: str) -> int:
        try:
            return self.cam_names.index(sensor_name)
        except ValueError:
            raise InvariantError(
                f"Could not find sensor in rig. Offending sensor: {sensor_name}") from None

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: on empty rigs, duplicate names, count mismatches,
                or a non-zero timestamp offset for a reference sensor
        """
        if not self.cam_set:
            raise ConfigurationError("Found an empty set of rigs")

        num_cams = 0
        all_cams = set()
        for rig in self.cam_set:
            if not rig:
                raise ConfigurationError("Found a rig with no sensors")
            num_cams += len(rig)
            all_cams.update(rig)

        if num_cams != len(all_cams) or num_cams != len(self.cam_names):
            raise ConfigurationError("Found a duplicate sensor name in the rig set")
        if num_cams != len(self.ref_to_cam_trans):
            raise ConfigurationError(
                "Number of sensors is not equal to number of ref-to-sensor transforms")
        if num_cams != len(self.depth_to_image):
            raise ConfigurationError(
                "Number of sensors is not equal to number of depth-to-image transforms")
        if num_cams != len(self.ref_to_cam_timestamp_offsets):
            raise ConfigurationError(
                "Number of sensors is not equal to number of ref-to-sensor timestamp offsets")
        if num_cams != len(self.cam_params):
            raise ConfigurationError(
                "Number of sensors is not equal to number of camera models")

        for name, offset in zip(self.cam_names, self.ref_to_cam_timestamp_offsets):
            if self.is_ref_sensor(name) and offset != 0:
                raise ConfigurationError(
                    f"The timestamp offset of reference sensor {name} must be 0")

    def sub_rig(self, rig_id: int) -> "RigSet":
        """A rig set with only the given rig."""
        if rig_id < 0 or rig_id >= len(self.cam_set):
            raise InvariantError(f"Rig id {rig_id} out of range in rig set")

        sub = RigSet(cam_set=[list(self.cam_set[rig_id])])
        for sensor_name in self.cam_set[rig_id]:
            i = self.sensor_index(sensor_name)
            sub.cam_names.append(self.cam_names[i])
            sub.ref_to_cam_trans.append(self.ref_to_cam_trans[i].copy())
            sub.depth_to_image.append(self.depth_to_image[i].copy())
            sub.ref_to_cam_timestamp_offsets.append(self.ref_to_cam_timestamp_offsets[i])
            sub.cam_params.append(self.cam_params[i])
        sub.validate()
        return sub


class _TaggedReader:
    """Reads 'tag: values' lines in order, skipping comments and blank lines."""

    def __init__(self, path):
        self.path = path
        with open(path, 'r') as f:
            self._lines = f.readlines()
        self._pos = 0

    def _next(self) -> Optional[List[str]]:
        while self._pos < len(self._lines):
            line = self._lines[self._pos].split('#', 1)[0].replace(',', ' ')
            self._pos += 1
            tokens = line.split()
            if tokens:
                return tokens
        return None

    def peek_tag(self) -> Optional[str]:
        pos = self._pos
        tokens = self._next()
        self._pos = pos
        return tokens[0] if tokens else None

    def read_strings(self, tag: str, count: int = -1) -> List[str]:
        tokens = self._next()
        if tokens is None or tokens[0] != tag:
            raise ConfigurationError(f"Could not read value for: {tag} in {self.path}")
        vals = tokens[1:]
        if count >= 0 and len(vals) != count:
            raise ConfigurationError(
                f"Read an incorrect number of values for: {tag} in {self.path}")
        return vals

    def read_floats(self, tag: str, count: int = -1) -> np.ndarray:
        vals = self.read_strings(tag, count)
        try:
            return np.array([float(v) for v in vals])
        except ValueError:
            raise ConfigurationError(f"Non-numeric value for: {tag} in {self.path}") from None


def read_rig_config(rig_config, have_rig_transforms: bool) -> RigSet:
    """
    Read a rig configuration file.

    Args:
        rig_config: Path to the file
        have_rig_transforms: If the transforms between sensors are meaningful.
            Then no transform may be all zero and the transform from each
            reference sensor to itself must be the identity.

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigurationError: if the file is malformed or inconsistent
    """
    path = Path(rig_config)
    if not path.exists():
        raise FileNotFoundError(f"Rig configuration not found: {path}")
    logger.info(f"Reading: {path}")

    R = RigSet()
    reader = _TaggedReader(path)

    while True:
        if reader.peek_tag() == 'ref_sensor_name:':
            reader.read_strings('ref_sensor_name:', 1)
            R.cam_set.append([])

        if reader.peek_tag() != 'sensor_name:':
            break
        sensor_name = reader.read_strings('sensor_name:', 1)[0]
        if not R.cam_set:
            raise ConfigurationError(
                f"Sensor {sensor_name} appears before any ref_sensor_name: in {path}")
        R.cam_set[-1].append(sensor_name)
        R.cam_names.append(sensor_name)

        focal_length = reader.read_floats('focal_length:', 1)[0]
        optical_center = reader.read_floats('optical_center:', 2)
        distortion = reader.read_floats('distortion_coeffs:', -1)
        dist_name = reader.read_strings('distortion_type:', 1)[0]
        dist_type = check_distortion_count(len(distortion), DistortionType.parse(dist_name),
                                           tag=f"sensor {sensor_name}")

        image_size = tuple(int(v) for v in reader.read_floats('image_size:', 2))
        crop_size = tuple(int(v) for v in reader.read_floats('distorted_crop_size:', 2))
        undist_size = tuple(int(v) for v in reader.read_floats('undistorted_image_size:', 2))
        R.cam_params.append(CameraParameters(
            image_size=image_size, focal_length=focal_length,
            optical_center=optical_center, distortion=distortion,
            distortion_type=dist_type, distorted_crop_size=crop_size,
            undistorted_size=undist_size))

        trans = vec_to_affine(reader.read_floats('ref_to_sensor_transform:', 12))
        if have_rig_transforms and not np.any(trans[:3, :]):
            raise ConfigurationError(
                f"Failed to read valid transforms between the sensors on the rig in {path}")
        if have_rig_transforms and not is_rotation_matrix(trans[:3, :3]):
            raise ConfigurationError(
                f"The transform to sensor {sensor_name} in {path} is not a rotation and translation")
        R.ref_to_cam_trans.append(trans)

        R.depth_to_image.append(vec_to_affine(reader.read_floats('depth_to_image_transform:', 12)))
        R.ref_to_cam_timestamp_offsets.append(
            float(reader.read_floats('ref_to_sensor_timestamp_offset:', 1)[0]))

    leftover = reader.peek_tag()
    if leftover is not None:
        raise ConfigurationError(f"Unexpected entry '{leftover}' in rig configuration {path}")

    if have_rig_transforms:
        for name, trans in zip(R.cam_names, R.ref_to_cam_trans):
            if R.is_ref_sensor(name) and not np.array_equal(trans, np.eye(4)):
                raise ConfigurationError(
                    f"The transform from the reference sensor {name} to itself must be "
                    "the identity")

    R.validate()
    return R


def _fmt(vals) -> str:
    return ' '.join(f"{v:.17g}" for v in np.atleast_1d(vals))


def write_rig_config(rig_config, R: RigSet) -> None:
    """Write a rig configuration that read_rig_config() can read back."""
    R.validate()
    path = Path(rig_config)
    logger.info(f"Writing: {path}")

    lines = []
    for rig in R.cam_set:
        lines.append(f"ref_sensor_name: {rig[0]}")
        for sensor_name in rig:
            i = R.sensor_index(sensor_name)
            params = R.cam_params[i]
            lines.append('')
            lines.append(f"sensor_name: {sensor_name}")
            lines.append(f"focal_length: {params.focal_length:.17g}")
            lines.append(f"optical_center: {_fmt(params.optical_center)}")
            lines.append(f"distortion_coeffs: {_fmt(params.distortion)}".rstrip())
            lines.append(f"distortion_type: {params.distortion_type.value}")
            lines.append(f"image_size: {params.image_size[0]} {params.image_size[1]}")
            crop = params.distorted_crop_size or params.image_size
            lines.append(f"distorted_crop_size: {crop[0]} {crop[1]}")
            undist = params.undistorted_size or params.image_size
            lines.append(f"undistorted_image_size: {undist[0]} {undist[1]}")
            lines.append(f"ref_to_sensor_transform: {_fmt(affine_to_vec(R.ref_to_cam_trans[i]))}")
            lines.append(f"depth_to_image_transform: {_fmt(affine_to_vec(R.depth_to_image[i]))}")
            lines.append(f"ref_to_sensor_timestamp_offset: "
                         f"{R.ref_to_cam_timestamp_offsets[i]:.17g}")
        lines.append('')

    with open(path, 'w') as f:
        f.write('\n'.join(lines) + '\n')


@dataclass
class RigCamInfo:
    """Where a camera sits in a rig, and the time span of its poses."""
    sensor_id: int = -1
    rig_id: int = -1
    cam_index: int = -1
    ref_cam_index: int = -1
    beg_pose_time: float = 0.0
    end_pose_time: float = 0.0


def affine_to_rigid_params(M) -> np.ndarray:
    """4x4 rigid transform to NUM_RIGID_PARAMS values: translation, then quaternion."""
    M = np.asarray(M, dtype=np.float64)
    return np.concatenate([M[:3, 3], matrix_to_quaternion(M[:3, :3])])


def rigid_params_to_affine(params) -> np.ndarray:
    """Inverse of affine_to_rigid_params(). The quaternion need not be normalized."""
    params = np.asarray(params, dtype=np.float64)
    M = np.eye(4)
    M[:3, :3] = quaternion_to_matrix(normalize_quaternion(params[NUM_XYZ_PARAMS:NUM_RIGID_PARAMS]))
    M[:3, 3] = params[:NUM_XYZ_PARAMS]
    return M


def linescan_to_curr_sensor_trans(ls_cam: CsmLinescanModel, rig_cam_info: RigCamInfo,
                                  ref_to_curr_trans) -> np.ndarray:
    """
    Camera-to-world pose of a rig sensor whose reference sensor is a linescan camera.

    The reference pose is interpolated at the time of the current sensor.

    Args:
        ls_cam: Reference linescan camera
        rig_cam_info: Rig placement of the current sensor
        ref_to_curr_trans: NUM_RIGID_PARAMS values of the ref-to-current transform

    Returns:
        Position then quaternion (x, y, z, w), NUM_XYZ_PARAMS + NUM_QUAT_PARAMS values
    """
    position, rotation = ls_cam.pose_at_time(rig_cam_info.beg_pose_time)
    ref_cam2world = np.eye(4)
    ref_cam2world[:3, :3] = rotation
    ref_cam2world[:3, 3] = position

    cam2world = ref_cam2world @ np.linalg.inv(rigid_params_to_affine(ref_to_curr_trans))
    out = np.zeros(NUM_XYZ_PARAMS + NUM_QUAT_PARAMS)
    out[:NUM_XYZ_PARAMS] = cam2world[:3, 3]
    out[NUM_XYZ_PARAMS:] = matrix_to_quaternion(cam2world[:3, :3])
    return out


def rig_frame_time_bounds(ls_cam: CsmLinescanModel, rig_cam_info: RigCamInfo,
                          line_extra: float) -> Tuple[float, float]:
    """
    Time range around a rig frame sensor's acquisition that its residual may touch.

    The range is the frame time plus or minus the time the linescan reference
    takes to acquire line_extra lines.
    """
    frame_time = rig_cam_info.beg_pose_time
    if frame_time != rig_cam_info.end_pose_time:
        raise ConfigurationError("For a frame sensor beg and end pose time must be same")
    t1 = ls_cam.get_image_time(to_csm_pixel((0.0, 0.0)))
    t2 = ls_cam.get_image_time(to_csm_pixel((0.0, line_extra)))
    delta = abs(t2 - t1)
    return frame_time - delta, frame_time + delta


def sensor_name_in_file(R: RigSet, camera_file) -> Optional[str]:
    """
    The rig sensor whose name appears in the file name, the longest one if
    several do, or None.
    """
    name = Path(camera_file).name
    matches = [sensor for sensor in R.cam_names if sensor in name]
    if not matches:
        return None
    return max(matches, key=len)


def rig_frame_time(ls_cam: CsmLinescanModel, frame_position, frame_quaternion,
                   ref_to_curr) -> float:
    """
    Acquisition time of a frame sensor on a rig with a linescan reference.

    This is the time at which the reference camera is closest to where the
    rig transform puts it, given the frame camera pose.
    """
    cam2world = np.eye(4)
    cam2world[:3, :3] = quaternion_to_matrix(frame_quaternion)
    cam2world[:3, 3] = frame_position
    ref_center = (cam2world @ np.asarray(ref_to_curr, dtype=np.float64))[:3, 3]

    t_beg = ls_cam.t0_ephem
    t_end = ls_cam.t0_ephem + (ls_cam.num_positions - 1) * ls_cam.dt_ephem
    if t_end < t_beg:
        t_beg, t_end = t_end, t_beg

    def dist2(t):
        return float(np.sum((ls_cam.pose_at_time(t)[0] - ref_center) ** 2))

    result = minimize_scalar(dist2, bounds=(t_beg, t_end), method='bounded',
                             options={'xatol': 1e-9 * max(abs(ls_cam.dt_ephem), 1.0)})
    return float(result.x)


def rig_frame_cam_infos(R: RigSet, camera_files: List[str], cameras) -> Dict[int, RigCamInfo]:
    """
    Place the frame cameras of a rig relative to their linescan reference camera.

    The sensor of each camera is found from its file name. A frame camera
    gets an entry when its rig reference sensor is a linescan camera in the
    same run. Its time is found with rig_frame_time().

    Returns:
        Rig placement of each such camera, by camera index

    Raises:
        ConfigurationError: if more than one camera is the reference sensor of a rig
    """
    names = [sensor_name_in_file(R, f) for f in camera_files]
    infos = {}
    for icam, (name, cam) in enumerate(zip(names, cameras)):
        if name is None or R.is_ref_sensor(name) or not isinstance(cam, CsmFrameModel):
            continue
        sensor_id = R.sensor_index(name)
        ref_name = R.ref_sensor(sensor_id)
        refs = [j for j, other in enumerate(names)
                if other == ref_name and isinstance(cameras[j], CsmLinescanModel)]
        if not refs:
            logger.warning(f"No linescan camera for reference sensor {ref_name} of "
                           f"{camera_files[icam]}, solving its pose on its own")
            continue
        if len(refs) > 1:
            raise ConfigurationError(f"Found {len(refs)} cameras for reference sensor {ref_name}")

        ref = refs[0]
        frame_time = rig_frame_time(cameras[ref], cam.position, cam.quaternion,
                                    R.ref_to_cam_trans[sensor_id])
        logger.info(f"Sensor {name} of {camera_files[icam]} is at time {frame_time:.9f} "
                    f"on reference {camera_files[ref]}")
        infos[icam] = RigCamInfo(sensor_id=sensor_id, rig_id=R.rig_id(sensor_id),
                                 cam_index=icam, ref_cam_index=ref,
                                 beg_pose_time=frame_time, end_pose_time=frame_time)
    return infos
