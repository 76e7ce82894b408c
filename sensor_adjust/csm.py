"""
CSM-style frame and linescan sensor models.

These follow the Community Sensor Model conventions:
    - Image coordinates are (line, sample), with the center of the first
      pixel at (0.5, 0.5). Use to_csm_pixel() / from_csm_pixel() to convert
      from the (x, y) pixels used elsewhere in this package.
    - Quaternions are (x, y, z, w) and rotate sensor coordinates to ECEF.
    - The model state is a JSON document.

The linescan model stores a time-indexed table of positions (epoch t0Ephem,
spacing dtEphem) and of quaternions (t0Quat, dtQuat). The pose at the time
of a given image line is found with Lagrange interpolation of order 8 within
these tables. For jitter solving, the rows of these tables are the
optimization variables themselves.
"""

from pathlib import Path
from typing import Tuple
import json
import logging

import numpy as np

from .distortion import DistortionType, LensDistortion, NoDistortion, make_distortion
from .errors import ConfigurationError, ProjectionError
from .rotations import (decompose_similarity, matrix_to_quaternion, normalize_quaternion,
                        quaternion_to_matrix)

logger = logging.getLogger(__name__)

NUM_XYZ_PARAMS = 3
NUM_QUAT_PARAMS = 4

# Do not use anything lower than this, as the linescan model will return junk
DEFAULT_CSM_DESIRED_PRECISION = 1e-8

LAGRANGE_ORDER = 8

CSM_PLUGIN_NAME = 'UsgsAstroPluginCSM'
FRAME_MODEL_NAME = 'USGS_ASTRO_FRAME_SENSOR_MODEL'
LINESCAN_MODEL_NAME = 'USGS_ASTRO_LINE_SCANNER_SENSOR_MODEL'


def to_csm_pixel(pix) -> Tuple[float, float]:
    """(x, y) pixel to CSM (line, sample)."""
    return pix[1] + 0.5, pix[0] + 0.5


def from_csm_pixel(image_pt) -> np.ndarray:
    """CSM (line, sample) to (x, y) pixel."""
    return np.array([image_pt[1] - 0.5, image_pt[0] - 0.5])


def lagrange_interp(values: np.ndarray, t0: float, dt: float, time: float,
                    order: int = LAGRANGE_ORDER) -> np.ndarray:
    """
    Interpolate uniformly sampled values at the given time.

    Uses the samples with indices [index - order/2 + 1, index + order/2],
    index being the sample at or before the query time, shifted to stay
    within the table.

    Raises:
        ProjectionError: if the time is outside the sampled span
    """
    num = len(values)
    if num == 0:
        raise ProjectionError("Lagrange interpolation: no samples")
    t_end = t0 + (num - 1) * dt
    slack = 1e-10 * max(abs(dt), 1.0)
    if time < t0 - slack or time > t_end + slack:
        raise ProjectionError(
            f"Lagrange interpolation: time {time} out of range [{t0}, {t_end}]")

    order = min(order, num)
    index = int(np.floor((time - t0) / dt))
    start = index - (order // 2 - 1)
    start = min(max(start, 0), num - order)

    times = t0 + dt * np.arange(start, start + order)
    weights = np.ones(order)
    for j in range(order):
        for m in range(order):
            if m != j:
                weights[j] *= (time - times[m]) / (times[j] - times[m])
    return weights @ values[start:start + order]


def _read_state(path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"CSM state file not found: {path}")
    with open(path, 'r') as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed CSM state in {path}: {e}") from None


class _CsmIntrinsics:
    """Intrinsics shared by the frame and linescan models."""

    def __init__(self, image_size, focal_length, optical_center, lens):
        self.image_size = tuple(int(v) for v in image_size)   # (samples, lines)
        self._focal_length = float(focal_length)
        self._optical_center = np.array(optical_center, dtype=np.float64)
        self._lens = lens.copy() if lens is not None else NoDistortion()

    def focal_length(self) -> float:
        return self._focal_length

    def set_focal_length(self, f: float) -> None:
        self._focal_length = float(f)

    def optical_center(self) -> np.ndarray:
        return self._optical_center.copy()

    def set_optical_center(self, center) -> None:
        self._optical_center = np.array(center, dtype=np.float64)

    def distortion(self) -> np.ndarray:
        return self._lens.distortion_parameters()

    def set_distortion(self, params) -> None:
        self._lens.set_distortion_parameters(params)

    def lens_distortion(self) -> LensDistortion:
        return self._lens

    def _intrinsics_state(self) -> dict:
        return {
            'm_nSamples': self.image_size[0],
            'm_nLines': self.image_size[1],
            'm_focalLength': self._focal_length,
            'm_opticalCenter': self._optical_center.tolist(),
            'm_distortionType': self._lens.name,
            'm_opticalDistCoeffs': self._lens.distortion_parameters().tolist(),
        }

    @staticmethod
    def _intrinsics_kwargs(state: dict) -> dict:
        return dict(
            image_size=(state['m_nSamples'], state['m_nLines']),
            focal_length=state['m_focalLength'],
            optical_center=state['m_opticalCenter'],
            lens=make_distortion(DistortionType.parse(state['m_distortionType']),
                                 state['m_opticalDistCoeffs']),
        )

    @property
    def plugin_name(self) -> str:
        return CSM_PLUGIN_NAME

    def model_state(self) -> str:
        return json.dumps(self.to_state())

    def save_state(self, path) -> None:
        logger.info(f"Writing: {path}")
        with open(path, 'w') as f:
            json.dump(self.to_state(), f, indent=2)


class CsmFrameModel(_CsmIntrinsics):
    """Frame sensor: one position and one quaternion for the whole image."""

    model_name = FRAME_MODEL_NAME

    def __init__(self, image_size=(0, 0), focal_length=1.0, optical_center=(0.0, 0.0),
                 lens=None, position=(0.0, 0.0, 0.0), quaternion=(0.0, 0.0, 0.0, 1.0)):
        super().__init__(image_size, focal_length, optical_center, lens)
        # position then quaternion, as in the CSM parameter vector
        self._params = np.concatenate([np.asarray(position, dtype=np.float64),
                                       np.asarray(quaternion, dtype=np.float64)])

    def copy(self) -> "CsmFrameModel":
        return CsmFrameModel(self.image_size, self._focal_length, self._optical_center,
                             self._lens, self._params[:3], self._params[3:])

    def get_parameter_value(self, index: int) -> float:
        return float(self._params[index])

    def set_parameter_value(self, index: int, value: float) -> None:
        self._params[index] = value

    @property
    def position(self) -> np.ndarray:
        return self._params[:NUM_XYZ_PARAMS].copy()

    @property
    def quaternion(self) -> np.ndarray:
        return self._params[NUM_XYZ_PARAMS:].copy()

    def camera_center(self, pix=None) -> np.ndarray:
        return self.position

    def ground_to_image(self, xyz, desired_precision: float = DEFAULT_CSM_DESIRED_PRECISION):
        """Project an ECEF point. Returns CSM (line, sample)."""
        R = quaternion_to_matrix(self._params[NUM_XYZ_PARAMS:])
        p = R.T @ (np.asarray(xyz, dtype=np.float64) - self._params[:NUM_XYZ_PARAMS])
        if p[2] <= 0:
            raise ProjectionError(f"Point behind frame camera: Z={p[2]}")
        xd, yd = self._lens.distort(p[0] / p[2], p[1] / p[2])
        sample = self._focal_length * xd + self._optical_center[0]
        line = self._focal_length * yd + self._optical_center[1]
        return line + 0.5, sample + 0.5

    def point_to_pixel(self, xyz) -> np.ndarray:
        return from_csm_pixel(self.ground_to_image(xyz))

    def pixel_to_vector(self, pix) -> np.ndarray:
        xn, yn = self._lens.undistort((pix[0] - self._optical_center[0]) / self._focal_length,
                                      (pix[1] - self._optical_center[1]) / self._focal_length)
        ray = quaternion_to_matrix(self._params[NUM_XYZ_PARAMS:]) @ np.array([xn, yn, 1.0])
        return ray / np.linalg.norm(ray)

    def apply_transform(self, M) -> None:
        """Apply a rigid 4x4 transform in place. Scaled transforms are rejected."""
        R, T, scale = decompose_similarity(M)
        if abs(scale - 1.0) > 1e-6:
            raise ConfigurationError("CSM camera models do not support a transform with a scale")
        self._params[:3] = R @ self._params[:3] + T
        self._params[3:] = matrix_to_quaternion(R @ quaternion_to_matrix(self._params[3:]))

    def to_state(self) -> dict:
        state = {'m_modelName': self.model_name}
        state.update(self._intrinsics_state())
        state['m_currentParameterValue'] = self._params.tolist()
        return state

    @classmethod
    def from_state(cls, state: dict) -> "CsmFrameModel":
        params = state['m_currentParameterValue']
        return cls(position=params[:3], quaternion=params[3:7],
                   **cls._intrinsics_kwargs(state))

    @classmethod
    def load_state(cls, path) -> "CsmFrameModel":
        state = _read_state(path)
        if state.get('m_modelName') != FRAME_MODEL_NAME:
            raise ConfigurationError(f"Not a CSM frame model state: {path}")
        return cls.from_state(state)


class CsmLinescanModel(_CsmIntrinsics):
    """
    Linescan sensor: each image line has its own time and pose.

    The detector lies along the focal plane x axis, offset along track by
    the y component of the optical center.
    """

    model_name = LINESCAN_MODEL_NAME

    def __init__(self, image_size=(0, 0), focal_length=1.0, optical_center=(0.0, 0.0),
                 lens=None, t0_line=0.0, dt_line=1.0,
                 positions=None, t0_ephem=0.0, dt_ephem=1.0,
                 quaternions=None, t0_quat=0.0, dt_quat=1.0):
        super().__init__(image_size, focal_length, optical_center, lens)
        self.t0_line = float(t0_line)
        self.dt_line = float(dt_line)
        self.positions = np.array(positions if positions is not None else np.zeros((0, 3)),
                                  dtype=np.float64).reshape(-1, NUM_XYZ_PARAMS)
        self.t0_ephem = float(t0_ephem)
        self.dt_ephem = float(dt_ephem)
        self.quaternions = np.array(quaternions if quaternions is not None else np.zeros((0, 4)),
                                    dtype=np.float64).reshape(-1, NUM_QUAT_PARAMS)
        self.t0_quat = float(t0_quat)
        self.dt_quat = float(dt_quat)

    def copy(self) -> "CsmLinescanModel":
        return CsmLinescanModel(
            self.image_size, self._focal_length, self._optical_center, self._lens,
            self.t0_line, self.dt_line,
            self.positions, self.t0_ephem, self.dt_ephem,
            self.quaternions, self.t0_quat, self.dt_quat)

    @property
    def num_positions(self) -> int:
        return len(self.positions)

    @property
    def num_quaternions(self) -> int:
        return len(self.quaternions)

    def get_image_time(self, image_pt) -> float:
        """Time at which the given CSM (line, sample) was acquired."""
        return self.t0_line + (image_pt[0] - 0.5) * self.dt_line

    def _line_time(self, y: float) -> float:
        return self.t0_line + y * self.dt_line

    def pose_at_time(self, time: float):
        """
        Interpolated camera position and camera-to-world rotation at the given time.

        Raises:
            ProjectionError: if the time is outside the sampled span
        """
        position = lagrange_interp(self.positions, self.t0_ephem, self.dt_ephem, time)
        q = lagrange_interp(self.quaternions, self.t0_quat, self.dt_quat, time)
        norm = np.linalg.norm(q)
        if norm == 0:
            raise ProjectionError(f"Degenerate interpolated quaternion at time {time}")
        return position, quaternion_to_matrix(q / norm)

    def camera_center(self, pix=None) -> np.ndarray:
        y = 0.0 if pix is None else pix[1]
        return self.pose_at_time(self._line_time(y))[0]

    def pixel_to_vector(self, pix) -> np.ndarray:
        _, R = self.pose_at_time(self._line_time(pix[1]))
        xn, yn = self._lens.undistort((pix[0] - self._optical_center[0]) / self._focal_length,
                                      -self._optical_center[1] / self._focal_length)
        ray = R @ np.array([xn, yn, 1.0])
        return ray / np.linalg.norm(ray)

    def _focal_plane(self, xyz: np.ndarray, y: float):
        """Distorted focal plane coordinates (pixels) of a point seen at line y."""
        position, R = self.pose_at_time(self._line_time(y))
        p = R.T @ (xyz - position)
        if p[2] <= 0:
            raise ProjectionError(f"Point behind linescan camera: Z={p[2]}")
        xd, yd = self._lens.distort(p[0] / p[2], p[1] / p[2])
        return self._focal_length * xd, self._focal_length * yd + self._optical_center[1]

    def ground_to_image(self, xyz, desired_precision: float = DEFAULT_CSM_DESIRED_PRECISION,
                        max_iterations: int = 30):
        """
        Project an ECEF point. Returns CSM (line, sample).

        Finds the line at which the point falls on the detector with a
        secant iteration on the along-track focal plane offset.

        Raises:
            ProjectionError: on divergence or if the line time leaves the sampled span
        """
        xyz = np.asarray(xyz, dtype=np.float64)
        y = 0.5 * self.image_size[1]
        _, offset = self._focal_plane(xyz, y)
        for _ in range(max_iterations):
            _, offset_next = self._focal_plane(xyz, y + 1.0)
            slope = offset_next - offset
            if slope == 0 or not np.isfinite(slope):
                raise ProjectionError("Linescan projection: degenerate along-track derivative")
            step = -offset / slope
            y += step
            x_fp, offset = self._focal_plane(xyz, y)
            if abs(step) < desired_precision or abs(offset) < desired_precision:
                break
        else:
            raise ProjectionError("Linescan projection did not converge")

        sample = x_fp + self._optical_center[0]
        return y + 0.5, sample + 0.5

    def point_to_pixel(self, xyz) -> np.ndarray:
        return from_csm_pixel(self.ground_to_image(xyz))

    def apply_transform(self, M) -> None:
        """Apply a rigid 4x4 transform in place to every sample. Scaled transforms are rejected."""
        R, T, scale = decompose_similarity(M)
        if abs(scale - 1.0) > 1e-6:
            raise ConfigurationError("CSM camera models do not support a transform with a scale")
        self.positions[:] = self.positions @ R.T + T
        for i in range(len(self.quaternions)):
            self.quaternions[i] = matrix_to_quaternion(R @ quaternion_to_matrix(self.quaternions[i]))

    def to_state(self) -> dict:
        state = {'m_modelName': self.model_name}
        state.update(self._intrinsics_state())
        state.update({
            'm_t0Line': self.t0_line,
            'm_dtLine': self.dt_line,
            'm_positions': self.positions.ravel().tolist(),
            'm_t0Ephem': self.t0_ephem,
            'm_dtEphem': self.dt_ephem,
            'm_quaternions': self.quaternions.ravel().tolist(),
            'm_t0Quat': self.t0_quat,
            'm_dtQuat': self.dt_quat,
        })
        return state

    @classmethod
    def from_state(cls, state: dict) -> "CsmLinescanModel":
        return cls(
            t0_line=state['m_t0Line'], dt_line=state['m_dtLine'],
            positions=state['m_positions'], t0_ephem=state['m_t0Ephem'],
            dt_ephem=state['m_dtEphem'],
            quaternions=state['m_quaternions'], t0_quat=state['m_t0Quat'],
            dt_quat=state['m_dtQuat'],
            **cls._intrinsics_kwargs(state))

    @classmethod
    def load_state(cls, path) -> "CsmLinescanModel":
        state = _read_state(path)
        if state.get('m_modelName') != LINESCAN_MODEL_NAME:
            raise ConfigurationError(f"Not a CSM linescan model state: {path}")
        return cls.from_state(state)


def load_csm_state(path):
    """Load a frame or linescan model from a JSON state file, by model name."""
    state = _read_state(path)
    name = state.get('m_modelName')
    if name == FRAME_MODEL_NAME:
        return CsmFrameModel.from_state(state)
    if name == LINESCAN_MODEL_NAME:
        return CsmLinescanModel.from_state(state)
    raise ConfigurationError(f"Unknown CSM model name '{name}' in {path}")


def pack_frame_params(frame_model: CsmFrameModel) -> np.ndarray:
    """Position then quaternion of a frame camera, as optimization variables."""
    return np.array([frame_model.get_parameter_value(i)
                     for i in range(NUM_XYZ_PARAMS + NUM_QUAT_PARAMS)])


def unpack_frame_params(frame_params, frame_model: CsmFrameModel) -> None:
    """Write optimized position and quaternion back into a frame camera."""
    q = normalize_quaternion(frame_params[NUM_XYZ_PARAMS:NUM_XYZ_PARAMS + NUM_QUAT_PARAMS])
    for i in range(NUM_XYZ_PARAMS):
        frame_model.set_parameter_value(i, frame_params[i])
    for i in range(NUM_QUAT_PARAMS):
        frame_model.set_parameter_value(NUM_XYZ_PARAMS + i, q[i])
