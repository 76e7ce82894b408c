"""
Residuals for bundle adjustment, jitter solving and rig adjustment.

Every cost function is called as cost(parameters, residuals) -> bool with
a list of parameter blocks, and fills PIXEL_SIZE residuals. A cost
function never modifies its camera: it projects through a private copy
whose pose is overwritten from the parameter blocks, so evaluations may
run concurrently.

If the projection fails (the camera model raises, for example for a time
outside the sampled trajectory or a zero quaternion, or gives a
non-finite pixel), the residuals are set to BIG_PIXEL_VALUE and the
evaluation is still accepted.
"""

from typing import Callable, List, Optional, Tuple
import logging

import numpy as np

from .adjustment import NUM_CAMERA_PARAMS
from .csm import (CsmFrameModel, CsmLinescanModel, LAGRANGE_ORDER, NUM_QUAT_PARAMS,
                  NUM_XYZ_PARAMS, to_csm_pixel)
from .errors import InvariantError
from .orbital import GeoReference, satellite_to_world
from .param_storage import NUM_CENTER_PARAMS, NUM_FOCUS_PARAMS
from .rig_set import (NUM_RIGID_PARAMS, RigCamInfo, linescan_to_curr_sensor_trans,
                      rig_frame_time_bounds)
from .rotations import (quaternion_to_matrix, roll_pitch_yaw_from_rotation_matrix,
                        rotation_xy, wrap_half_turn)
from .solver import CauchyLoss, Problem

logger = logging.getLogger(__name__)

BIG_PIXEL_VALUE = 1000.0
PIXEL_SIZE = 2

# Pad, in lines, added to the max initial reprojection error when finding
# the trajectory samples an observation may touch
LINE_EXTRA_PAD = 5.0


def calc_index_bounds(time1: float, time2: float, t0: float, dt: float,
                      num_vals: int) -> Tuple[int, int]:
    """
    Range of samples needed to interpolate anywhere between two times.

    Returns:
        Tuple (beg, end), end exclusive, within [0, num_vals]

    Raises:
        InvariantError: if the range is empty
    """
    index1 = int((time1 - t0) / dt)
    index2 = int((time2 - t0) / dt)

    beg = min(index1, index2) - LAGRANGE_ORDER // 2 + 1
    end = max(index1, index2) + LAGRANGE_ORDER // 2 + 1

    beg = max(0, beg)
    end = min(end, num_vals)
    if beg >= end:
        raise InvariantError("Book-keeping error in interpolation. "
                             "Likely image order is different than camera order.")
    return beg, end


def try_project(project: Callable[[], np.ndarray]) -> Optional[np.ndarray]:
    """
    Run a projection, returning None instead of raising if it fails.

    Any error raised by the camera model counts as a failure, including
    zero quaternions and other degenerate poses that the optimizer may
    wander into. Book-keeping errors still propagate.
    """
    try:
        pix = project()
    except InvariantError:
        raise
    except Exception as e:
        logger.debug(f"Projection failed: {type(e).__name__}: {e}")
        return None
    if not np.all(np.isfinite(pix)):
        return None
    return pix


def _fill_residuals(residuals, pix, observation, weight) -> bool:
    if pix is None:
        residuals[:] = BIG_PIXEL_VALUE
    else:
        residuals[0] = weight * (pix[0] - observation[0])
        residuals[1] = weight * (pix[1] - observation[1])
    return True


class _WindowedLinescan:
    """Overwrites a window of linescan samples in a copy of the camera."""

    def __init__(self, ls_model: CsmLinescanModel, beg_quat_index: int, end_quat_index: int,
                 beg_pos_index: int, end_pos_index: int):
        self.ls_model = ls_model
        self.beg_quat_index = beg_quat_index
        self.end_quat_index = end_quat_index
        self.beg_pos_index = beg_pos_index
        self.end_pos_index = end_pos_index

    @property
    def num_window_blocks(self) -> int:
        return (self.end_quat_index - self.beg_quat_index) + \
               (self.end_pos_index - self.beg_pos_index)

    def window_block_sizes(self) -> List[int]:
        return [NUM_QUAT_PARAMS] * (self.end_quat_index - self.beg_quat_index) + \
               [NUM_XYZ_PARAMS] * (self.end_pos_index - self.beg_pos_index)

    def updated_copy(self, parameters) -> CsmLinescanModel:
        cam = self.ls_model.copy()
        shift = 0
        for qi in range(self.beg_quat_index, self.end_quat_index):
            cam.quaternions[qi] = parameters[shift]
            shift += 1
        for pi in range(self.beg_pos_index, self.end_pos_index):
            cam.positions[pi] = parameters[shift]
            shift += 1
        return cam


class LsPixelReprojErr(_WindowedLinescan):
    """
    Reprojection error of a point into a linescan camera.

    Parameter blocks: the quaternions in [beg_quat_index, end_quat_index),
    the positions in [beg_pos_index, end_pos_index), then the point.
    """

    num_residuals = PIXEL_SIZE

    def __init__(self, observation, weight: float, ls_model: CsmLinescanModel,
                 beg_quat_index: int, end_quat_index: int,
                 beg_pos_index: int, end_pos_index: int):
        super().__init__(ls_model, beg_quat_index, end_quat_index, beg_pos_index, end_pos_index)
        self.observation = np.asarray(observation, dtype=np.float64)
        self.weight = weight

    @property
    def parameter_block_sizes(self) -> List[int]:
        return self.window_block_sizes() + [NUM_XYZ_PARAMS]

    def __call__(self, parameters, residuals) -> bool:
        def project():
            cam = self.updated_copy(parameters)
            return cam.point_to_pixel(parameters[self.num_window_blocks])
        return _fill_residuals(residuals, try_project(project), self.observation, self.weight)


class FramePixelReprojErr:
    """
    Reprojection error of a point into a frame camera.

    Parameter blocks: position, quaternion, point.
    """

    num_residuals = PIXEL_SIZE
    parameter_block_sizes = [NUM_XYZ_PARAMS, NUM_QUAT_PARAMS, NUM_XYZ_PARAMS]

    def __init__(self, observation, weight: float, frame_model: CsmFrameModel):
        self.observation = np.asarray(observation, dtype=np.float64)
        self.weight = weight
        self.frame_model = frame_model

    def __call__(self, parameters, residuals) -> bool:
        def project():
            cam = self.frame_model.copy()
            for coord in range(NUM_XYZ_PARAMS):
                cam.set_parameter_value(coord, parameters[0][coord])
            for coord in range(NUM_QUAT_PARAMS):
                cam.set_parameter_value(NUM_XYZ_PARAMS + coord, parameters[1][coord])
            return cam.point_to_pixel(parameters[2])
        return _fill_residuals(residuals, try_project(project), self.observation, self.weight)


class RigLsFramePixelReprojErr(_WindowedLinescan):
    """
    Reprojection error of a point into a frame camera on a rig whose
    reference sensor is a linescan camera.

    Parameter blocks: the linescan quaternion and position window, the
    point, then the ref-to-current-sensor rigid transform.
    """

    num_residuals = PIXEL_SIZE

    def __init__(self, frame_pix, weight: float, rig_cam_info: RigCamInfo,
                 ref_ls_model: CsmLinescanModel, curr_frame_model: CsmFrameModel,
                 beg_quat_index: int, end_quat_index: int,
                 beg_pos_index: int, end_pos_index: int):
        super().__init__(ref_ls_model, beg_quat_index, end_quat_index,
                         beg_pos_index, end_pos_index)
        self.frame_pix = np.asarray(frame_pix, dtype=np.float64)
        self.weight = weight
        self.rig_cam_info = rig_cam_info
        self.curr_frame_model = curr_frame_model

    @property
    def parameter_block_sizes(self) -> List[int]:
        return self.window_block_sizes() + [NUM_XYZ_PARAMS, NUM_RIGID_PARAMS]

    def __call__(self, parameters, residuals) -> bool:
        def project():
            ls_cam = self.updated_copy(parameters)
            shift = self.num_window_blocks
            point = parameters[shift]
            ref_to_curr_trans = parameters[shift + 1]

            cam2world = linescan_to_curr_sensor_trans(ls_cam, self.rig_cam_info,
                                                      ref_to_curr_trans)
            frame_cam = self.curr_frame_model.copy()
            for coord in range(NUM_XYZ_PARAMS + NUM_QUAT_PARAMS):
                frame_cam.set_parameter_value(coord, cam2world[coord])
            return frame_cam.point_to_pixel(point)
        return _fill_residuals(residuals, try_project(project), self.frame_pix, self.weight)


class _BlockStorage:
    """
    ParamStorage look-alike for one camera, serving the parameter blocks of
    a residual and falling back to the storage for intrinsics not in it.
    """

    def __init__(self, storage, cam_index: int, camera_block, intrinsics_blocks):
        self.storage = storage
        self.cam_index = cam_index
        self.camera_block = camera_block
        self.intrinsics_blocks = list(intrinsics_blocks)

    def _intrinsic(self, pos: int, fallback: np.ndarray) -> np.ndarray:
        if pos < len(self.intrinsics_blocks):
            return self.intrinsics_blocks[pos]
        return fallback

    def get_camera_ptr(self, cam: int) -> np.ndarray:
        return self.camera_block

    def get_intrinsic_center_ptr(self, cam: int) -> np.ndarray:
        return self._intrinsic(0, self.storage.get_intrinsic_center_ptr(self.cam_index))

    def get_intrinsic_focus_ptr(self, cam: int) -> np.ndarray:
        return self._intrinsic(1, self.storage.get_intrinsic_focus_ptr(self.cam_index))

    def get_intrinsic_distortion_ptr(self, cam: int) -> np.ndarray:
        return self._intrinsic(2, self.storage.get_intrinsic_distortion_ptr(self.cam_index))


class BaPixelReprojErr:
    """
    Reprojection error of a point into a camera whose pose and intrinsics
    multipliers live in ParamStorage.

    Parameter blocks: the camera block, the point, then, when intrinsics
    are solved for, the optical center, focus, and (if non-empty)
    distortion multipliers. The camera is rebuilt by the variant of its
    camera type, as for the output cameras.
    """

    num_residuals = PIXEL_SIZE

    def __init__(self, observation, weight: float, variant, camera, storage, cam_index: int,
                 solve_intrinsics: bool):
        self.observation = np.asarray(observation, dtype=np.float64)
        self.weight = weight
        self.variant = variant
        self.camera = camera
        self.storage = storage
        self.cam_index = cam_index

        self.parameter_block_sizes = [NUM_CAMERA_PARAMS, NUM_XYZ_PARAMS]
        if solve_intrinsics:
            self.parameter_block_sizes += [NUM_CENTER_PARAMS, NUM_FOCUS_PARAMS]
            num_dist = storage.num_distortion_params(cam_index)
            if num_dist > 0:
                self.parameter_block_sizes.append(num_dist)

    def __call__(self, parameters, residuals) -> bool:
        def project():
            blocks = _BlockStorage(self.storage, self.cam_index, parameters[0], parameters[2:])
            cam = self.variant.transform(self.cam_index, blocks, self.camera)
            return cam.point_to_pixel(parameters[1])
        return _fill_residuals(residuals, try_project(project), self.observation, self.weight)


class WeightedRollYawError:
    """
    Keeps the roll and yaw of a linescan camera sample close to the
    satellite orbital frame, or, with initial_camera_constraint, close to
    the initial camera orientation.

    The only parameter block is the quaternion of the sample. A weight of
    zero disables the corresponding constraint.
    """

    num_residuals = PIXEL_SIZE
    parameter_block_sizes = [NUM_QUAT_PARAMS]

    def __init__(self, positions, quaternions, georef: GeoReference, cur_pos: int,
                 roll_weight: float, yaw_weight: float, initial_camera_constraint: bool):
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, NUM_XYZ_PARAMS)
        quaternions = np.asarray(quaternions, dtype=np.float64).reshape(-1, NUM_QUAT_PARAMS)
        if len(positions) != len(quaternions):
            raise InvariantError(
                "Expecting the same number of positions and quaternions for the roll/yaw "
                f"constraint, got {len(positions)} and {len(quaternions)}")

        self.roll_weight = roll_weight
        self.yaw_weight = yaw_weight
        self.initial_camera_constraint = initial_camera_constraint

        self.sat2world = satellite_to_world(positions, cur_pos, georef)
        self.rot_xy = rotation_xy()
        self.init_cam2world = quaternion_to_matrix(quaternions[cur_pos])

    def roll_pitch_yaw(self, quaternion) -> Tuple[float, float, float]:
        """Roll, pitch, yaw in degrees, with the 180 degree ambiguity removed."""
        cam2world = quaternion_to_matrix(quaternion)
        if self.initial_camera_constraint:
            rpy = cam2world.T @ self.init_cam2world
        else:
            rpy = self.sat2world.T @ cam2world @ self.rot_xy.T
        roll, pitch, yaw = roll_pitch_yaw_from_rotation_matrix(rpy)
        return wrap_half_turn(roll), wrap_half_turn(pitch), wrap_half_turn(yaw)

    def __call__(self, parameters, residuals) -> bool:
        angles = try_project(lambda: np.array(self.roll_pitch_yaw(parameters[0])))
        if angles is None:
            residuals[:] = BIG_PIXEL_VALUE
            return True
        roll, pitch, yaw = angles
        if self.initial_camera_constraint:
            # Camera pitch is satellite roll
            residuals[0] = pitch * self.roll_weight
        else:
            residuals[0] = roll * self.roll_weight
        residuals[1] = yaw * self.yaw_weight
        return True


def _line_extra(opt) -> float:
    return opt.max_init_reproj_error + LINE_EXTRA_PAD


def _window(ls_model: CsmLinescanModel, time1: float, time2: float) -> Tuple[int, int, int, int]:
    beg_quat, end_quat = calc_index_bounds(time1, time2, ls_model.t0_quat, ls_model.dt_quat,
                                           ls_model.num_quaternions)
    beg_pos, end_pos = calc_index_bounds(time1, time2, ls_model.t0_ephem, ls_model.dt_ephem,
                                         ls_model.num_positions)
    return beg_quat, end_quat, beg_pos, end_pos


def _window_blocks(ls_model: CsmLinescanModel, window) -> List[np.ndarray]:
    beg_quat, end_quat, beg_pos, end_pos = window
    return [ls_model.quaternions[i] for i in range(beg_quat, end_quat)] + \
           [ls_model.positions[i] for i in range(beg_pos, end_pos)]


def add_ls_reprojection_err(opt, ls_model: CsmLinescanModel, observation, tri_point: np.ndarray,
                            weight: float, problem: Problem) -> LsPixelReprojErr:
    """
    Add the reprojection error of a point into a linescan camera.

    The variables are the trajectory samples that can affect the
    observation, allowing it to move by opt.max_init_reproj_error plus a
    pad during optimization, and the point.
    """
    observation = np.asarray(observation, dtype=np.float64)
    line_extra = _line_extra(opt)
    time1 = ls_model.get_image_time(to_csm_pixel(observation - np.array([0.0, line_extra])))
    time2 = ls_model.get_image_time(to_csm_pixel(observation + np.array([0.0, line_extra])))
    window = _window(ls_model, time1, time2)

    cost_function = LsPixelReprojErr(observation, weight, ls_model, *window)
    problem.add_residual_block(cost_function, CauchyLoss(opt.robust_threshold),
                               _window_blocks(ls_model, window) + [tri_point])
    return cost_function


def add_frame_reprojection_err(opt, frame_model: CsmFrameModel, observation,
                               frame_params: np.ndarray, tri_point: np.ndarray,
                               weight: float, problem: Problem) -> FramePixelReprojErr:
    """
    Add the reprojection error of a point into a frame camera. The
    variables are frame_params (position, then quaternion) and the point.
    """
    cost_function = FramePixelReprojErr(observation, weight, frame_model)
    problem.add_residual_block(cost_function, CauchyLoss(opt.robust_threshold),
                               [frame_params[:NUM_XYZ_PARAMS],
                                frame_params[NUM_XYZ_PARAMS:NUM_XYZ_PARAMS + NUM_QUAT_PARAMS],
                                tri_point])
    return cost_function


def add_rig_ls_frame_reprojection_err(opt, rig_cam_info: RigCamInfo, frame_pix, weight: float,
                                      ref_ls_model: CsmLinescanModel,
                                      curr_frame_model: CsmFrameModel,
                                      ref_to_curr_trans: np.ndarray, tri_point: np.ndarray,
                                      problem: Problem) -> RigLsFramePixelReprojErr:
    """
    Add the reprojection error of a point into a frame sensor rigidly
    attached to a linescan reference sensor.
    """
    time1, time2 = rig_frame_time_bounds(ref_ls_model, rig_cam_info, _line_extra(opt))
    window = _window(ref_ls_model, time1, time2)

    cost_function = RigLsFramePixelReprojErr(frame_pix, weight, rig_cam_info, ref_ls_model,
                                             curr_frame_model, *window)
    problem.add_residual_block(cost_function, CauchyLoss(opt.robust_threshold),
                               _window_blocks(ref_ls_model, window) +
                               [tri_point, ref_to_curr_trans])
    return cost_function


def add_roll_yaw_constraint(opt, ls_model: CsmLinescanModel, georef: GeoReference,
                            problem: Problem) -> int:
    """
    Add a roll/yaw constraint for each quaternion sample of a linescan
    camera. The camera must have as many positions as quaternions.

    Returns:
        Number of constraints added
    """
    if opt.roll_weight <= 0 and opt.yaw_weight <= 0:
        return 0
    if ls_model.num_positions != ls_model.num_quaternions:
        raise InvariantError("The roll/yaw constraint needs as many positions as quaternions")

    for cur_pos in range(ls_model.num_quaternions):
        cost_function = WeightedRollYawError(ls_model.positions, ls_model.quaternions, georef,
                                             cur_pos, opt.roll_weight, opt.yaw_weight,
                                             opt.initial_camera_constraint)
        problem.add_residual_block(cost_function, None, [ls_model.quaternions[cur_pos]])
    return ls_model.num_quaternions


def intrinsics_blocks(storage, cam_index: int) -> List[np.ndarray]:
    """The intrinsics multiplier blocks of a camera, skipping an empty distortion block."""
    blocks = [storage.get_intrinsic_center_ptr(cam_index),
              storage.get_intrinsic_focus_ptr(cam_index)]
    distortion = storage.get_intrinsic_distortion_ptr(cam_index)
    if distortion.size > 0:
        blocks.append(distortion)
    return blocks


def add_ba_reprojection_err(opt, variant, camera, storage, cam_index: int, observation,
                            tri_point: np.ndarray, weight: float,
                            problem: Problem) -> BaPixelReprojErr:
    """
    Add the reprojection error of a point into a camera held in the storage.

    The variables are the camera block, the point, and, if
    opt.solve_intrinsics, the intrinsics multipliers of the camera. Shared
    intrinsics are views of the same memory, so they are one block.
    """
    cost_function = BaPixelReprojErr(observation, weight, variant, camera, storage, cam_index,
                                     opt.solve_intrinsics)
    blocks = [storage.get_camera_ptr(cam_index), tri_point]
    if opt.solve_intrinsics:
        blocks += intrinsics_blocks(storage, cam_index)
    problem.add_residual_block(cost_function, CauchyLoss(opt.robust_threshold), blocks)
    return cost_function
