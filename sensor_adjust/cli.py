"""
Command-line interface for camera adjustment.

Usage:
    sensor-adjust config.yaml [-v]

For CSM cameras with points and observations, solves for the jitter of
linescan cameras and the pose of frame cameras, optionally with roll
and yaw constraints and rig transforms. Other camera types are bundle
adjusted, with the floated intrinsics. For all camera types, applies any
prior adjustments and initial transform, and writes the adjusted cameras.
Pinhole cameras may first be aligned to ground control points.
"""

import argparse
import logging
import sys
from typing import Optional

import numpy as np

from .camera_adjustment import (apply_intrinsics_limits, build_param_storage,
                                init_camera_params, read_initial_transform,
                                save_updated_cameras, set_unfloated_intrinsics_constant)
from .camera_variants import CameraType, get_variant, load_camera
from .config import BundleAdjustOptions
from .cost_functions import (add_ba_reprojection_err, add_frame_reprojection_err,
                             add_ls_reprojection_err, add_rig_ls_frame_reprojection_err,
                             add_roll_yaw_constraint)
from .csm import CsmFrameModel, CsmLinescanModel, pack_frame_params, unpack_frame_params
from .errors import ConfigurationError, SensorAdjustError
from .gcp_alignment import align_to_gcp
from .intrinsics_options import (IntrinsicOptions, load_intrinsics_options,
                                 parse_intrinsics_limits, read_image_cam_lists)
from .observations import read_observations_csv, read_points_csv
from .orbital import GeoReference
from .param_storage import ParamStorage
from .rig_set import (RigSet, affine_to_rigid_params, linescan_to_curr_sensor_trans,
                      read_rig_config, rig_frame_cam_infos, rigid_params_to_affine,
                      write_rig_config)
from .solver import LeastSquaresProblem

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def load_inputs(opt: BundleAdjustOptions) -> IntrinsicOptions:
    """Resolve image and camera lists, load the cameras, and parse the intrinsics options."""
    intrinsics_opts = IntrinsicOptions()
    if opt.image_list:
        opt.image_files, opt.camera_files = read_image_cam_lists(opt.image_list,
                                                                 opt.camera_list,
                                                                 intrinsics_opts)
    if not opt.camera_files:
        raise ConfigurationError("No camera files were specified")
    if opt.image_files and len(opt.image_files) != len(opt.camera_files):
        raise ConfigurationError("Expecting the same number of images and cameras")

    opt.camera_models = [load_camera(f) for f in opt.camera_files]
    return load_intrinsics_options(opt.solve_intrinsics, opt.intrinsics_to_float,
                                   opt.intrinsics_to_share, intrinsics_opts)


def solve_jitter(opt: BundleAdjustOptions, cameras: list, storage: ParamStorage,
                 observations: list, rig: Optional[RigSet] = None) -> Optional[object]:
    """
    Refine CSM cameras in place against observed points.

    Linescan cameras float their position and quaternion samples near each
    observation, frame cameras their single pose. The points float too.

    With a rig, frame cameras whose reference sensor is a linescan camera
    are tied to it by the rig transform of their sensor, which floats and
    is written back into the rig. Their poses are then recomputed from the
    reference camera.
    """
    problem = LeastSquaresProblem()
    frame_params = {}
    rig_params = {}

    rig_infos = {}
    if rig is not None:
        if opt.have_rig_transforms:
            rig_infos = rig_frame_cam_infos(rig, opt.camera_files, cameras)
        else:
            logger.warning("The rig transforms are not meaningful, solving frame poses on their own")

    for obs in observations:
        cam = cameras[obs.camera_index]
        point = storage.get_point_ptr(obs.point_index)
        if obs.camera_index in rig_infos:
            info = rig_infos[obs.camera_index]
            if info.sensor_id not in rig_params:
                rig_params[info.sensor_id] = affine_to_rigid_params(
                    rig.ref_to_cam_trans[info.sensor_id])
            add_rig_ls_frame_reprojection_err(opt, info, obs.pixel, obs.weight,
                                              cameras[info.ref_cam_index], cam,
                                              rig_params[info.sensor_id], point, problem)
        elif isinstance(cam, CsmLinescanModel):
            add_ls_reprojection_err(opt, cam, obs.pixel, point, obs.weight, problem)
        elif isinstance(cam, CsmFrameModel):
            if obs.camera_index not in frame_params:
                frame_params[obs.camera_index] = pack_frame_params(cam)
            add_frame_reprojection_err(opt, cam, obs.pixel, frame_params[obs.camera_index],
                                       point, obs.weight, problem)

    if opt.georef_crs and (opt.roll_weight > 0 or opt.yaw_weight > 0):
        georef = GeoReference(opt.georef_crs)
        for cam in cameras:
            if isinstance(cam, CsmLinescanModel):
                add_roll_yaw_constraint(opt, cam, georef, problem)

    if opt.intrinsics_limits:
        apply_intrinsics_limits(problem, storage, parse_intrinsics_limits(opt.intrinsics_limits))

    result = problem.solve(max_num_iterations=opt.max_num_iterations)

    for icam, params in frame_params.items():
        unpack_frame_params(params, cameras[icam])
    for sensor_id, params in rig_params.items():
        rig.ref_to_cam_trans[sensor_id] = rigid_params_to_affine(params)
    for icam, info in rig_infos.items():
        if info.sensor_id in rig_params:
            pose = linescan_to_curr_sensor_trans(cameras[info.ref_cam_index], info,
                                                 rig_params[info.sensor_id])
            unpack_frame_params(pose, cameras[icam])
    return result


def solve_bundle(opt: BundleAdjustOptions, storage: ParamStorage, observations: list,
                 intrinsics_opts: IntrinsicOptions) -> Optional[object]:
    """
    Refine the camera blocks, the points and the floated intrinsics in the
    storage against observed points. The cameras are rebuilt from the
    storage when they are saved.
    """
    variant = get_variant(opt.camera_type)
    problem = LeastSquaresProblem()
    for obs in observations:
        add_ba_reprojection_err(opt, variant, opt.camera_models[obs.camera_index], storage,
                                obs.camera_index, obs.pixel,
                                storage.get_point_ptr(obs.point_index), obs.weight, problem)

    if opt.solve_intrinsics:
        set_unfloated_intrinsics_constant(problem, storage, intrinsics_opts)
    if opt.intrinsics_limits:
        apply_intrinsics_limits(problem, storage, parse_intrinsics_limits(opt.intrinsics_limits))

    return problem.solve(max_num_iterations=opt.max_num_iterations)


def gcp_transform(opt: BundleAdjustOptions, camera_type: CameraType, cameras: list) -> np.ndarray:
    """Transform taking the cameras to the frame of the ground control points."""
    if camera_type != CameraType.PINHOLE:
        raise ConfigurationError("GCP alignment is supported only for pinhole cameras")
    if not opt.gcp or not opt.gcp_observations:
        raise ConfigurationError("GCP alignment needs the gcp and gcp_observations files")
    gcp_ids, gcp_xyz = read_points_csv(opt.gcp)
    gcp_obs = read_observations_csv(opt.gcp_observations, gcp_ids, len(cameras))
    return align_to_gcp(opt.gcp_alignment, cameras, gcp_xyz, gcp_obs)


def run(opt: BundleAdjustOptions) -> int:
    """Run one adjustment. Returns the number of camera files written."""
    intrinsics_opts = load_inputs(opt)
    camera_type = CameraType.parse(opt.camera_type)

    rig: Optional[RigSet] = None
    if opt.rig_config:
        rig = read_rig_config(opt.rig_config, opt.have_rig_transforms)
        logger.info(f"Rig sensors: {' '.join(rig.cam_names)}")

    point_ids, points = [], np.zeros((0, 3))
    observations = []
    if opt.points:
        point_ids, points = read_points_csv(opt.points)
    if opt.observations:
        if not opt.points:
            raise ConfigurationError("Observations need a points file")
        observations = read_observations_csv(opt.observations, point_ids,
                                             len(opt.camera_models))

    storage = build_param_storage(opt, len(point_ids), intrinsics_opts)
    for ipt in range(storage.num_points()):
        storage.get_point_ptr(ipt)[:] = points[ipt]

    initial_transform = None
    if opt.initial_transform:
        initial_transform = read_initial_transform(opt.initial_transform)

    new_cams, cameras_changed = init_camera_params(opt, storage, initial_transform)

    if opt.gcp_alignment:
        # On top of any prior adjustment and initial transform
        G = gcp_transform(opt, camera_type, new_cams)
        M = G if initial_transform is None else G @ initial_transform
        new_cams, cameras_changed = init_camera_params(opt, storage, M)
        for ipt in range(storage.num_points()):
            point = storage.get_point_ptr(ipt)
            point[:] = G[:3, :3] @ point + G[:3, 3]

    logger.info(f"Prior adjustments or initial transform applied: {cameras_changed}")

    if observations and camera_type == CameraType.CSM:
        if opt.solve_intrinsics:
            logger.warning("Intrinsics are kept fixed when solving for jitter")
        solve_jitter(opt, new_cams, storage, observations, rig)
        # The refined cameras already include the storage state
        opt.camera_models = new_cams
        storage.init_cams_as_zero()
    elif observations:
        if rig is not None:
            logger.warning("Rig transforms are solved for only with CSM cameras")
        solve_bundle(opt, storage, observations, intrinsics_opts)

    written = save_updated_cameras(opt, storage)

    if rig is not None and opt.out_prefix:
        write_rig_config(f"{opt.out_prefix}-rig_config.txt", rig)

    return len(written)


def main() -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description='Adjust camera models: apply prior adjustments and alignment, '
                    'solve for jitter, and write the updated cameras',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
    # Apply an initial transform to pinhole cameras
    sensor-adjust align.yaml

    # Jitter solve for CSM linescan cameras with roll/yaw constraints
    sensor-adjust jitter.yaml

    # Verbose output
    sensor-adjust jitter.yaml -v
'''
    )

    parser.add_argument(
        'config',
        type=str,
        help='Path to YAML configuration file'
    )

    parser.add_argument(
        '--out-prefix', '-o',
        type=str,
        default=None,
        help='Output prefix (default: out_prefix from the configuration)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        opt = BundleAdjustOptions.from_yaml(args.config)
        if args.out_prefix:
            opt.out_prefix = args.out_prefix
        if not opt.out_prefix:
            raise ConfigurationError("An output prefix is required")

        num_written = run(opt)
        logger.info(f"Wrote {num_written} camera files")
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except SensorAdjustError as e:
        logger.error(f"Adjustment failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
