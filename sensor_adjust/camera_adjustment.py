"""
Camera adjustment lifecycle.

A run goes through these steps:
    1. Zero the camera adjustments in the parameter storage.
    2. Read adjustments from a previous run, if input_prefix is set.
    3. Apply an initial alignment transform, if one is given.
    4. Build corrected copies of the cameras for setting up residuals.
    5. (The caller registers residuals and solves.)
    6. Build the optimized cameras from the storage.
    7. Write them to disk, and optionally into the images.

How the storage relates to a camera depends on the camera type. For
pinhole and optical bar cameras the camera block holds the absolute
pose. For CSM and other cameras it holds an adjustment applied on top of
the input camera. The input cameras in opt.camera_models are only
modified when applying a prior adjustment or initial transform to CSM
cameras, which is done inline.
"""

from typing import List, Optional, Tuple
import logging

import numpy as np

from .adjustment import (AdjustedCameraModel, CameraAdjustment, bundle_adjust_file_name,
                         csm_state_file)
from .camera_variants import (CameraType, adjusted_model, current_adjustment, get_variant,
                              num_distortion_params, unadjusted_model)
from .config import BundleAdjustOptions
from .csm import CsmFrameModel, CsmLinescanModel
from .errors import ConfigurationError, InvariantError
from .image_state import save_camera_state_to_image
from .intrinsics_options import (IntrinsicOptions, distortion_sanity_check,
                                 parse_intrinsics_limits)
from .orbital import ecef_to_geodetic
from .param_storage import ParamStorage
from .rotations import decompose_similarity

logger = logging.getLogger(__name__)

SCALE_TOLERANCE = 1e-6


def read_initial_transform(path) -> np.ndarray:
    """
    Read a 4x4 transform from a text file, such as the output of a point
    cloud alignment.

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigurationError: if it does not hold 16 numbers
    """
    logger.info(f"Reading: {path}")
    try:
        vals = np.loadtxt(path, dtype=np.float64)
    except OSError:
        raise FileNotFoundError(f"Initial transform file not found: {path}") from None
    except ValueError as e:
        raise ConfigurationError(f"Could not parse initial transform {path}: {e}") from None
    if vals.size != 16:
        raise ConfigurationError(
            f"Expecting a 4x4 matrix in {path}, got {vals.size} values")
    M = vals.reshape(4, 4)
    if not np.all(np.isfinite(M)):
        raise ConfigurationError(f"Non-finite value in initial transform {path}")
    return M


def check_no_scale(M, what: str = 'CSM camera models') -> None:
    """
    Raises:
        ConfigurationError: if the transform has a scale other than 1
    """
    _, _, scale = decompose_similarity(M)
    if abs(scale - 1.0) > SCALE_TOLERANCE:
        raise ConfigurationError(f"{what} do not support applying a transform with a scale "
                                 f"(found scale {scale:.9g})")


def _check_camera_count(opt: BundleAdjustOptions, storage: ParamStorage) -> None:
    if storage.num_cameras() != len(opt.camera_models):
        raise ConfigurationError(
            f"Expecting {storage.num_cameras()} cameras, got {len(opt.camera_models)}")
    if opt.input_prefix and (len(opt.camera_files) != storage.num_cameras() or
                             (opt.image_files and
                              len(opt.image_files) != storage.num_cameras())):
        raise ConfigurationError("Reading prior adjustments needs a camera file, and an "
                                 "image file if images are given, for each camera")


def _read_adjustment(opt: BundleAdjustOptions, icam: int) -> CameraAdjustment:
    adjust_file = bundle_adjust_file_name(opt.input_prefix, _image_file(opt, icam),
                                          opt.camera_files[icam])
    logger.info(f"Reading input adjustment: {adjust_file}")
    adjustment = CameraAdjustment()
    adjustment.read_from_adjust_file(adjust_file)
    return adjustment


def _adjustment_transform(camera, adjustment: CameraAdjustment) -> np.ndarray:
    return adjusted_model(camera, adjustment).ecef_transform()


def put_adjustments_in_params(input_prefix: str, image_files: List[str],
                              camera_files: List[str], storage: ParamStorage) -> None:
    """Read adjustments from a previous run into the camera blocks, overwriting them."""
    for icam in range(storage.num_cameras()):
        image_file = image_files[icam] if image_files else ''
        adjust_file = bundle_adjust_file_name(input_prefix, image_file,
                                              camera_files[icam])
        logger.info(f"Reading input adjustment: {adjust_file}")
        adjustment = CameraAdjustment()
        adjustment.read_from_adjust_file(adjust_file)
        adjustment.pack_to_array(storage.get_camera_ptr(icam))


def create_corrected_cameras(input_cameras, storage: ParamStorage) -> List[AdjustedCameraModel]:
    """Input cameras with the adjustments in the storage applied on top."""
    out_cameras = []
    for icam in range(storage.num_cameras()):
        correction = CameraAdjustment.from_array(storage.get_camera_ptr(icam))
        out_cameras.append(adjusted_model(input_cameras[icam], correction))
    return out_cameras


def apply_transform_to_params(M, storage: ParamStorage, cameras) -> None:
    """
    Compose a transform with the adjustment of each camera in the storage.
    The cameras are not modified.
    """
    for icam in range(storage.num_cameras()):
        cam_ptr = storage.get_camera_ptr(icam)
        cam_adjust = CameraAdjustment.from_array(cam_ptr)

        cam = adjusted_model(cameras[icam], cam_adjust)
        cam.apply_transform(M)

        cam_adjust.copy_from_adjusted_camera(cam)
        cam_adjust.pack_to_array(cam_ptr)


def _apply_similarity_and_repack(M, storage: ParamStorage, cameras, camera_type) -> None:
    variant = get_variant(camera_type)
    R, T, scale = decompose_similarity(M)
    for icam in range(storage.num_cameras()):
        variant.check(cameras[icam])
        cameras[icam].apply_transform(R, T, scale)
        variant.pack(cameras[icam], icam, storage)


def apply_transform_to_cameras_pinhole(M, storage: ParamStorage, cameras) -> None:
    """
    Apply a similarity transform to pinhole cameras in place and repack
    them. Assumes the storage holds the same poses as the cameras.
    """
    _apply_similarity_and_repack(M, storage, cameras, CameraType.PINHOLE)


def apply_transform_to_cameras_optical_bar(M, storage: ParamStorage, cameras) -> None:
    """As apply_transform_to_cameras_pinhole(), for optical bar cameras."""
    _apply_similarity_and_repack(M, storage, cameras, CameraType.OPTICAL_BAR)


def apply_transform_to_cameras_csm(M, storage: ParamStorage, cameras) -> None:
    """
    Apply a rigid transform to CSM cameras in place. The storage only gets
    identity intrinsics, as the pose lives in the camera.
    """
    check_no_scale(M)
    variant = get_variant(CameraType.CSM)
    for icam in range(storage.num_cameras()):
        variant.check(cameras[icam])
        cameras[icam].apply_transform(M)
        variant.pack(cameras[icam], icam, storage)


def init_cams(opt: BundleAdjustOptions, storage: ParamStorage,
              initial_transform: Optional[np.ndarray] = None) -> Tuple[list, bool]:
    """
    Set up the storage for cameras of any type, corrected by adjustments.

    Returns:
        Tuple (corrected cameras, whether they differ from the input cameras)
    """
    cameras_changed = False

    storage.init_cams_as_zero()
    _check_camera_count(opt, storage)
    for icam, camera in enumerate(opt.camera_models):
        current_adjustment(camera).pack_to_array(storage.get_camera_ptr(icam))

    if opt.input_prefix:
        put_adjustments_in_params(opt.input_prefix, opt.image_files, opt.camera_files, storage)
        cameras_changed = True

    if initial_transform is not None:
        if opt.stereo_session == 'csm':
            check_no_scale(initial_transform)
        # On top of any prior adjustment. Cameras do not change.
        apply_transform_to_params(initial_transform, storage, opt.camera_models)
        cameras_changed = True

    return create_corrected_cameras(opt.camera_models, storage), cameras_changed


def init_cams_pinhole(opt: BundleAdjustOptions, storage: ParamStorage,
                      initial_transform: Optional[np.ndarray] = None) -> Tuple[list, bool]:
    """Pinhole specialization of init_cams(). The storage gets absolute poses."""
    variant = get_variant(CameraType.PINHOLE)
    cameras_changed = False

    storage.init_cams_as_zero()
    _check_camera_count(opt, storage)

    for icam, in_cam in enumerate(opt.camera_models):
        variant.check(in_cam)
        logger.debug(f"Loading input model: {in_cam!r}")
        pin_cam = in_cam.copy()

        if opt.input_prefix:
            adjustment = _read_adjustment(opt, icam)
            pin_cam.apply_transform(_adjustment_transform(in_cam, adjustment))
            cameras_changed = True

        # This may be on top of a prior adjustment
        if initial_transform is not None:
            pin_cam.apply_transform(initial_transform)
            cameras_changed = True

        variant.pack(pin_cam, icam, storage)

    new_cams = [variant.transform(icam, storage, cam)
                for icam, cam in enumerate(opt.camera_models)]
    return new_cams, cameras_changed


def init_cams_optical_bar(opt: BundleAdjustOptions, storage: ParamStorage,
                          initial_transform: Optional[np.ndarray] = None) -> Tuple[list, bool]:
    """Optical bar specialization of init_cams(). Prior adjustments are not supported."""
    if opt.input_prefix:
        raise ConfigurationError("Applying initial adjustments to optical bar cameras "
                                 "is not implemented. Remove input_prefix.")

    variant = get_variant(CameraType.OPTICAL_BAR)
    cameras_changed = False

    storage.init_cams_as_zero()
    _check_camera_count(opt, storage)

    for icam, in_cam in enumerate(opt.camera_models):
        logger.debug(f"Loading input model: {in_cam!r}")
        variant.pack(in_cam, icam, storage)

    if initial_transform is not None:
        apply_transform_to_cameras_optical_bar(initial_transform, storage, opt.camera_models)
        cameras_changed = True

    new_cams = [variant.transform(icam, storage, cam)
                for icam, cam in enumerate(opt.camera_models)]
    return new_cams, cameras_changed


def init_cams_csm(opt: BundleAdjustOptions, storage: ParamStorage,
                  initial_transform: Optional[np.ndarray] = None) -> Tuple[list, bool]:
    """
    CSM specialization of init_cams(). Prior adjustments and the initial
    transform are applied inline to the cameras in opt.camera_models, and
    the storage holds identity adjustments.
    """
    variant = get_variant(CameraType.CSM)
    cameras_changed = False

    storage.init_cams_as_zero()
    _check_camera_count(opt, storage)

    for icam, csm_cam in enumerate(opt.camera_models):
        variant.check(csm_cam)
        if opt.input_prefix:
            adjustment = _read_adjustment(opt, icam)
            ecef_transform = _adjustment_transform(csm_cam, adjustment)
            csm_cam.apply_transform(ecef_transform)
            cameras_changed = True

        # Only the intrinsics go to the storage
        variant.pack(csm_cam, icam, storage)

    if initial_transform is not None:
        apply_transform_to_cameras_csm(initial_transform, storage, opt.camera_models)
        cameras_changed = True

    new_cams = [variant.transform(icam, storage, cam)
                for icam, cam in enumerate(opt.camera_models)]
    return new_cams, cameras_changed


_INIT_FUNCS = {
    CameraType.PINHOLE: init_cams_pinhole,
    CameraType.OPTICAL_BAR: init_cams_optical_bar,
    CameraType.CSM: init_cams_csm,
    CameraType.OTHER: init_cams,
}


def init_camera_params(opt: BundleAdjustOptions, storage: ParamStorage,
                       initial_transform: Optional[np.ndarray] = None) -> Tuple[list, bool]:
    """Dispatch to the init_cams variant of the configured camera type."""
    camera_type = CameraType.parse(opt.camera_type)
    return _INIT_FUNCS[camera_type](opt, storage, initial_transform)


def build_param_storage(opt: BundleAdjustOptions, num_points: int,
                        intrinsics_opts: Optional[IntrinsicOptions] = None) -> ParamStorage:
    """
    Allocate the storage for the cameras in opt.camera_models.

    If intrinsics are not solved for, nothing is shared.

    Raises:
        ConfigurationError: if intrinsics are solved for cameras of type other,
            or distortion sizes are inconsistent with the sharing
    """
    camera_type = CameraType.parse(opt.camera_type)
    if opt.solve_intrinsics and camera_type == CameraType.OTHER:
        raise ConfigurationError("Solving for intrinsics is supported only for pinhole, "
                                 "optical bar, and CSM cameras")

    num_dist = num_distortion_params(camera_type, opt.camera_models)
    if not opt.solve_intrinsics:
        intrinsics_opts = None
    elif intrinsics_opts is not None:
        distortion_sanity_check(num_dist, intrinsics_opts,
                                parse_intrinsics_limits(opt.intrinsics_limits))

    return ParamStorage(num_points, len(opt.camera_models), num_dist, intrinsics_opts)


def apply_intrinsics_limits(problem, storage: ParamStorage, limits: List[float]) -> int:
    """
    Bound the intrinsics multipliers in a problem. The first limit pair is
    for the focal length, the second for both optical center components,
    and the rest for the distortion coefficients in order. Blocks not in
    the problem are skipped.

    Returns:
        Number of bounds set
    """
    count = 0
    pairs = list(zip(limits[0::2], limits[1::2]))

    def bound(block, index, pair):
        nonlocal count
        if index >= block.size or not problem.has_parameter_block(block):
            return
        problem.set_parameter_lower_bound(block, index, pair[0])
        problem.set_parameter_upper_bound(block, index, pair[1])
        count += 1

    for icam in range(storage.num_cameras()):
        if pairs:
            bound(storage.get_intrinsic_focus_ptr(icam), 0, pairs[0])
        if len(pairs) > 1:
            center = storage.get_intrinsic_center_ptr(icam)
            bound(center, 0, pairs[1])
            bound(center, 1, pairs[1])
        distortion = storage.get_intrinsic_distortion_ptr(icam)
        for index, pair in enumerate(pairs[2:]):
            bound(distortion, index, pair)
    return count


def set_unfloated_intrinsics_constant(problem, storage: ParamStorage,
                                      intrinsics_opts: IntrinsicOptions) -> int:
    """
    Hold the intrinsics multipliers that are not floated constant, per the
    float flags of the sensor of each camera. Blocks not in the problem are
    skipped.

    Returns:
        Number of blocks set constant
    """
    constant = set()
    for icam in range(storage.num_cameras()):
        sensor = intrinsics_opts.sensor_of(icam)
        flagged = ((storage.get_intrinsic_center_ptr(icam), intrinsics_opts.float_center[sensor]),
                   (storage.get_intrinsic_focus_ptr(icam), intrinsics_opts.float_focus[sensor]),
                   (storage.get_intrinsic_distortion_ptr(icam),
                    intrinsics_opts.float_distortion[sensor]))
        for block, floated in flagged:
            if floated or block.size == 0 or not problem.has_parameter_block(block):
                continue
            problem.set_parameter_block_constant(block)
            constant.add(block.__array_interface__['data'][0])
    logger.info(f"Intrinsics blocks held constant: {len(constant)}")
    return len(constant)


def calc_optimized_cameras(opt: BundleAdjustOptions, storage: ParamStorage) -> list:
    """Cameras with the storage applied. opt.camera_models is not modified."""
    variant = get_variant(opt.camera_type)
    return [variant.transform(icam, storage, cam) for icam, cam in enumerate(opt.camera_models)]


def _image_file(opt: BundleAdjustOptions, icam: int) -> str:
    """Image of a camera, or empty if the run has no images."""
    return opt.image_files[icam] if opt.image_files else ''


def _image_to_update(opt: BundleAdjustOptions, icam: int) -> str:
    if not opt.image_files:
        raise ConfigurationError("Updating images with the CSM state needs the images")
    return opt.image_files[icam]


def _log_camera_center(cam_file: str, camera) -> None:
    lon, lat, height = ecef_to_geodetic(camera.camera_center())
    logger.info(f"Camera center for {cam_file}: {lon:.8f} {lat:.8f} {height:.3f} "
                f"(longitude, latitude, height above datum(m))")


def write_csm_output_file_no_intr(opt: BundleAdjustOptions, icam: int, adjust_file: str,
                                  storage: ParamStorage) -> str:
    """Write the CSM state of an adjusted camera, next to its adjustment file."""
    csm_model = unadjusted_model(opt.camera_models[icam])
    if not isinstance(csm_model, (CsmFrameModel, CsmLinescanModel)):
        raise InvariantError(f"Expecting a CSM camera for session {opt.stereo_session}, "
                             f"got {type(csm_model).__name__}")

    cam_adjust = CameraAdjustment.from_array(storage.get_camera_ptr(icam))
    out_cam = csm_model.copy()
    out_cam.apply_transform(_adjustment_transform(opt.camera_models[icam], cam_adjust))

    csm_file = csm_state_file(adjust_file)
    out_cam.save_state(csm_file)
    if opt.update_image_with_csm_state:
        save_camera_state_to_image(_image_to_update(opt, icam), out_cam)
    return csm_file


def save_updated_cameras(opt: BundleAdjustOptions, storage: ParamStorage) -> List[str]:
    """
    Write the optimized cameras.

    Pinhole and optical bar cameras go to .tsai files, CSM cameras to
    .adjusted_state.json files, and other cameras to .adjust files. Other
    cameras in a CSM-like session also get their adjusted CSM state.

    Returns:
        Files written
    """
    camera_type = CameraType.parse(opt.camera_type)
    variant = get_variant(camera_type)
    written = []

    for icam, in_cam in enumerate(opt.camera_models):
        out_cam = variant.transform(icam, storage, in_cam)

        if camera_type == CameraType.OTHER:
            adjust_file = bundle_adjust_file_name(opt.out_prefix, _image_file(opt, icam),
                                                  opt.camera_files[icam])
            variant.write(out_cam, adjust_file)
            written.append(adjust_file)
            if opt.is_csm_like_session():
                written.append(write_csm_output_file_no_intr(opt, icam, adjust_file, storage))
            continue

        cam_file = variant.output_file(opt.out_prefix, _image_file(opt, icam),
                                       opt.camera_files[icam])
        _log_camera_center(cam_file, out_cam)
        variant.write(out_cam, cam_file)
        written.append(cam_file)

        if camera_type == CameraType.CSM and opt.update_image_with_csm_state:
            save_camera_state_to_image(_image_to_update(opt, icam), out_cam)

    return written
