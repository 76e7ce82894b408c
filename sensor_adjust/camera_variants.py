"""
Camera model variants.

Each supported camera type has one variant object that knows how to
    - pack a live camera into ParamStorage at a given index,
    - build a new camera from ParamStorage and the original camera,
    - name and write the output camera file.

Dispatch is by CameraType, never by probing the camera. A camera whose
run-time type does not match the configured variant is an InvariantError.
"""

from enum import Enum
from pathlib import Path
from typing import Dict
import logging

from .adjustment import (AdjustedCameraModel, CameraAdjustment, bundle_adjust_file_name,
                         write_adjustments)
from .csm import CsmFrameModel, CsmLinescanModel, load_csm_state
from .errors import ConfigurationError, InvariantError
from .optical_bar import OpticalBarModel
from .param_storage import IDENTITY_MULTIPLIER, ParamStorage
from .pinhole import PinholeModel, read_keyed_lines

logger = logging.getLogger(__name__)

NUM_OPTICAL_BAR_EXTRA_PARAMS = 3  # speed, motion compensation, scan time


class CameraType(str, Enum):
    PINHOLE = 'pinhole'
    OPTICAL_BAR = 'optical_bar'
    CSM = 'csm'
    OTHER = 'other'

    @classmethod
    def parse(cls, name: str) -> "CameraType":
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown camera type: {name}") from None


def unadjusted_model(camera):
    """The underlying camera if this is an adjusted camera, else the camera itself."""
    while isinstance(camera, AdjustedCameraModel):
        camera = camera.camera
    return camera


def adjusted_model(camera, adjustment: CameraAdjustment) -> AdjustedCameraModel:
    """
    The underlying camera of `camera` corrected by `adjustment`.

    The rotation is about the rotation center of `camera` when it is
    already adjusted, so that current_adjustment() round trips.
    """
    center = camera.rotation_center() if isinstance(camera, AdjustedCameraModel) else None
    return AdjustedCameraModel(unadjusted_model(camera), adjustment.position(),
                               adjustment.pose(), center)


def current_adjustment(camera) -> CameraAdjustment:
    """The adjustment carried by `camera`, with nested adjustments composed into one."""
    flat = adjusted_model(camera, CameraAdjustment())
    layers = []
    while isinstance(camera, AdjustedCameraModel):
        layers.append(camera)
        camera = camera.camera
    for layer in reversed(layers):
        flat.apply_transform(layer.ecef_transform())
    adjustment = CameraAdjustment()
    adjustment.copy_from_adjusted_camera(flat)
    return adjustment


def _set_identity_intrinsics(index: int, storage: ParamStorage) -> None:
    storage.get_intrinsic_center_ptr(index)[:] = IDENTITY_MULTIPLIER
    storage.get_intrinsic_focus_ptr(index)[:] = IDENTITY_MULTIPLIER
    storage.get_intrinsic_distortion_ptr(index)[:] = IDENTITY_MULTIPLIER


class CameraVariant:
    """Base class. Subclasses set camera_type and model_types."""

    camera_type: CameraType
    model_types: tuple = ()
    output_suffix = '.adjust'

    def check(self, camera) -> None:
        if not isinstance(camera, self.model_types):
            raise InvariantError(
                f"Expecting a {self.camera_type.value} camera, got {type(camera).__name__}")

    def num_distortion_params(self, camera) -> int:
        return 0

    def pack(self, camera, index: int, storage: ParamStorage) -> None:
        raise NotImplementedError

    def transform(self, index: int, storage: ParamStorage, camera):
        raise NotImplementedError

    def output_file(self, out_prefix: str, image_file: str, camera_file: str) -> str:
        adjust_file = bundle_adjust_file_name(out_prefix, image_file, camera_file)
        return str(Path(adjust_file).with_suffix(self.output_suffix))

    def write(self, camera, path) -> None:
        raise NotImplementedError


class PinholeVariant(CameraVariant):
    """The camera block holds the absolute pose. Intrinsics are multipliers."""

    camera_type = CameraType.PINHOLE
    model_types = (PinholeModel,)
    output_suffix = '.tsai'

    def num_distortion_params(self, camera) -> int:
        self.check(camera)
        return len(camera.lens_distortion().distortion_parameters())

    def pack(self, camera, index, storage):
        self.check(camera)
        adjustment = CameraAdjustment()
        adjustment.copy_from_camera(camera)
        adjustment.pack_to_array(storage.get_camera_ptr(index))
        _set_identity_intrinsics(index, storage)

    def transform(self, index, storage, camera) -> PinholeModel:
        self.check(camera)
        out_cam = camera.copy()

        adjustment = CameraAdjustment.from_array(storage.get_camera_ptr(index))
        out_cam.set_camera_center(adjustment.position())
        out_cam.set_camera_pose(adjustment.rotation_matrix())

        lens = out_cam.lens_distortion().copy()
        lens.set_distortion_parameters(
            lens.distortion_parameters() * storage.get_intrinsic_distortion_ptr(index))
        out_cam.set_lens_distortion(lens)

        out_cam.set_point_offset(out_cam.point_offset() * storage.get_intrinsic_center_ptr(index))
        out_cam.set_focal_length(out_cam.focal_length() * storage.get_intrinsic_focus_ptr(index)[0])
        return out_cam

    def write(self, camera, path):
        logger.info(f"Writing: {path}")
        camera.write(path)


class OpticalBarVariant(CameraVariant):
    """
    As pinhole, but the distortion block holds multipliers for the speed,
    the motion compensation factor, and the scan time.
    """

    camera_type = CameraType.OPTICAL_BAR
    model_types = (OpticalBarModel,)
    output_suffix = '.tsai'

    def num_distortion_params(self, camera) -> int:
        self.check(camera)
        return NUM_OPTICAL_BAR_EXTRA_PARAMS

    def pack(self, camera, index, storage):
        self.check(camera)
        adjustment = CameraAdjustment()
        adjustment.copy_from_camera(camera)
        adjustment.pack_to_array(storage.get_camera_ptr(index))
        _set_identity_intrinsics(index, storage)

    def transform(self, index, storage, camera) -> OpticalBarModel:
        self.check(camera)
        out_cam = camera.copy()

        adjustment = CameraAdjustment.from_array(storage.get_camera_ptr(index))
        out_cam.set_camera_center(adjustment.position())
        out_cam.set_camera_pose(adjustment.rotation_matrix())

        extra = storage.get_intrinsic_distortion_ptr(index)
        out_cam.set_speed(out_cam.get_speed() * extra[0])
        out_cam.set_motion_compensation(out_cam.get_motion_compensation() * extra[1])
        out_cam.set_scan_time(out_cam.get_scan_time() * extra[2])

        out_cam.set_optical_center(
            out_cam.get_optical_center() * storage.get_intrinsic_center_ptr(index))
        out_cam.set_focal_length(
            out_cam.get_focal_length() * storage.get_intrinsic_focus_ptr(index)[0])
        return out_cam

    def write(self, camera, path):
        logger.info(f"Writing: {path}")
        camera.write(path)


class CsmVariant(CameraVariant):
    """
    The camera block holds an adjustment on top of the camera, starting at
    identity. Intrinsics are multipliers of the focal length, optical
    center, and distortion coefficients.
    """

    camera_type = CameraType.CSM
    model_types = (CsmFrameModel, CsmLinescanModel)
    output_suffix = '.adjusted_state.json'

    def num_distortion_params(self, camera) -> int:
        self.check(camera)
        return len(camera.distortion())

    def pack(self, camera, index, storage):
        self.check(camera)
        _set_identity_intrinsics(index, storage)

    def transform(self, index, storage, camera):
        self.check(camera)
        out_cam = camera.copy()

        adjustment = CameraAdjustment.from_array(storage.get_camera_ptr(index))
        adj_cam = AdjustedCameraModel(camera, adjustment.position(), adjustment.pose())
        out_cam.apply_transform(adj_cam.ecef_transform())

        out_cam.set_optical_center(
            out_cam.optical_center() * storage.get_intrinsic_center_ptr(index))
        out_cam.set_focal_length(
            out_cam.focal_length() * storage.get_intrinsic_focus_ptr(index)[0])
        out_cam.set_distortion(out_cam.distortion() * storage.get_intrinsic_distortion_ptr(index))
        return out_cam

    def write(self, camera, path):
        camera.save_state(path)


class OtherVariant(CameraVariant):
    """
    Any camera, corrected by an adjustment. Intrinsics cannot be solved.
    """

    camera_type = CameraType.OTHER
    model_types = (object,)

    def check(self, camera) -> None:
        if camera is None:
            raise InvariantError("Expecting a camera, got None")

    def pack(self, camera, index, storage):
        """Write the adjustment the camera already carries, or the identity."""
        self.check(camera)
        current_adjustment(camera).pack_to_array(storage.get_camera_ptr(index))

    def transform(self, index, storage, camera) -> AdjustedCameraModel:
        self.check(camera)
        return adjusted_model(camera, CameraAdjustment.from_array(storage.get_camera_ptr(index)))

    def write(self, camera, path):
        write_adjustments(path, camera.translation(), camera.rotation())


VARIANTS: Dict[CameraType, CameraVariant] = {
    CameraType.PINHOLE: PinholeVariant(),
    CameraType.OPTICAL_BAR: OpticalBarVariant(),
    CameraType.CSM: CsmVariant(),
    CameraType.OTHER: OtherVariant(),
}


def get_variant(camera_type) -> CameraVariant:
    if not isinstance(camera_type, CameraType):
        camera_type = CameraType.parse(camera_type)
    return VARIANTS[camera_type]


def num_distortion_params(camera_type, cameras) -> list:
    """Number of distortion multipliers of each camera."""
    variant = get_variant(camera_type)
    return [variant.num_distortion_params(cam) for cam in cameras]


def load_camera(path):
    """
    Load a camera from disk. The format is found from the extension
    (.tsai or .json) and, for .tsai, the model line.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    logger.info(f"Reading: {path}")
    if suffix == '.json':
        return load_csm_state(path)
    if suffix == '.tsai':
        bare, _ = read_keyed_lines(path)
        if 'OPTICAL_BAR' in bare:
            return OpticalBarModel.read(path)
        return PinholeModel.read(path)
    raise ConfigurationError(f"Unknown camera file type: {path}")

