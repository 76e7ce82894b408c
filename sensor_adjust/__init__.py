"""
Sensor Adjustment Package

Core of a bundle adjustment and jitter solving system for frame,
pushbroom (linescan) and panoramic cameras: parameter storage, camera
model variants, rig configurations, intrinsics sharing, residuals, and
the lifecycle that reads, aligns, and writes adjusted cameras.
Pinhole cameras can be aligned to ground control points.

Conventions:
    - World coordinates: ECEF (meters)
    - Quaternions: (x, y, z, w)
    - Pixels: (x, y) with origin at the top-left pixel center.
      CSM models use (line, sample) = (y + 0.5, x + 0.5).
    - Intrinsics under optimization are multipliers of the input values

Supported Formats:
    - .tsai pinhole and optical bar camera files
    - CSM frame and linescan JSON states
    - .adjust adjustment files
    - Rig configuration files
"""

from .errors import (SensorAdjustError, ConfigurationError, AdjustmentFileError,
                     InvariantError, ProjectionError)
from .config import BundleAdjustOptions
from .param_storage import ParamStorage, IDENTITY_MULTIPLIER
from .adjustment import CameraAdjustment, AdjustedCameraModel, write_adjustments
from .pinhole import PinholeModel
from .optical_bar import OpticalBarModel
from .csm import CsmFrameModel, CsmLinescanModel, load_csm_state
from .camera_variants import CameraType, get_variant, load_camera
from .rig_set import RigSet, RigCamInfo, read_rig_config, write_rig_config
from .intrinsics_options import IntrinsicOptions, load_intrinsics_options
from .cost_functions import (LsPixelReprojErr, FramePixelReprojErr, RigLsFramePixelReprojErr,
                             BaPixelReprojErr, WeightedRollYawError, BIG_PIXEL_VALUE)
from .solver import LeastSquaresProblem, CauchyLoss
from .camera_adjustment import (init_camera_params, calc_optimized_cameras,
                                save_updated_cameras)
from .gcp_alignment import align_to_gcp, find_3d_similarity

__version__ = "0.1.0"
__all__ = [
    "SensorAdjustError",
    "ConfigurationError",
    "AdjustmentFileError",
    "InvariantError",
    "ProjectionError",
    "BundleAdjustOptions",
    "ParamStorage",
    "IDENTITY_MULTIPLIER",
    "CameraAdjustment",
    "AdjustedCameraModel",
    "write_adjustments",
    "PinholeModel",
    "OpticalBarModel",
    "CsmFrameModel",
    "CsmLinescanModel",
    "load_csm_state",
    "CameraType",
    "get_variant",
    "load_camera",
    "RigSet",
    "RigCamInfo",
    "read_rig_config",
    "write_rig_config",
    "IntrinsicOptions",
    "load_intrinsics_options",
    "LsPixelReprojErr",
    "FramePixelReprojErr",
    "RigLsFramePixelReprojErr",
    "BaPixelReprojErr",
    "WeightedRollYawError",
    "BIG_PIXEL_VALUE",
    "LeastSquaresProblem",
    "CauchyLoss",
    "init_camera_params",
    "calc_optimized_cameras",
    "save_updated_cameras",
    "align_to_gcp",
    "find_3d_similarity",
]
