"""
Configuration module for camera adjustment runs.

Handles loading and saving of run options from YAML files.
"""

import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, List, Optional
import logging

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Stereo sessions whose "other" cameras also get a CSM state written
CSM_LIKE_SESSIONS = ('csm', 'pleiades', 'dg', 'aster')

_PATH_FIELDS = ('input_prefix', 'out_prefix', 'initial_transform', 'rig_config',
                'image_list', 'camera_list', 'points', 'observations', 'gcp',
                'gcp_observations')


@dataclass
class BundleAdjustOptions:
    """
    Options for one adjustment run.

    Attributes:
        camera_type: One of pinhole, optical_bar, csm, other
        stereo_session: Session name, e.g. csm, pinhole, dg
        image_files: Image of each camera
        camera_files: Camera file of each camera
        image_list: Alternative to image_files. Comma-separated lists share intrinsics per sensor.
        camera_list: Alternative to camera_files
        input_prefix: Prefix of adjustments from a previous run, or empty
        out_prefix: Prefix of the output camera files
        initial_transform: Text file with a 4x4 matrix to apply to the cameras, or empty
        solve_intrinsics: Whether intrinsics are optimized
        intrinsics_to_float: Which intrinsics to float (coarse or per-sensor grammar)
        intrinsics_to_share: Which intrinsics to share. None means not specified.
        intrinsics_limits: Min max pairs for focus, center, and distortion multipliers
        max_init_reproj_error: Largest expected initial reprojection error, in pixels
        robust_threshold: Cauchy loss threshold, in pixels
        update_image_with_csm_state: Write the updated CSM state into the image
        rig_config: Rig configuration file, or empty
        have_rig_transforms: Whether the rig transforms in rig_config are meaningful
        roll_weight: Weight of the roll constraint for linescan cameras
        yaw_weight: Weight of the yaw constraint for linescan cameras
        initial_camera_constraint: Constrain roll and yaw relative to the initial cameras
        georef_crs: Projected coordinate system used for the orbital frame
        points: CSV of triangulated points (point_id, x, y, z), or empty
        observations: CSV of pixel observations (point_id, camera_index, x, y), or empty
        gcp: CSV of ground control points (point_id, x, y, z), or empty
        gcp_observations: CSV of GCP pixels (point_id, camera_index, x, y), or empty
        gcp_alignment: Align pinhole cameras to the GCP first, with the multi or mono method
        max_num_iterations: Solver iteration limit
    """
    camera_type: str = 'other'
    stereo_session: str = ''
    image_files: List[str] = field(default_factory=list)
    camera_files: List[str] = field(default_factory=list)
    image_list: str = ''
    camera_list: str = ''
    input_prefix: str = ''
    out_prefix: str = ''
    initial_transform: str = ''
    solve_intrinsics: bool = False
    intrinsics_to_float: str = ''
    intrinsics_to_share: Optional[str] = None
    intrinsics_limits: str = ''
    max_init_reproj_error: float = 5.0
    robust_threshold: float = 0.5
    update_image_with_csm_state: bool = False
    rig_config: str = ''
    have_rig_transforms: bool = True
    roll_weight: float = 0.0
    yaw_weight: float = 0.0
    initial_camera_constraint: bool = False
    georef_crs: str = ''
    points: str = ''
    observations: str = ''
    gcp: str = ''
    gcp_observations: str = ''
    gcp_alignment: str = ''
    max_num_iterations: int = 100

    # Live camera models, attached at run time
    camera_models: List[Any] = field(default_factory=list, repr=False)

    @classmethod
    def from_yaml(cls, config_path: str) -> "BundleAdjustOptions":
        """
        Load options from a YAML file. Paths are relative to the file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            BundleAdjustOptions with loaded values

        Example YAML structure:
            camera_type: csm
            stereo_session: csm
            image_files: [left.tif, right.tif]
            camera_files: [left.json, right.json]
            out_prefix: run/run
            solve_intrinsics: true
            intrinsics_to_float: "focal_length optical_center"
            intrinsics_to_share: "focal_length"
            max_init_reproj_error: 5.0
            robust_threshold: 0.5
            roll_weight: 1.0
            yaw_weight: 1.0
            georef_crs: "+proj=utm +zone=13 +datum=WGS84"
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Expecting a mapping in {config_path}")

        logger.info(f"Loading configuration from {config_path}")

        known = {name for name in cls.__dataclass_fields__ if name != 'camera_models'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown options in {config_path}: {', '.join(unknown)}")

        # Resolve paths relative to config file location
        config_dir = path.parent
        for name in _PATH_FIELDS:
            if data.get(name):
                data[name] = str(config_dir / data[name])
        for name in ('image_files', 'camera_files'):
            data[name] = [str(config_dir / p) for p in data.get(name) or []]

        opt = cls(**data)
        opt.camera_type = opt.camera_type.strip().lower()
        return opt

    def to_yaml(self, config_path: str) -> None:
        """Save options to a YAML file."""
        data = {name: getattr(self, name) for name in self.__dataclass_fields__
                if name != 'camera_models'}

        with open(config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")

    def is_csm_like_session(self) -> bool:
        return self.stereo_session in CSM_LIKE_SESSIONS
