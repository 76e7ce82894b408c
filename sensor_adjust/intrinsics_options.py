"""
Which intrinsics to float and which to share across cameras.

Two grammars are accepted for the intrinsics to float:
    coarse: "focal_length optical_center other_intrinsics", applied to all sensors
    fine:   "1:focal_length,optical_center 2:all 3:none", per sensor, 1-based ids,
            only when intrinsics are shared per sensor

The separators \\:;, and whitespace are all equivalent.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
import logging
import re

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ALL_INTRINSICS = 'focal_length optical_center other_intrinsics'

_SEPARATORS = re.compile(r'[\\:;, \t\r\n]')


@dataclass
class IntrinsicOptions:
    """Per-sensor float flags and the sharing mode of intrinsics."""
    float_center: List[bool] = field(default_factory=lambda: [False])
    float_focus: List[bool] = field(default_factory=lambda: [False])
    float_distortion: List[bool] = field(default_factory=lambda: [False])
    center_shared: bool = True
    focus_shared: bool = True
    distortion_shared: bool = True
    share_intrinsics_per_sensor: bool = False
    cam2sensor: List[int] = field(default_factory=list)
    num_sensors: int = 0

    def sensor_of(self, cam_index: int) -> int:
        """Index into the float flags for the given camera."""
        if self.share_intrinsics_per_sensor:
            return self.cam2sensor[cam_index]
        return 0

    def float_any(self) -> bool:
        return any(self.float_center) or any(self.float_focus) or any(self.float_distortion)


def replace_separators_with_space(text: str) -> str:
    return _SEPARATORS.sub(' ', text)


def is_str_non_neg_integer(text: str) -> bool:
    return text.isdigit() and text.isascii()


def _apply_token(token: str, sensor_id: int, float_center, float_focus, float_distortion) -> None:
    if token == 'optical_center':
        float_center[sensor_id] = True
    elif token == 'focal_length':
        float_focus[sensor_id] = True
    elif token in ('other_intrinsics', 'distortion'):
        float_distortion[sensor_id] = True
    elif token == 'all':
        float_center[sensor_id] = True
        float_focus[sensor_id] = True
        float_distortion[sensor_id] = True
    elif token != 'none':
        raise ConfigurationError(
            f"Found unknown option when parsing which sensor intrinsics to float: {token}")


def fine_grained_parse(share_intrinsics_per_sensor: bool, num_sensors: int,
                       options: List[str]) -> Tuple[List[bool], List[bool], List[bool]]:
    """
    Parse "1 focal_length optical_center 2 all 3 none" (separators already removed).

    Returns:
        Tuple (float_center, float_focus, float_distortion), one entry per sensor
    """
    if not share_intrinsics_per_sensor:
        raise ConfigurationError(
            "Per-sensor intrinsics to float can be set only when intrinsics are "
            "optimized per sensor")
    if num_sensors <= 0:
        raise ConfigurationError("Expecting a positive number of sensors")
    if not options:
        raise ConfigurationError("Expecting at least one option")
    if not is_str_non_neg_integer(options[0]):
        raise ConfigurationError(f"Expecting an integer as the first option, got: {options[0]}")

    float_center = [False] * num_sensors
    float_focus = [False] * num_sensors
    float_distortion = [False] * num_sensors

    sensor_id = 0
    seen = set()
    for token in options:
        if is_str_non_neg_integer(token):
            sensor_id = int(token) - 1
            if sensor_id < 0 or sensor_id >= num_sensors:
                raise ConfigurationError(f"Sensor id {token} is out of bounds")
            if sensor_id in seen:
                raise ConfigurationError(f"Sensor id {token} is repeated")
            seen.add(sensor_id)
            continue
        _apply_token(token, sensor_id, float_center, float_focus, float_distortion)

    return float_center, float_focus, float_distortion


def coarse_grained_parse(num_sensors: int,
                         options: List[str]) -> Tuple[List[bool], List[bool], List[bool]]:
    """
    Parse "focal_length optical_center other_intrinsics", the same for every sensor.

    Returns:
        Tuple (float_center, float_focus, float_distortion), with max(num_sensors, 1) entries
    """
    if num_sensors < 0:
        raise ConfigurationError("Cameras were not parsed correctly")
    if options and is_str_non_neg_integer(options[0]):
        raise ConfigurationError(
            "When parsing intrinsics to float, expecting a string, not an integer")

    size = max(num_sensors, 1)
    float_center = [False] * size
    float_focus = [False] * size
    float_distortion = [False] * size
    for token in options:
        _apply_token(token, 0, float_center, float_focus, float_distortion)

    for sensor_id in range(1, size):
        float_center[sensor_id] = float_center[0]
        float_focus[sensor_id] = float_focus[0]
        float_distortion[sensor_id] = float_distortion[0]
    return float_center, float_focus, float_distortion


def _flags(vals: List[bool]) -> str:
    return ' '.join(str(int(v)) for v in vals)


def load_intrinsics_options(solve_intrinsics: bool,
                            intrinsics_to_float: str = '',
                            intrinsics_to_share: Optional[str] = None,
                            opts: Optional[IntrinsicOptions] = None) -> IntrinsicOptions:
    """
    Fill the float and share flags of the intrinsics options.

    Args:
        solve_intrinsics: Whether intrinsics are optimized at all
        intrinsics_to_float: Coarse or fine grammar. Empty or "all" floats everything.
        intrinsics_to_share: None if not specified, which shares everything.
            "none" or "" share nothing.
        opts: Options with the sensor layout already set (see read_image_cam_lists)

    Returns:
        The updated options
    """
    if opts is None:
        opts = IntrinsicOptions()
    shared_is_specified = intrinsics_to_share is not None
    to_float = (intrinsics_to_float or '').lower()
    to_share = (intrinsics_to_share or '').lower()

    opts.center_shared = True
    opts.focus_shared = True
    opts.distortion_shared = True
    opts.float_center = [False]
    opts.float_focus = [False]
    opts.float_distortion = [False]

    if (to_float or to_share) and not solve_intrinsics:
        raise ConfigurationError(
            "To be able to specify only certain intrinsics, solve_intrinsics must be on")
    if not solve_intrinsics:
        return opts

    if to_float in ('', 'all'):
        to_float = ALL_INTRINSICS
    if to_float == 'none':
        to_float = ''

    if not shared_is_specified or to_share == 'all':
        to_share = ALL_INTRINSICS
    if to_share == 'none':
        to_share = ''

    if opts.share_intrinsics_per_sensor and shared_is_specified:
        logger.warning("When sharing intrinsics per sensor, intrinsics_to_share is ignored. "
                       "The intrinsics will always be shared for a sensor and never "
                       "across sensors.")
    if shared_is_specified and not opts.share_intrinsics_per_sensor:
        opts.center_shared = False
        opts.focus_shared = False
        opts.distortion_shared = False

    float_options = replace_separators_with_space(to_float).split()
    if float_options and is_str_non_neg_integer(float_options[0]):
        parsed = fine_grained_parse(opts.share_intrinsics_per_sensor, opts.num_sensors,
                                    float_options)
    else:
        parsed = coarse_grained_parse(opts.num_sensors, float_options)
    opts.float_center, opts.float_focus, opts.float_distortion = parsed

    if shared_is_specified and not opts.share_intrinsics_per_sensor:
        for token in replace_separators_with_space(to_share).split():
            if token == 'focal_length':
                opts.focus_shared = True
            elif token == 'optical_center':
                opts.center_shared = True
            elif token in ('other_intrinsics', 'distortion'):
                opts.distortion_shared = True
            else:
                raise ConfigurationError(f"Found unknown intrinsic to share: {token}")

    log_intrinsics_options(opts)
    return opts


def log_intrinsics_options(opts: IntrinsicOptions) -> None:
    if opts.share_intrinsics_per_sensor:
        logger.info("Intrinsics are shared for all cameras with given sensor.")
        logger.info(f"Number of sensors: {opts.num_sensors}")
        logger.info("For each sensor (1 = floated, 0 = not floated):")
        logger.info(f"Optical center: {_flags(opts.float_center)}")
        logger.info(f"Focal length: {_flags(opts.float_focus)}")
        logger.info(f"Other intrinsics (distortion): {_flags(opts.float_distortion)}")
        mode = 'per sensor'
    else:
        logger.info("Intrinsics are shared for all or no cameras (1 = floated, 0 = not floated).")
        logger.info(f"Optical center: {int(opts.float_center[0])}")
        logger.info(f"Focal length: {int(opts.float_focus[0])}")
        logger.info(f"Other intrinsics (distortion): {int(opts.float_distortion[0])}")
        mode = 'across sensors'

    logger.info("Sharing (1 = shared, 0 = not shared):")
    logger.info(f"Optical center ({mode}): {int(opts.center_shared)}")
    logger.info(f"Focal length ({mode}): {int(opts.focus_shared)}")
    logger.info(f"Other intrinsics (distortion) ({mode}): {int(opts.distortion_shared)}")


def parse_intrinsics_limits(text: str) -> List[float]:
    """
    Parse "min max min max ..." limits on intrinsics multipliers.

    Raises:
        ConfigurationError: on an odd count, a non-number, or min > max
    """
    try:
        limits = [float(v) for v in (text or '').split()]
    except ValueError as e:
        raise ConfigurationError(f"Invalid intrinsics limits '{text}': {e}") from None
    if len(limits) % 2 != 0:
        raise ConfigurationError("Intrinsic limits must always be provided in min max pairs")
    for lo, hi in zip(limits[0::2], limits[1::2]):
        if hi < lo:
            raise ConfigurationError(f"Intrinsic limit pairs must be min before max: {lo} {hi}")
    return limits


def distortion_sanity_check(num_dist_params: List[int], opts: IntrinsicOptions,
                            intrinsics_limits: List[float]) -> None:
    """
    Cameras sharing distortion must have the same number of distortion parameters.

    Raises:
        ConfigurationError: if the sizes of shared distortion vectors disagree
    """
    if not opts.share_intrinsics_per_sensor and opts.distortion_shared:
        if any(n != num_dist_params[0] for n in num_dist_params[1:]):
            raise ConfigurationError(
                "When sharing distortion parameters, they must have the same size")

    if opts.share_intrinsics_per_sensor:
        sizes = [set() for _ in range(opts.num_sensors)]
        for cam_index, num in enumerate(num_dist_params):
            sizes[opts.cam2sensor[cam_index]].add(num)
        for sensor_id, found in enumerate(sizes):
            if len(found) != 1:
                raise ConfigurationError(
                    "When sharing distortion parameters per sensor, they must have the same "
                    f"size for all cameras of the same sensor (sensor {sensor_id + 1}: "
                    f"{sorted(found)})")

    if intrinsics_limits and any(n != num_dist_params[0] for n in num_dist_params[1:]):
        raise ConfigurationError(
            "When using intrinsics limits, all cameras must have the same number of "
            "distortion coefficients")


def read_list(path) -> List[str]:
    """Read whitespace-separated entries from a list file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"List file not found: {path}")
    with open(path, 'r') as f:
        return f.read().split()


def read_image_cam_lists(image_list: str, camera_list: str,
                         opts: IntrinsicOptions) -> Tuple[List[str], List[str]]:
    """
    Read image and camera lists.

    Several comma-separated lists, one per sensor, turn on sharing
    intrinsics per sensor and fill the camera to sensor map.

    Returns:
        Tuple (image files, camera files)
    """
    opts.share_intrinsics_per_sensor = False
    opts.cam2sensor = []
    opts.num_sensors = 0

    if ',' not in image_list and ',' not in camera_list:
        images = read_list(image_list)
        if not camera_list:
            logger.info("An image list was provided but not a camera list.")
            return images, []
        cameras = read_list(camera_list)
        if len(images) != len(cameras):
            raise ConfigurationError("Expecting the same number of images and cameras")
        return images, cameras

    logger.info("Multiple image lists and camera lists were passed in. "
                "Solving for intrinsics per sensor.")
    opts.share_intrinsics_per_sensor = True

    image_lists = image_list.split(',')
    camera_lists = camera_list.split(',')
    if len(image_lists) != len(camera_lists):
        raise ConfigurationError("Expecting the same number of image and camera lists")

    images, cameras = [], []
    for sensor_id, (img_list, cam_list) in enumerate(zip(image_lists, camera_lists)):
        local_images = read_list(img_list)
        local_cameras = read_list(cam_list)
        if len(local_images) != len(local_cameras) or not local_images:
            raise ConfigurationError(
                "Expecting the same positive number of images and cameras in lists: "
                f"'{img_list}' and '{cam_list}'")
        images.extend(local_images)
        cameras.extend(local_cameras)
        opts.cam2sensor.extend([sensor_id] * len(local_cameras))

    opts.num_sensors = len(image_lists)
    logger.info(f"Number of sensors: {opts.num_sensors}")
    return images, cameras
