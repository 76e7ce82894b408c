"""
Satellite orbital frame.

The along-track and across-track directions of a satellite are found in a
projected coordinate system, where the orbit is nearly a straight line,
then carried over to ECEF by finite differences. With the down direction
they form the satellite-to-world rotation, and a camera on the satellite
is assumed to have

    cam2world = sat2world * roll_pitch_yaw * rotXY
"""

from typing import Tuple
import logging

import numpy as np
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError

from .errors import ConfigurationError
from .rotations import assemble_cam2world_matrix

logger = logging.getLogger(__name__)

ECEF_CRS = 'epsg:4978'
GEODETIC_CRS = 'epsg:4979'

# Step in projected coordinates for finite differences, in meters
SAT_SIM_DELTA = 0.001


class GeoReference:
    """ECEF to and from a projected coordinate system, with ellipsoidal height."""

    def __init__(self, crs):
        try:
            self.crs = CRS.from_user_input(crs)
        except CRSError as e:
            raise ConfigurationError(f"Invalid coordinate reference system '{crs}': {e}") from None
        crs_3d = self.crs.to_3d()
        self._ecef_to_proj = Transformer.from_crs(ECEF_CRS, crs_3d, always_xy=True)
        self._proj_to_ecef = Transformer.from_crs(crs_3d, ECEF_CRS, always_xy=True)

    def ecef_to_proj(self, xyz) -> np.ndarray:
        return np.array(self._ecef_to_proj.transform(*np.asarray(xyz, dtype=np.float64)))

    def proj_to_ecef(self, xyz) -> np.ndarray:
        return np.array(self._proj_to_ecef.transform(*np.asarray(xyz, dtype=np.float64)))


_ecef_to_geodetic = Transformer.from_crs(ECEF_CRS, GEODETIC_CRS, always_xy=True)


def ecef_to_geodetic(xyz) -> np.ndarray:
    """ECEF to (longitude, latitude, height above the WGS84 ellipsoid)."""
    return np.array(_ecef_to_geodetic.transform(*np.asarray(xyz, dtype=np.float64)))


def calc_proj_along_across(beg_proj, end_proj) -> Tuple[np.ndarray, np.ndarray]:
    """
    Along-track direction from the first to the last point, and the
    horizontal direction perpendicular to it, in projected coordinates.
    """
    along = np.asarray(end_proj, dtype=np.float64) - np.asarray(beg_proj, dtype=np.float64)
    along[2] = 0.0
    norm = np.linalg.norm(along)
    if norm == 0:
        raise ConfigurationError("Cannot find the along-track direction of coincident positions")
    along /= norm
    across = np.cross(along, np.array([0.0, 0.0, 1.0]))
    across /= np.linalg.norm(across)
    return along, across


def calc_ecef_along_across(georef: GeoReference, delta: float, proj_along, proj_across,
                           proj_origin) -> Tuple[np.ndarray, np.ndarray]:
    """Carry projected along and across directions at proj_origin over to ECEF."""
    proj_origin = np.asarray(proj_origin, dtype=np.float64)
    origin = georef.proj_to_ecef(proj_origin)
    along = georef.proj_to_ecef(proj_origin + delta * np.asarray(proj_along)) - origin
    across = georef.proj_to_ecef(proj_origin + delta * np.asarray(proj_across)) - origin
    along /= np.linalg.norm(along)

    # Make across exactly perpendicular to along
    across -= np.dot(across, along) * along
    across /= np.linalg.norm(across)
    return along, across


def satellite_to_world(positions, cur_pos: int, georef: GeoReference) -> np.ndarray:
    """
    Satellite-to-world rotation at a trajectory sample.

    The along-track direction is from the neighbors of the sample.

    Args:
        positions: (N, 3) ECEF positions
        cur_pos: Index of the sample
        georef: Projected coordinate system

    Raises:
        ConfigurationError: if cur_pos is out of range or there are fewer than 2 positions
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    num_pos = len(positions)
    if cur_pos < 0 or cur_pos >= num_pos:
        raise ConfigurationError(f"Position index {cur_pos} out of range [0, {num_pos})")
    beg_pos = max(0, cur_pos - 1)
    end_pos = min(num_pos - 1, cur_pos + 1)
    if beg_pos >= end_pos:
        raise ConfigurationError("Expecting at least 2 camera positions")

    beg_proj = georef.ecef_to_proj(positions[beg_pos])
    cur_proj = georef.ecef_to_proj(positions[cur_pos])
    end_proj = georef.ecef_to_proj(positions[end_pos])

    proj_along, proj_across = calc_proj_along_across(beg_proj, end_proj)
    along, across = calc_ecef_along_across(georef, SAT_SIM_DELTA, proj_along, proj_across,
                                           cur_proj)
    down = np.cross(along, across)
    down /= np.linalg.norm(down)
    return assemble_cam2world_matrix(along, across, down)
