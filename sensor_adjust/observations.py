"""
Readers for triangulated points and their pixel observations.

Point CSV Format:
    point_id, x, y, z (ECEF in meters)

Observation CSV Format:
    point_id, camera_index, x, y[, weight]

Lines starting with '#' and a header line are skipped.
"""

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple
import logging

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """A pixel observation of a triangulated point in one camera."""
    point_index: int
    camera_index: int
    pixel: np.ndarray  # (x, y), origin at the top-left pixel
    weight: float = 1.0


def _rows(path) -> List[Tuple[int, List[str]]]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    rows = []
    with open(path, 'r', newline='') as f:
        for line_num, row in enumerate(csv.reader(f), start=1):
            row = [v.strip() for v in row]
            if not row or not row[0] or row[0].startswith('#'):
                continue
            rows.append((line_num, row))
    # Header
    if rows:
        try:
            float(rows[0][1][1])
        except (IndexError, ValueError):
            rows = rows[1:]
    return rows


def read_points_csv(path) -> Tuple[List[str], np.ndarray]:
    """
    Read triangulated points.

    Returns:
        Tuple (point ids, (N, 3) array of ECEF coordinates)
    """
    logger.info(f"Reading: {path}")
    ids, xyz = [], []
    for line_num, row in _rows(path):
        if len(row) < 4:
            raise ConfigurationError(f"{path}:{line_num}: expecting point_id, x, y, z")
        try:
            xyz.append([float(v) for v in row[1:4]])
        except ValueError as e:
            raise ConfigurationError(f"{path}:{line_num}: {e}") from None
        ids.append(row[0])

    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate point ids in {path}")
    logger.info(f"Loaded {len(ids)} points")
    return ids, np.array(xyz, dtype=np.float64).reshape(-1, 3)


def read_observations_csv(path, point_ids: List[str], num_cameras: int) -> List[Observation]:
    """
    Read pixel observations of known points.

    Raises:
        ConfigurationError: on an unknown point id or a camera index out of range
    """
    logger.info(f"Reading: {path}")
    index_of: Dict[str, int] = {pid: i for i, pid in enumerate(point_ids)}
    observations = []
    for line_num, row in _rows(path):
        if len(row) < 4:
            raise ConfigurationError(
                f"{path}:{line_num}: expecting point_id, camera_index, x, y[, weight]")
        if row[0] not in index_of:
            raise ConfigurationError(f"{path}:{line_num}: unknown point id {row[0]}")
        try:
            camera_index = int(row[1])
            pixel = np.array([float(row[2]), float(row[3])])
            weight = float(row[4]) if len(row) > 4 and row[4] else 1.0
        except ValueError as e:
            raise ConfigurationError(f"{path}:{line_num}: {e}") from None
        if camera_index < 0 or camera_index >= num_cameras:
            raise ConfigurationError(
                f"{path}:{line_num}: camera index {camera_index} out of range "
                f"[0, {num_cameras})")
        observations.append(Observation(index_of[row[0]], camera_index, pixel, weight))

    logger.info(f"Loaded {len(observations)} observations")
    return observations
