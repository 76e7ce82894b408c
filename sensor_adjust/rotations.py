"""
Rotation helpers.

All quaternions are stored in (x, y, z, w) order, which is both the scipy
and the CSM convention. Rotation matrices map camera coordinates to world
(ECEF) coordinates unless stated otherwise.
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy

c = np.cos
s = np.sin


def R1(r):
    """
    Rotation matrix around the x-axis, r in radians
    """
    return np.array([[1,    0,     0],
                     [0, c(r), -s(r)],
                     [0, s(r),  c(r)]])


def R2(p):
    """
    Rotation matrix around the y-axis, p in radians
    """
    return np.array([[ c(p), 0, s(p)],
                     [    0, 1,    0],
                     [-s(p), 0, c(p)]])


def R3(y):
    """
    Rotation matrix around the z-axis, y in radians
    """
    return np.array([[c(y), -s(y), 0],
                     [s(y),  c(y), 0],
                     [   0,     0, 1]])


def quaternion_to_matrix(q) -> np.ndarray:
    """Quaternion (x, y, z, w) to rotation matrix. The input need not be normalized."""
    return R_scipy.from_quat(np.asarray(q, dtype=np.float64)).as_matrix()


def matrix_to_quaternion(R) -> np.ndarray:
    """Rotation matrix to unit quaternion (x, y, z, w)."""
    return R_scipy.from_matrix(np.asarray(R, dtype=np.float64)).as_quat()


def axis_angle_to_matrix(v) -> np.ndarray:
    return R_scipy.from_rotvec(np.asarray(v, dtype=np.float64)).as_matrix()


def matrix_to_axis_angle(R) -> np.ndarray:
    return R_scipy.from_matrix(np.asarray(R, dtype=np.float64)).as_rotvec()


def normalize_quaternion(q) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm == 0:
        raise ValueError("Cannot normalize a zero quaternion")
    return q / norm


def roll_pitch_yaw(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """
    Rotation matrix from roll, pitch, yaw in degrees.

    Intrinsic x-y-z composition: R = R1(roll) @ R2(pitch) @ R3(yaw).
    """
    return R1(np.deg2rad(roll)) @ R2(np.deg2rad(pitch)) @ R3(np.deg2rad(yaw))


def roll_pitch_yaw_from_rotation_matrix(R):
    """
    Inverse of roll_pitch_yaw().

    Returns:
        Tuple (roll, pitch, yaw) in degrees
    """
    roll, pitch, yaw = R_scipy.from_matrix(np.asarray(R, dtype=np.float64)).as_euler(
        'XYZ', degrees=True)
    return roll, pitch, yaw


def wrap_half_turn(angle):
    """
    Remove the +/- 180 degree ambiguity of an angle in degrees.

    Ties at exact odd multiples of 90 degrees follow numpy's
    round-half-to-even rule.
    """
    return angle - 180.0 * np.round(angle / 180.0)


def rotation_xy() -> np.ndarray:
    """90 degree in-camera rotation, taking camera x to y and y to -x."""
    return np.round(R3(np.pi / 2.0))


def assemble_cam2world_matrix(along, across, down) -> np.ndarray:
    """Rotation matrix whose columns are the along, across, and down directions."""
    M = np.zeros((3, 3))
    M[:, 0] = along
    M[:, 1] = across
    M[:, 2] = down
    return M


def vec_to_affine(vals) -> np.ndarray:
    """
    Form a 4x4 affine transform from 12 values.

    The first 9 values are the row-major linear part, the last 3 the translation.
    """
    vals = np.asarray(vals, dtype=np.float64).ravel()
    if vals.size != 12:
        raise ValueError(f"An affine transform must have 12 parameters, got {vals.size}")
    M = np.eye(4)
    M[:3, :3] = vals[:9].reshape(3, 3)
    M[:3, 3] = vals[9:]
    return M


def affine_to_vec(M) -> np.ndarray:
    """Inverse of vec_to_affine()."""
    M = np.asarray(M, dtype=np.float64)
    return np.concatenate([M[:3, :3].ravel(), M[:3, 3]])


def decompose_similarity(M):
    """
    Split a 4x4 similarity transform into rotation, translation, and scale.

    The scale is the cube root of the determinant of the linear part.

    Returns:
        Tuple (R, T, scale)
    """
    M = np.asarray(M, dtype=np.float64)
    linear = M[:3, :3]
    scale = float(np.cbrt(np.linalg.det(linear)))
    if scale == 0:
        raise ValueError("Degenerate transform with zero determinant")
    return linear / scale, M[:3, 3].copy(), scale


def is_rotation_matrix(R, tol: float = 1e-6) -> bool:
    """Whether R is a 3x3 orthonormal matrix with determinant +1, within tol."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        return False
    return bool(np.allclose(R.T @ R, np.eye(3), atol=tol) and abs(np.linalg.det(R) - 1.0) <= tol)
