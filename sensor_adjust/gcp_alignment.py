"""
Alignment of pinhole cameras to ground control points (GCP).

Cameras from structure from motion live in an arbitrary frame. Given GCP
with known ECEF positions and their pixels in the images, a similarity
transform takes the cameras to the frame of the GCP. Two methods:

    - multi: each GCP seen in two or more images is triangulated, and a
      3D similarity maps the triangulated points to the GCP.
    - mono: each GCP may be seen in one image only. Every camera seeing
      at least three GCP is fit to them on its own, the median change
      in distance between these cameras gives the scale, and a single
      similarity is refined against the GCP pixels of all cameras.

The resulting 4x4 matrix is used as the initial transform.

GCP observations use the same CSV layout as the point observations, with
the point ids of the GCP file.
"""

from collections import defaultdict
from itertools import combinations
from typing import Dict, List, Sequence, Tuple
import logging

import numpy as np
from scipy.optimize import least_squares

from .cost_functions import BIG_PIXEL_VALUE
from .errors import ConfigurationError, ProjectionError
from .observations import Observation
from .rotations import axis_angle_to_matrix, matrix_to_axis_angle

logger = logging.getLogger(__name__)

GCP_ALIGNMENT_METHODS = ('multi', 'mono')

# Fewer GCP than this cannot pin down a similarity
MIN_NUM_GOOD_GCP = 3

# Mean distance in meters beyond which the GCP are likely in the wrong place
MAX_GCP_DIST = 100000.0

# Beyond this radius in meters the points are taken to be ECEF
_MIN_ECEF_RADIUS = 1.0e6


def find_3d_similarity(points_in, points_out) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Least squares similarity mapping points_in to points_out (Umeyama, 1991).

    Args:
        points_in: (N, 3) array
        points_out: (N, 3) array, matching points_in row by row

    Returns:
        Tuple (R, T, scale) with points_out ~ scale * R @ p + T

    Raises:
        ConfigurationError: with fewer than MIN_NUM_GOOD_GCP points, or
            points that are all in one place
    """
    X = np.asarray(points_in, dtype=np.float64).reshape(-1, 3)
    Y = np.asarray(points_out, dtype=np.float64).reshape(-1, 3)
    if X.shape[0] != Y.shape[0] or X.shape[0] < MIN_NUM_GOOD_GCP:
        raise ConfigurationError(
            f"Need at least {MIN_NUM_GOOD_GCP} matching points to find a 3D transform, "
            f"got {min(X.shape[0], Y.shape[0])}")

    mu_x = X.mean(axis=0)
    mu_y = Y.mean(axis=0)
    Xc = X - mu_x
    Yc = Y - mu_y

    var_x = (Xc ** 2).sum() / X.shape[0]
    if var_x <= 0:
        raise ConfigurationError("Cannot find a 3D transform from coincident points")

    Sigma = (Yc.T @ Xc) / X.shape[0]
    U, D, Vt = np.linalg.svd(Sigma)
    S = np.eye(3)
    if np.linalg.det(U @ Vt) < 0:
        S[2, 2] = -1.0

    R = U @ S @ Vt
    scale = float((D * np.diag(S)).sum() / var_x)
    T = mu_y - scale * (R @ mu_x)
    return R, T, scale


def similarity_matrix(R, T, scale: float) -> np.ndarray:
    M = np.eye(4)
    M[:3, :3] = scale * np.asarray(R, dtype=np.float64)
    M[:3, 3] = T
    return M


def triangulate_point(cameras: Sequence, pixels: Sequence) -> np.ndarray:
    """
    Point closest to the rays of the given pixels, in the least squares sense.

    Raises:
        ProjectionError: with fewer than two rays, or rays that are parallel
    """
    if len(cameras) < 2:
        raise ProjectionError("Need at least two rays to triangulate")
    A = np.zeros((3, 3))
    b = np.zeros(3)
    for cam, pix in zip(cameras, pixels):
        d = cam.pixel_to_vector(pix)
        P = np.eye(3) - np.outer(d, d)
        A += P
        b += P @ cam.camera_center(pix)
    if np.linalg.cond(A) > 1e12:
        raise ProjectionError("Rays are parallel, cannot triangulate")
    return np.linalg.solve(A, b)


def check_gcp_dists(points, gcp_points) -> float:
    """
    Warn when the GCP are far from the other points. That usually means
    latitude and longitude were swapped, or the GCP belong to another site.

    Returns:
        The distance between the two means, or 0 if either set is empty
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    gcp_points = np.asarray(gcp_points, dtype=np.float64).reshape(-1, 3)
    if len(points) == 0 or len(gcp_points) == 0:
        return 0.0
    dist = float(np.linalg.norm(points.mean(axis=0) - gcp_points.mean(axis=0)))
    if dist > MAX_GCP_DIST:
        logger.warning(f"GCP are on average {dist:.1f} m from the triangulated points. "
                       f"Check if latitude and longitude are swapped in the GCP file.")
    return dist


def _pixels_by_point(observations: List[Observation]) -> Dict[int, List[Observation]]:
    by_point = defaultdict(list)
    for obs in observations:
        by_point[obs.point_index].append(obs)
    return by_point


def _pixels_by_camera(observations: List[Observation]) -> Dict[int, List[Observation]]:
    by_cam = defaultdict(list)
    for obs in observations:
        by_cam[obs.camera_index].append(obs)
    return by_cam


def align_to_gcp_multi(cameras: Sequence, gcp_xyz, observations: List[Observation]) -> np.ndarray:
    """
    Transform taking the cameras to the GCP frame, from the GCP seen in
    more than one image.

    Raises:
        ConfigurationError: if fewer than MIN_NUM_GOOD_GCP can be triangulated
    """
    gcp_xyz = np.asarray(gcp_xyz, dtype=np.float64).reshape(-1, 3)
    tri, good = [], []
    for ipt, obs_list in sorted(_pixels_by_point(observations).items()):
        if len(obs_list) < 2:
            continue
        try:
            tri.append(triangulate_point([cameras[o.camera_index] for o in obs_list],
                                         [o.pixel for o in obs_list]))
        except ProjectionError as e:
            logger.debug(f"Skipping GCP {ipt}: {e}")
            continue
        good.append(ipt)

    logger.info(f"Triangulated {len(good)} GCP")
    if len(good) < MIN_NUM_GOOD_GCP:
        raise ConfigurationError(
            f"For GCP alignment at least {MIN_NUM_GOOD_GCP} GCP must each be seen in at "
            f"least two images, found {len(good)}. Try the mono method.")

    check_gcp_dists(tri, gcp_xyz[good])
    R, T, scale = find_3d_similarity(tri, gcp_xyz[good])
    logger.info(f"Transform to GCP: scale {scale:.6g}, translation {T}")
    return similarity_matrix(R, T, scale)


def _up_direction(points: np.ndarray) -> np.ndarray:
    center = points.mean(axis=0)
    radius = np.linalg.norm(center)
    if radius > _MIN_ECEF_RADIUS:
        return center / radius
    return np.array([0.0, 0.0, 1.0])


def _reprojection_residuals(cam, xyz, pixels) -> np.ndarray:
    residuals = np.empty(2 * len(xyz))
    for i, (p, pix) in enumerate(zip(xyz, pixels)):
        try:
            residuals[2 * i:2 * i + 2] = cam.point_to_pixel(p) - pix
        except ProjectionError:
            residuals[2 * i:2 * i + 2] = BIG_PIXEL_VALUE
    return residuals


def fit_camera_to_xyz(camera, xyz, pixels):
    """
    Copy of a pinhole camera with its pose fit to known points, keeping
    the intrinsics.

    The camera starts above the points, at the height where their spread
    matches the spread of the rays, rotated to best align the rays with
    the points. Then the pose is refined by least squares.

    Raises:
        ConfigurationError: with fewer than MIN_NUM_GOOD_GCP points
    """
    xyz = np.asarray(xyz, dtype=np.float64).reshape(-1, 3)
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    if len(xyz) < MIN_NUM_GOOD_GCP:
        raise ConfigurationError(
            f"Need at least {MIN_NUM_GOOD_GCP} GCP to fit a camera, got {len(xyz)}")

    # Rays in the camera frame
    R0 = camera.camera_pose()
    rays = np.array([R0.T @ camera.pixel_to_vector(pix) for pix in pixels])

    span = max(np.linalg.norm(a - b) for a, b in combinations(xyz, 2))
    angle = max(np.arccos(np.clip(a @ b, -1.0, 1.0)) for a, b in combinations(rays, 2))
    height = span / max(angle, 1e-6)
    center = xyz.mean(axis=0) + height * _up_direction(xyz)

    dirs = xyz - center
    dirs /= np.linalg.norm(dirs, axis=1)[:, np.newaxis]
    U, _, Vt = np.linalg.svd(dirs.T @ rays)
    S = np.eye(3)
    if np.linalg.det(U @ Vt) < 0:
        S[2, 2] = -1.0
    rotation = U @ S @ Vt

    out = camera.copy()

    def residuals(params):
        out.set_camera_center(params[:3])
        out.set_camera_pose(axis_angle_to_matrix(params[3:]))
        return _reprojection_residuals(out, xyz, pixels)

    x0 = np.concatenate([center, matrix_to_axis_angle(rotation)])
    result = least_squares(residuals, x0, x_scale='jac', ftol=1e-12, xtol=1e-12,
                           max_nfev=2000)
    residuals(result.x)
    logger.debug(f"Camera fit to {len(xyz)} GCP, final cost {result.cost:.6g}")
    return out


def find_median_scale_change(sfm_cams: Sequence, aux_cams: Sequence) -> float:
    """
    Median, over pairs of cameras, of the ratio of the distance between
    the fitted cameras to the distance between the input ones.

    Raises:
        ConfigurationError: with fewer than two cameras
    """
    scales = []
    for i, j in combinations(range(len(sfm_cams)), 2):
        len1 = np.linalg.norm(sfm_cams[i].camera_center() - sfm_cams[j].camera_center())
        len2 = np.linalg.norm(aux_cams[i].camera_center() - aux_cams[j].camera_center())
        if len1 > 0:
            scales.append(len2 / len1)
    if not scales:
        raise ConfigurationError(
            f"Could not find two images with at least {MIN_NUM_GOOD_GCP} GCP each")
    return float(np.median(scales))


def _transform_to_vector(R, T, scale: float) -> np.ndarray:
    return np.concatenate([matrix_to_axis_angle(R), T, [np.log(scale)]])


def _vector_to_transform(params) -> Tuple[np.ndarray, np.ndarray, float]:
    return axis_angle_to_matrix(params[:3]), params[3:6], float(np.exp(params[6]))


def align_to_gcp_mono(cameras: Sequence, gcp_xyz, observations: List[Observation]) -> np.ndarray:
    """
    Transform taking the cameras to the GCP frame, when each GCP may be
    seen in a single image. At least two images must each see at least
    MIN_NUM_GOOD_GCP GCP.

    Raises:
        ConfigurationError: if not enough images see enough GCP
    """
    gcp_xyz = np.asarray(gcp_xyz, dtype=np.float64).reshape(-1, 3)
    by_cam = {icam: obs_list for icam, obs_list in sorted(_pixels_by_camera(observations).items())
              if len(obs_list) >= MIN_NUM_GOOD_GCP}
    if len(by_cam) < 2:
        raise ConfigurationError(
            f"For GCP alignment at least two images must each see at least "
            f"{MIN_NUM_GOOD_GCP} GCP, found {len(by_cam)}")

    sfm_cams = [cameras[icam] for icam in by_cam]
    xyz = [gcp_xyz[[o.point_index for o in obs_list]] for obs_list in by_cam.values()]
    pix = [np.array([o.pixel for o in obs_list]) for obs_list in by_cam.values()]

    # Individually fit cameras. They give the scale, not the transform.
    aux_cams = [fit_camera_to_xyz(cam, p, q) for cam, p, q in zip(sfm_cams, xyz, pix)]
    world_scale = find_median_scale_change(sfm_cams, aux_cams)
    logger.info(f"Initial guess of the scale to world coordinates: {world_scale:.6g}")

    # Where the GCP would be in the input frame
    points_in, points_out = [], []
    for sfm, aux, p, q in zip(sfm_cams, aux_cams, xyz, pix):
        for gcp, pixel in zip(p, q):
            dist = np.linalg.norm(aux.camera_center() - gcp) / world_scale
            points_in.append(sfm.camera_center() + dist * sfm.pixel_to_vector(pixel))
            points_out.append(gcp)
    check_gcp_dists(points_in, points_out)
    R, T, scale = find_3d_similarity(points_in, points_out)

    # Refine the single transform against the GCP pixels of all cameras
    def residuals(params):
        R, T, scale = _vector_to_transform(params)
        out = []
        for sfm, p, q in zip(sfm_cams, xyz, pix):
            cam = sfm.copy()
            cam.apply_transform(R, T, scale)
            out.append(_reprojection_residuals(cam, p, q))
        return np.concatenate(out)

    result = least_squares(residuals, _transform_to_vector(R, T, scale), x_scale='jac',
                           ftol=1e-12, xtol=1e-12, max_nfev=2000)
    R, T, scale = _vector_to_transform(result.x)
    logger.info(f"Transform to GCP: scale {scale:.6g}, translation {T}")
    return similarity_matrix(R, T, scale)


def align_to_gcp(method: str, cameras: Sequence, gcp_xyz,
                 observations: List[Observation]) -> np.ndarray:
    """Dispatch on the method, 'multi' or 'mono'."""
    if method == 'multi':
        return align_to_gcp_multi(cameras, gcp_xyz, observations)
    if method == 'mono':
        return align_to_gcp_mono(cameras, gcp_xyz, observations)
    raise ConfigurationError(f"Unknown GCP alignment method: {method}. "
                             f"Expecting one of: {', '.join(GCP_ALIGNMENT_METHODS)}")
