"""
Lens distortion models.

All models act on normalized image coordinates (x/z, y/z). The model is
chosen by a distortion type tag whose coefficient count is fixed:

    none     0 coefficients
    fov      1 coefficient   (field-of-view model, w)
    fisheye  4 coefficients  (k1, k2, k3, k4 on the incidence angle)
    radtan   4 or 5          (k1, k2, p1, p2 [, k3], OpenCV convention)
    rpc      more than 5     (rational polynomial, 4n - 2 values for n monomials)
"""

from enum import Enum
from typing import Tuple
import logging

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class DistortionType(str, Enum):
    NONE = 'none'
    FOV = 'fov'
    FISHEYE = 'fisheye'
    RADTAN = 'radtan'
    RPC = 'rpc'

    @classmethod
    def parse(cls, name: str) -> "DistortionType":
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown distortion type: {name}") from None


def check_distortion_count(num_coeffs: int, dist_type: DistortionType, tag: str = '') -> DistortionType:
    """
    Validate that the number of coefficients matches the distortion type.

    For backward compatibility, 'fisheye' with a single coefficient is
    interpreted as the FOV model.

    Returns:
        The (possibly corrected) distortion type
    """
    where = f" ({tag})" if tag else ''
    if num_coeffs not in (0, 1, 4) and num_coeffs < 5:
        raise ConfigurationError(
            f"Expecting 0, 1, 4, 5, or more distortion coefficients{where}, got {num_coeffs}")

    if num_coeffs == 1 and dist_type == DistortionType.FISHEYE:
        dist_type = DistortionType.FOV

    if num_coeffs == 0 and dist_type != DistortionType.NONE:
        raise ConfigurationError(
            f"When there are no distortion coefficients, distortion type must be: none{where}")
    if num_coeffs == 1 and dist_type != DistortionType.FOV:
        raise ConfigurationError(
            f"When there is 1 distortion coefficient, distortion type must be: fov{where}")
    if num_coeffs == 4 and dist_type not in (DistortionType.FISHEYE, DistortionType.RADTAN):
        raise ConfigurationError(
            f"When there are 4 distortion coefficients, distortion type must be: "
            f"fisheye or radtan{where}")
    if num_coeffs == 5 and dist_type != DistortionType.RADTAN:
        raise ConfigurationError(
            f"When there are 5 distortion coefficients, distortion type must be: radtan{where}")
    if num_coeffs > 5 and dist_type != DistortionType.RPC:
        raise ConfigurationError(
            f"When there are more than 5 distortion coefficients, distortion type must be: "
            f"rpc{where}")

    return dist_type


class LensDistortion:
    """Base class. Subclasses implement _distort() on normalized coordinates."""

    dist_type = DistortionType.NONE
    num_params = 0

    def __init__(self, params=()):
        params = np.asarray(params, dtype=np.float64).ravel()
        self._check_size(params.size)
        self._params = params.copy()

    def _check_size(self, size: int) -> None:
        if size != self.num_params:
            raise ConfigurationError(
                f"Distortion model '{self.dist_type.value}' expects {self.num_params} "
                f"coefficients, got {size}")

    @property
    def name(self) -> str:
        return self.dist_type.value

    def distortion_parameters(self) -> np.ndarray:
        return self._params.copy()

    def set_distortion_parameters(self, params) -> None:
        params = np.asarray(params, dtype=np.float64).ravel()
        self._check_size(params.size)
        self._params = params.copy()

    def copy(self) -> "LensDistortion":
        return type(self)(self._params)

    def distort(self, x: float, y: float) -> Tuple[float, float]:
        return self._distort(x, y)

    def _distort(self, x: float, y: float) -> Tuple[float, float]:
        return x, y

    def undistort(
        self,
        x_dist: float,
        y_dist: float,
        max_iterations: int = 20,
        tolerance: float = 1e-12,
    ) -> Tuple[float, float]:
        """
        Remove distortion by fixed-point iteration.

        Args:
            x_dist, y_dist: Distorted normalized coordinates
            max_iterations: Maximum iterations for convergence
            tolerance: Convergence tolerance

        Returns:
            Undistorted normalized coordinates
        """
        x_norm, y_norm = x_dist, y_dist
        for _ in range(max_iterations):
            x_curr, y_curr = self._distort(x_norm, y_norm)
            dx = x_dist - x_curr
            dy = y_dist - y_curr
            if abs(dx) < tolerance and abs(dy) < tolerance:
                break
            x_norm += dx
            y_norm += dy
        return x_norm, y_norm

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._params.tolist()})"


class NoDistortion(LensDistortion):
    dist_type = DistortionType.NONE
    num_params = 0


class FovDistortion(LensDistortion):
    """Field-of-view model with a single parameter w."""

    dist_type = DistortionType.FOV
    num_params = 1

    def _distort(self, x, y):
        w = self._params[0]
        r = np.hypot(x, y)
        if r < 1e-12 or abs(w) < 1e-12:
            return x, y
        rd = np.arctan(2.0 * r * np.tan(w / 2.0)) / w
        return x * rd / r, y * rd / r


class FisheyeDistortion(LensDistortion):
    """Equidistant fisheye model with 4 polynomial terms on the incidence angle."""

    dist_type = DistortionType.FISHEYE
    num_params = 4

    def _distort(self, x, y):
        k1, k2, k3, k4 = self._params
        r = np.hypot(x, y)
        if r < 1e-12:
            return x, y
        theta = np.arctan(r)
        t2 = theta * theta
        theta_d = theta * (1 + k1 * t2 + k2 * t2 ** 2 + k3 * t2 ** 3 + k4 * t2 ** 4)
        return x * theta_d / r, y * theta_d / r


class RadTanDistortion(LensDistortion):
    """
    Radial-tangential (Brown-Conrady) model, OpenCV coefficient order.

    Distortion equations (applied to normalized coordinates x', y'):
        r² = x'² + y'²
        x'' = x'(1 + k1*r² + k2*r⁴ + k3*r⁶) + 2*p1*x'*y' + p2*(r² + 2*x'²)
        y'' = y'(1 + k1*r² + k2*r⁴ + k3*r⁶) + p1*(r² + 2*y'²) + 2*p2*x'*y'
    """

    dist_type = DistortionType.RADTAN

    def _check_size(self, size: int) -> None:
        if size not in (4, 5):
            raise ConfigurationError(
                f"Distortion model 'radtan' expects 4 or 5 coefficients, got {size}")

    @property
    def num_params(self):
        return self._params.size

    def _distort(self, x, y):
        k1, k2, p1, p2 = self._params[:4]
        k3 = self._params[4] if self._params.size > 4 else 0.0
        r2 = x * x + y * y
        radial = 1 + k1 * r2 + k2 * r2 ** 2 + k3 * r2 ** 3
        x_tangential = 2 * p1 * x * y + p2 * (r2 + 2 * x * x)
        y_tangential = p1 * (r2 + 2 * y * y) + 2 * p2 * x * y
        return x * radial + x_tangential, y * radial + y_tangential


def _rpc_num_terms(num_params: int) -> int:
    """Number of monomials n such that 4n - 2 == num_params, or 0 if none."""
    if (num_params + 2) % 4 != 0:
        return 0
    n = (num_params + 2) // 4
    # n must be a triangular number (d + 1)(d + 2) / 2 for some degree d >= 1
    d = 1
    while (d + 1) * (d + 2) // 2 < n:
        d += 1
    return n if (d + 1) * (d + 2) // 2 == n else 0


def _monomials(x: float, y: float, n: int) -> np.ndarray:
    vals = []
    degree = 0
    while len(vals) < n:
        for i in range(degree, -1, -1):
            vals.append(x ** i * y ** (degree - i))
        degree += 1
    return np.array(vals[:n])


class RpcDistortion(LensDistortion):
    """
    Rational polynomial distortion.

    Coefficients are laid out as [num_x (n), den_x (n-1), num_y (n), den_y (n-1)],
    the denominators' constant term being fixed to 1.
    """

    dist_type = DistortionType.RPC

    def _check_size(self, size: int) -> None:
        if size <= 5 or _rpc_num_terms(size) == 0:
            raise ConfigurationError(
                f"Distortion model 'rpc' expects 4n - 2 coefficients for a full "
                f"polynomial with n terms, got {size}")

    @property
    def num_params(self):
        return self._params.size

    @classmethod
    def identity(cls, degree: int = 1) -> "RpcDistortion":
        n = (degree + 1) * (degree + 2) // 2
        params = np.zeros(4 * n - 2)
        params[1] = 1.0                  # x in num_x
        params[n + (n - 1) + 2] = 1.0    # y in num_y
        return cls(params)

    def _distort(self, x, y):
        n = _rpc_num_terms(self._params.size)
        m = _monomials(x, y, n)
        p = self._params
        num_x = p[:n]
        den_x = np.concatenate([[1.0], p[n:2 * n - 1]])
        num_y = p[2 * n - 1:3 * n - 1]
        den_y = np.concatenate([[1.0], p[3 * n - 1:]])
        dx = den_x @ m
        dy = den_y @ m
        if dx == 0 or dy == 0:
            return x, y
        return (num_x @ m) / dx, (num_y @ m) / dy


_MODELS = {
    DistortionType.NONE: NoDistortion,
    DistortionType.FOV: FovDistortion,
    DistortionType.FISHEYE: FisheyeDistortion,
    DistortionType.RADTAN: RadTanDistortion,
    DistortionType.RPC: RpcDistortion,
}


def make_distortion(dist_type, params=()) -> LensDistortion:
    """Create a lens distortion model from a type tag (or its name) and coefficients."""
    if not isinstance(dist_type, DistortionType):
        dist_type = DistortionType.parse(dist_type)
    params = np.asarray(params, dtype=np.float64).ravel()
    dist_type = check_distortion_count(params.size, dist_type)
    return _MODELS[dist_type](params)
