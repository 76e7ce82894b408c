"""
Generic least squares problem interface.

Residual blocks are registered against parameter blocks, which are
1-D numpy float64 views into caller-owned arrays (ParamStorage, or the
position and quaternion tables of a linescan camera). A block is
identified by its memory address, so two views of the same memory are
the same variable. After solving, the optimized values are written back
into the blocks in place.

LeastSquaresProblem is a small adapter over scipy.optimize.least_squares
with numeric derivatives and a sparse Jacobian pattern. Any object with
the methods of Problem can be used instead.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
import logging

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .errors import InvariantError

logger = logging.getLogger(__name__)


class CauchyLoss:
    """rho(s) = a^2 log(1 + s / a^2), s being the squared norm of a residual block."""

    def __init__(self, a: float):
        if a <= 0:
            raise ValueError(f"Robust threshold must be positive, got {a}")
        self.a = float(a)
        self._b = self.a * self.a

    def __call__(self, s: float) -> float:
        return self._b * np.log1p(s / self._b)

    def scale_residuals(self, residuals: np.ndarray) -> np.ndarray:
        """Scale a residual block so that its squared norm is rho(s)."""
        s = float(np.dot(residuals, residuals))
        if s == 0.0:
            return residuals
        return residuals * np.sqrt(self(s) / s)


class Problem(Protocol):
    def add_residual_block(self, cost_function, loss_function,
                           parameter_blocks: Sequence[np.ndarray]) -> None:
        ...

    def set_parameter_block_constant(self, block: np.ndarray) -> None:
        ...


@dataclass
class ResidualBlock:
    cost_function: object
    loss_function: Optional[CauchyLoss]
    parameter_blocks: List[np.ndarray]


def _block_key(block: np.ndarray) -> Tuple[int, int]:
    return block.__array_interface__['data'][0], block.size


class LeastSquaresProblem:
    """Residual blocks over parameter blocks, solved with scipy least_squares."""

    def __init__(self):
        self._blocks: Dict[Tuple[int, int], np.ndarray] = {}
        self._constant = set()
        self._lower: Dict[Tuple[Tuple[int, int], int], float] = {}
        self._upper: Dict[Tuple[Tuple[int, int], int], float] = {}
        self.residual_blocks: List[ResidualBlock] = []

    def _register(self, block) -> np.ndarray:
        if not isinstance(block, np.ndarray) or block.dtype != np.float64 or block.ndim != 1:
            raise InvariantError("Parameter blocks must be 1-D float64 numpy arrays")
        if not block.flags['C_CONTIGUOUS']:
            raise InvariantError("Parameter blocks must be contiguous")
        key = _block_key(block)
        return self._blocks.setdefault(key, block)

    def _known_key(self, block) -> Tuple[int, int]:
        key = _block_key(block)
        if key not in self._blocks:
            raise InvariantError("Parameter block was not added to the problem")
        return key

    def add_residual_block(self, cost_function, loss_function, parameter_blocks) -> None:
        sizes = list(cost_function.parameter_block_sizes)
        if len(sizes) != len(parameter_blocks):
            raise InvariantError(
                f"Expecting {len(sizes)} parameter blocks, got {len(parameter_blocks)}")
        blocks = []
        for size, block in zip(sizes, parameter_blocks):
            if block.size != size:
                raise InvariantError(f"Expecting a parameter block of size {size}, got {block.size}")
            blocks.append(self._register(block))
        self.residual_blocks.append(ResidualBlock(cost_function, loss_function, blocks))

    def has_parameter_block(self, block) -> bool:
        return _block_key(block) in self._blocks

    def set_parameter_block_constant(self, block) -> None:
        self._constant.add(self._known_key(block))

    def set_parameter_block_variable(self, block) -> None:
        self._constant.discard(self._known_key(block))

    def is_parameter_block_constant(self, block) -> bool:
        return self._known_key(block) in self._constant

    def set_parameter_lower_bound(self, block, index: int, value: float) -> None:
        self._lower[(self._known_key(block), index)] = value

    def set_parameter_upper_bound(self, block, index: int, value: float) -> None:
        self._upper[(self._known_key(block), index)] = value

    def num_parameter_blocks(self) -> int:
        return len(self._blocks)

    def num_residual_blocks(self) -> int:
        return len(self.residual_blocks)

    def num_residuals(self) -> int:
        return sum(rb.cost_function.num_residuals for rb in self.residual_blocks)

    def _free_layout(self) -> Dict[Tuple[int, int], int]:
        """Offset in the solver state of each free block."""
        layout = {}
        offset = 0
        for key, block in self._blocks.items():
            if key in self._constant:
                continue
            layout[key] = offset
            offset += block.size
        return layout

    def _gather(self, layout) -> np.ndarray:
        x = np.zeros(sum(self._blocks[k].size for k in layout))
        for key, offset in layout.items():
            block = self._blocks[key]
            x[offset:offset + block.size] = block
        return x

    def _scatter(self, x, layout) -> None:
        for key, offset in layout.items():
            block = self._blocks[key]
            block[:] = x[offset:offset + block.size]

    def evaluate(self) -> np.ndarray:
        """All residuals at the current parameter values, with robust losses applied."""
        out = np.zeros(self.num_residuals())
        start = 0
        for rb in self.residual_blocks:
            n = rb.cost_function.num_residuals
            residuals = np.zeros(n)
            if not rb.cost_function(rb.parameter_blocks, residuals):
                raise InvariantError(
                    f"Evaluation of {type(rb.cost_function).__name__} failed")
            if rb.loss_function is not None:
                residuals = rb.loss_function.scale_residuals(residuals)
            out[start:start + n] = residuals
            start += n
        return out

    def cost(self) -> float:
        r = self.evaluate()
        return 0.5 * float(np.dot(r, r))

    def _sparsity(self, layout, num_vars: int) -> lil_matrix:
        A = lil_matrix((self.num_residuals(), num_vars), dtype=int)
        row = 0
        for rb in self.residual_blocks:
            n = rb.cost_function.num_residuals
            for block in rb.parameter_blocks:
                offset = layout.get(_block_key(block))
                if offset is None:
                    continue
                A[row:row + n, offset:offset + block.size] = 1
            row += n
        return A

    def _bounds(self, layout, num_vars: int):
        lower = np.full(num_vars, -np.inf)
        upper = np.full(num_vars, np.inf)
        for (key, index), value in self._lower.items():
            if key in layout:
                lower[layout[key] + index] = value
        for (key, index), value in self._upper.items():
            if key in layout:
                upper[layout[key] + index] = value
        return lower, upper

    def solve(self, max_num_iterations: int = 100, function_tolerance: float = 1e-8,
              parameter_tolerance: float = 1e-8, verbose: int = 0):
        """
        Minimize the sum of squared residuals, writing the result into the blocks.

        Returns:
            scipy.optimize.OptimizeResult
        """
        layout = self._free_layout()
        x0 = self._gather(layout)
        if x0.size == 0 or not self.residual_blocks:
            logger.warning("Nothing to optimize")
            return None

        lower, upper = self._bounds(layout, x0.size)
        x0 = np.clip(x0, lower, upper)

        def fun(x):
            self._scatter(x, layout)
            return self.evaluate()

        initial_cost = 0.5 * float(np.sum(fun(x0) ** 2))
        logger.info(f"Solving: {len(layout)} parameter blocks, {x0.size} variables, "
                    f"{self.num_residuals()} residuals")
        result = least_squares(
            fun,
            x0,
            jac_sparsity=self._sparsity(layout, x0.size),
            bounds=(lower, upper),
            method='trf',
            x_scale='jac',
            ftol=function_tolerance,
            xtol=parameter_tolerance,
            max_nfev=max_num_iterations,
            verbose=verbose,
        )
        self._scatter(result.x, layout)
        logger.info(f"Initial cost: {initial_cost:.6g}, final cost: {result.cost:.6g}, "
                    f"status: {result.message}")
        return result
