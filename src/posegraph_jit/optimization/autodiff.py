# Copyright (c) 2025.
# This file is part of posegraph-jit, released under the MIT License.
"""
Residual-block wrappers for automatic differentiation.

This module is the registration layer between residual functors (such as
`slam.landmark_cost.LandmarkCostFunction2D`) and whatever builds the
optimization problem. A functor is any callable

    functor(block_0, block_1, ..., block_k) -> residual

written in JAX. Wrapping it in an `AutoDiffCostFunction` declares the
residual dimension and the size of every parameter block up front, and
provides:

    • evaluate(*blocks)
        Residual only.

    • evaluate_with_jacobians(*blocks)
        Residual plus one Jacobian per parameter block, each of shape
        (num_residuals, block_size).

    • as_factor_residual()
        Residual of the concatenated blocks, `r(x)`, as stacked by
        `core.factor_graph.FactorGraph`.

Differentiation
---------------
Forward mode (`jax.jacfwd`) propagates dual numbers through the functor,
which is cheap here because a landmark residual has few inputs (13) and few
outputs (6). Reverse mode (`jax.jacrev`) is available through the config.

Configuration
-------------
AutoDiffConfig
    - jit:  compile the residual and Jacobian functions with `jax.jit`
    - mode: "forward" or "reverse"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Sequence, Tuple

import jax
import jax.numpy as jnp

Functor = Callable[..., jnp.ndarray]

_JACOBIAN_MODES: Dict[str, Callable] = {
    "forward": jax.jacfwd,
    "reverse": jax.jacrev,
}


@dataclass(frozen=True)
class AutoDiffConfig:
    jit: bool = True
    mode: str = "forward"


@dataclass
class AutoDiffCostFunction:
    """
    A residual functor together with its declared dimensions.

    Usage:
        cost = AutoDiffCostFunction(functor, 6, (3, 3, 4, 3))
        r = cost(prev_pose, next_pose, landmark_rotation, landmark_translation)
        r, (J0, J1, J2, J3) = cost.evaluate_with_jacobians(...)
    """
    functor: Functor
    num_residuals: int
    parameter_block_sizes: Tuple[int, ...]
    cfg: AutoDiffConfig = field(default_factory=AutoDiffConfig)

    def __post_init__(self) -> None:
        if self.cfg.mode not in _JACOBIAN_MODES:
            raise ValueError(
                f"Unknown differentiation mode '{self.cfg.mode}', "
                f"expected one of {sorted(_JACOBIAN_MODES)}"
            )
        self.parameter_block_sizes = tuple(int(s) for s in self.parameter_block_sizes)

        functor = self.functor

        def residual_fn(*blocks):
            return functor(*blocks)

        argnums = tuple(range(len(self.parameter_block_sizes)))
        jacobian_fn = _JACOBIAN_MODES[self.cfg.mode](residual_fn, argnums=argnums)

        if self.cfg.jit:
            residual_fn = jax.jit(residual_fn)
            jacobian_fn = jax.jit(jacobian_fn)

        self._residual_fn = residual_fn
        self._jacobian_fn = jacobian_fn

    @property
    def num_parameters(self) -> int:
        return sum(self.parameter_block_sizes)

    def _check_blocks(self, blocks: Sequence) -> Tuple[jnp.ndarray, ...]:
        if len(blocks) != len(self.parameter_block_sizes):
            raise ValueError(
                f"Expected {len(self.parameter_block_sizes)} parameter blocks, "
                f"got {len(blocks)}"
            )
        arrays = tuple(jnp.asarray(b) for b in blocks)
        for i, (arr, size) in enumerate(zip(arrays, self.parameter_block_sizes)):
            if arr.shape != (size,):
                raise ValueError(
                    f"Parameter block {i} must have shape ({size},), got {arr.shape}"
                )
        return arrays

    def evaluate(self, *blocks) -> jnp.ndarray:
        return self._residual_fn(*self._check_blocks(blocks))

    __call__ = evaluate

    def evaluate_with_jacobians(
        self, *blocks
    ) -> Tuple[jnp.ndarray, Tuple[jnp.ndarray, ...]]:
        """Residual and d(residual)/d(block_i) for every block."""
        arrays = self._check_blocks(blocks)
        return self._residual_fn(*arrays), tuple(self._jacobian_fn(*arrays))

    def split(self, x: jnp.ndarray) -> Tuple[jnp.ndarray, ...]:
        """Split a stacked parameter vector into its blocks."""
        blocks = []
        offset = 0
        for size in self.parameter_block_sizes:
            blocks.append(x[offset:offset + size])
            offset += size
        return tuple(blocks)

    def as_factor_residual(self) -> Callable[[jnp.ndarray], jnp.ndarray]:
        """
        Residual of the stacked parameter vector, r(x) = functor(*split(x)).

        The functor is called directly (not the jitted wrapper) so the graph
        can trace it as part of its own fused residual.
        """
        functor = self.functor
        split = self.split

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            return functor(*split(x))

        return residual
