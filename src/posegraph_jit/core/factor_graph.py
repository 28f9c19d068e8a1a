"""
Factor graph problem builder for posegraph-jit.

Parameter blocks (variables) and residual blocks (factors holding an
`optimization.autodiff.AutoDiffCostFunction`) are collected into one problem
and turned into fused JAX functions that an external optimizer can consume.

State layout
------------
Variables are laid out in ascending NodeId order in one flat vector. The
layout is described by a state index, NodeId -> slice.

Functions built
---------------
build_residual_function()
    Jitted `r(x) : ℝ^N → ℝ^M`, every residual block stacked in insertion
    order.

build_objective()
    Jitted `f(x) = ||r(x)||²`.

build_jacobian_function()
    Jitted `J(x) = dr/dx` of shape (M, N), forward mode.

Notes
-----
The graph only builds functions; it does not run an optimizer.
"""


from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Sequence, Tuple

import jax
import jax.numpy as jnp

from .types import NodeId, FactorId, Variable, Factor

logger = logging.getLogger(__name__)

StateIndex = Dict[NodeId, slice]


@dataclass
class FactorGraph:
    variables: Dict[NodeId, Variable] = field(default_factory=dict)
    factors: Dict[FactorId, Factor] = field(default_factory=dict)

    def add_variable(self, var: Variable) -> None:
        assert var.id not in self.variables
        self.variables[var.id] = var

    def _dim(self, nid: NodeId) -> int:
        return jnp.asarray(self.variables[nid].value).shape[0]

    def add_residual_block(self, cost_function, var_ids: Sequence[NodeId]) -> FactorId:
        """
        Attach a residual block to existing variables.

        `cost_function` must expose `parameter_block_sizes` and
        `as_factor_residual()` (see `AutoDiffCostFunction`). Variables are
        matched to parameter blocks by position.
        """
        var_ids = tuple(var_ids)
        sizes = tuple(cost_function.parameter_block_sizes)
        if len(var_ids) != len(sizes):
            raise ValueError(
                f"Residual block expects {len(sizes)} variables, got {len(var_ids)}"
            )
        for nid, size in zip(var_ids, sizes):
            if nid not in self.variables:
                raise ValueError(f"Unknown variable {nid}")
            if self._dim(nid) != size:
                raise ValueError(
                    f"Variable {nid} has dimension {self._dim(nid)}, residual block expects {size}"
                )

        fid = FactorId(len(self.factors))
        self.factors[fid] = Factor(id=fid, var_ids=var_ids, cost_function=cost_function)
        return fid

    # --- State layout ---

    def state_index(self) -> StateIndex:
        """NodeId -> slice of the flat state, in ascending NodeId order."""
        index: StateIndex = {}
        offset = 0
        for nid in sorted(self.variables):
            dim = self._dim(nid)
            index[nid] = slice(offset, offset + dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, StateIndex]:
        index = self.state_index()
        x = jnp.concatenate([jnp.asarray(self.variables[nid].value) for nid in index])
        return x, index

    @staticmethod
    def unpack_state(x: jnp.ndarray, index: StateIndex) -> Dict[NodeId, jnp.ndarray]:
        return {nid: x[sl] for nid, sl in index.items()}

    # --- Fused functions ---

    def _build_residual(self):
        # Layout and blocks are frozen at build time.
        index = self.state_index()
        blocks = [
            (tuple(index[nid] for nid in factor.var_ids), factor.cost_function.as_factor_residual())
            for factor in self.factors.values()
        ]
        logger.debug(
            "Built residual over %d variables and %d residual blocks",
            len(index), len(blocks),
        )

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            if not blocks:
                return jnp.zeros((0,), dtype=x.dtype)
            return jnp.concatenate([
                block_residual(jnp.concatenate([x[sl] for sl in slices]))
                for slices, block_residual in blocks
            ])

        return residual

    def build_residual_function(self):
        return jax.jit(self._build_residual())

    def build_objective(self):
        """Sum of squared residuals."""
        residual = self._build_residual()
        return jax.jit(lambda x: jnp.sum(jnp.square(residual(x))))

    def build_jacobian_function(self):
        """
        J(x) = dr/dx with shape (m, n).

        Forward mode is used: residual blocks have few parameters each.
        """
        return jax.jit(jax.jacfwd(self._build_residual()))
