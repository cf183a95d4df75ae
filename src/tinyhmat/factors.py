"""
Dense renderings of the factors stored in a factorized block tree. These walk
the whole tree and build full matrices, so they should really only ever be used
for testing and debugging.
"""

from __future__ import annotations

__all__ = ["lower_factor", "upper_factor", "diagonal"]

import jax.numpy as jnp

from tinyhmat.helpers import JAXArray
from tinyhmat.node import Leaf, Node


def _leaf_lower(leaf: Leaf, method: str) -> JAXArray:
    data = leaf.data
    if method == "llt":
        return jnp.tril(data)
    l = jnp.tril(data, -1) + jnp.eye(data.shape[0], dtype=data.dtype)
    if method == "lu" and leaf.permutation is not None:
        # The leaf factorized its rows in permuted order
        l = jnp.zeros_like(l).at[leaf.permutation].set(l)
    return l


def _assemble(node: Node, method: str, lower: bool) -> JAXArray:
    if isinstance(node, Leaf):
        if lower:
            return _leaf_lower(node, method)
        return jnp.triu(node.data)

    rows = []
    for i in range(node.nr_child_row()):
        row = []
        for j in range(node.nr_child_col()):
            child = node.get(i, j)
            shape = (node.row_sizes[i], node.col_sizes[j])  # type: ignore
            if i == j:
                row.append(_assemble(child, method, lower))
            elif child is None or (i < j if lower else i > j):
                row.append(jnp.zeros(shape))
            else:
                row.append(child.to_dense())
        rows.append(row)
    return jnp.block(rows)


def lower_factor(node: Node, method: str) -> JAXArray:
    """The lower factor ``L`` of a factorized tree

    Args:
        node: The root of a tree factorized in place.
        method: One of ``"lu"``, ``"ldlt"`` or ``"llt"``, matching the
            factorization that was applied. For ``"lu"``, the row permutations
            of the diagonal leaves are folded into ``L`` so that
            ``lower_factor(...) @ upper_factor(...)`` reproduces the input.
    """
    if method not in ("lu", "ldlt", "llt"):
        raise ValueError(f"Unknown factorization: {method}")
    return _assemble(node, method, lower=True)


def upper_factor(node: Node) -> JAXArray:
    """The upper factor ``U`` of an LU-factorized tree"""
    return _assemble(node, "lu", lower=False)


def diagonal(node: Node) -> JAXArray:
    """The diagonal ``D`` of an LDLT-factorized tree"""
    return node.get_diag()
