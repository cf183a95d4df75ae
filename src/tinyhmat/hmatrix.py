"""
The user-facing hierarchical matrix: a block tree plus the cluster trees that
shaped it. Most users will only need :meth:`HMatrix.from_dense`,
:meth:`HMatrix.factorize` and :meth:`HMatrix.solve`.
"""

from __future__ import annotations

__all__ = ["HMatrix", "build_tree", "check_fill_in", "updated_blocks"]

import logging
from typing import Any

import jax.numpy as jnp
import numpy as np

from tinyhmat import factors
from tinyhmat.cluster import AdmissibilityCondition, ClusterTree
from tinyhmat.helpers import JAXArray
from tinyhmat.node import BlockNode, Leaf, Node
from tinyhmat.recursion import scratch_copy

logger = logging.getLogger(__name__)

METHODS = ("lu", "ldlt", "llt")


def _slice(a: JAXArray, rows: ClusterTree, cols: ClusterTree) -> JAXArray:
    r, c = rows.offset, cols.offset
    return a[r : r + rows.size, c : c + cols.size]


def _to_tree(x: JAXArray, tree: ClusterTree) -> JAXArray:
    return x[tree.indices]


def _from_tree(x: JAXArray, tree: ClusterTree) -> JAXArray:
    return jnp.zeros_like(x).at[tree.indices].set(x)


def _pattern(node: Node) -> np.ndarray:
    return np.array(
        [
            [node.get(i, j) is not None for j in range(node.nr_child_col())]
            for i in range(node.nr_child_row())
        ]
    )


def _has_nulls(node: Node) -> bool:
    if node.is_leaf():
        return False
    for i in range(node.nr_child_row()):
        for j in range(node.nr_child_col()):
            child = node.get(i, j)
            if child is None or _has_nulls(child):
                return True
    return False


def updated_blocks(pattern: np.ndarray, method: str) -> np.ndarray:
    """The grid positions written by the trailing updates of an elimination

    Args:
        pattern: A boolean grid, ``True`` where a child is present.
        method: ``"lu"``, ``"ldlt"``, ``"llt"`` or ``"inverse"``. The symmetric
            factorizations only update the lower triangle, and Gauss-Jordan
            inversion updates every block outside the pivot row and column.

    Returns:
        A boolean grid, ``True`` where some step ``k`` adds a product of two
        present blocks. A ``False`` entry of ``pattern`` that is ``True`` here
        is fill-in.
    """
    n, m = pattern.shape
    out = np.zeros((n, m), dtype=bool)
    for k in range(min(n, m)):
        for i in range(n):
            for j in range(m):
                if method == "inverse":
                    hit = i != k and j != k and pattern[i, k] and pattern[k, j]
                elif method == "lu":
                    hit = k < min(i, j) and pattern[i, k] and pattern[k, j]
                else:
                    hit = k < j <= i and pattern[i, k] and pattern[j, k]
                out[i, j] |= hit
    return out


def check_fill_in(node: Node, method: str) -> None:
    """Raise if eliminating ``node`` would write into a missing block

    Missing blocks are exact zeros that absorb nothing, so a missing block in
    a position that receives an update would silently drop that update.

    Raises:
        ValueError: If some missing block would be filled in.
    """
    if node.is_leaf():
        return
    pattern = _pattern(node)
    updated = updated_blocks(pattern, method)
    fill = np.argwhere(updated & ~pattern)
    if len(fill):
        i, j = fill[0]
        raise ValueError(
            f"Missing block ({i}, {j}) would be filled in by the {method} "
            "elimination; store it as an explicit zero block instead"
        )
    for i in range(node.nr_child_row()):
        for j in range(node.nr_child_col()):
            child = node.get(i, j)
            if child is None or (method in ("ldlt", "llt") and j > i):
                continue
            if i == j and not updated[i, i]:
                # Eliminated on its own, so only its inner pattern matters
                check_fill_in(child, method)
            elif _has_nulls(child):
                raise ValueError(
                    f"Block ({i}, {j}) is updated as a whole but has missing "
                    "blocks inside it"
                )


def build_tree(
    a: JAXArray,
    rows: ClusterTree,
    cols: ClusterTree,
    admissibility: AdmissibilityCondition | None = None,
    sparse: bool = False,
) -> Node:
    """Build the block tree of a matrix given in tree ordering

    Args:
        a: The full matrix, with rows and columns already permuted into the
            ordering of ``rows`` and ``cols``.
        rows: The row cluster tree.
        cols: The column cluster tree.
        admissibility: A condition under which a pair of clusters is kept as a
            single leaf. By default, blocks are split as far as the cluster
            trees go.
        sparse: If ``True``, off-diagonal blocks that are exactly zero are not
            stored, as long as the LU, LDLT and Cholesky eliminations never
            write into them. This only applies to diagonal blocks, where
            ``rows`` and ``cols`` are the same cluster. Inside blocks that
            receive updates everything is stored.
    """
    block = _slice(a, rows, cols)
    if (rows.is_leaf and cols.is_leaf) or (
        admissibility is not None and admissibility.is_admissible(rows, cols)
    ):
        return Leaf(block)

    row_children = rows.children or (rows,)
    col_children = cols.children or (cols,)
    sparse = sparse and rows is cols
    if sparse:
        nonzero = np.array(
            [
                [
                    i == j or bool(jnp.any(_slice(a, r, c)))
                    for j, c in enumerate(col_children)
                ]
                for i, r in enumerate(row_children)
            ]
        )
        # Symbolic elimination: grow the pattern until no update lands on a
        # missing block. The symmetric closure covers all three factorizations.
        keep = nonzero | nonzero.T
        while True:
            grown = keep | updated_blocks(keep, "lu")
            if (grown == keep).all():
                break
            keep = grown
        updated = updated_blocks(keep, "lu")

    children: list[list[Node | None]] = []
    for i, r in enumerate(row_children):
        row: list[Node | None] = []
        for j, c in enumerate(col_children):
            if sparse and not keep[i, j]:
                row.append(None)
            else:
                inner = sparse and i == j and not updated[i, i]
                row.append(build_tree(a, r, c, admissibility, inner))
        children.append(row)
    return BlockNode(
        children,
        row_sizes=[r.size for r in row_children],
        col_sizes=[c.size for c in col_children],
    )


class HMatrix:
    """A hierarchical matrix

    Args:
        root: The root of the block tree, in tree ordering.
        rows: The row cluster tree.
        cols: The column cluster tree.
    """

    def __init__(self, root: Node, rows: ClusterTree, cols: ClusterTree):
        if root.shape != (rows.size, cols.size):
            raise ValueError(
                f"The block tree has shape {root.shape} but the cluster trees "
                f"cover {(rows.size, cols.size)}"
            )
        self.root = root
        self.rows = rows
        self.cols = cols
        self.factorization: str | None = None

    @classmethod
    def from_dense(
        cls,
        a: Any,
        *,
        leaf_size: int = 64,
        points: Any | None = None,
        admissibility: AdmissibilityCondition | None = None,
        sparse: bool = False,
    ) -> HMatrix:
        """Build a square hierarchical matrix from a dense one

        Args:
            a (n, n): The matrix.
            leaf_size: The maximum size of a leaf cluster.
            points (n, ndim): Optional coordinates of the degrees of freedom. If
                given, the clusters are built by geometric bisection and the
                matrix is reordered accordingly; otherwise ``range(n)`` is
                bisected in place.
            admissibility: See :func:`build_tree`. This needs ``points``.
            sparse: See :func:`build_tree`.
        """
        a = jnp.asarray(a)
        if a.ndim != 2 or a.shape[0] != a.shape[1]:
            raise ValueError(f"Expected a square matrix, got shape {a.shape}")
        if points is None:
            if admissibility is not None:
                raise ValueError("An admissibility condition requires points")
            tree = ClusterTree.regular(a.shape[0], leaf_size)
        else:
            if len(points) != a.shape[0]:
                raise ValueError("There must be one point per row of the matrix")
            tree = ClusterTree.from_points(points, leaf_size)
        perm = tree.indices
        root = build_tree(a[perm][:, perm], tree, tree, admissibility, sparse)
        return cls(root, tree, tree)

    @property
    def shape(self) -> tuple[int, int]:
        return self.root.shape

    def _check_unfactorized(self) -> None:
        if self.factorization is not None:
            raise ValueError(
                f"This matrix has been overwritten by its {self.factorization} "
                "factorization"
            )

    def to_dense(self) -> JAXArray:
        """Render this matrix to a dense one in the original ordering"""
        self._check_unfactorized()
        x = self.root.to_dense()
        out = jnp.zeros_like(x)
        return out.at[np.ix_(self.rows.indices, self.cols.indices)].set(x)

    def copy(self) -> HMatrix:
        other = HMatrix(self.root.copy(), self.rows, self.cols)
        other.factorization = self.factorization
        return other

    def matmul(self, x: Any) -> JAXArray:
        """The product of this matrix with a dense vector or matrix"""
        self._check_unfactorized()
        x = jnp.asarray(x)
        rhs = _to_tree(x, self.cols).reshape(self.shape[1], -1)
        out = Leaf(jnp.zeros((self.shape[0], rhs.shape[1]), dtype=rhs.dtype))
        out.gemm("N", "N", 1.0, self.root, Leaf(rhs), 0.0)
        y = out.data.reshape((self.shape[0],) + x.shape[1:])
        return _from_tree(y, self.rows)

    def __matmul__(self, x: Any) -> JAXArray:
        return self.matmul(x)

    def factorize(self, method: str = "lu") -> HMatrix:
        """Factorize this matrix in place

        Args:
            method: ``"lu"`` for a general matrix, ``"ldlt"`` for a symmetric
                one, or ``"llt"`` (Cholesky) for a symmetric positive definite
                one. The symmetric factorizations only read the lower triangle.

        Raises:
            tinyhmat.dense.SingularBlockError: If a diagonal leaf is singular.
                The matrix is left in an unusable state.
            ValueError: If a missing block would be filled in. The matrix is
                left untouched.
        """
        if method not in METHODS:
            raise ValueError(f"Unknown factorization {method!r}")
        self._check_unfactorized()
        if self.shape[0] != self.shape[1]:
            raise ValueError("Only square matrices can be factorized")
        check_fill_in(self.root, method)
        logger.debug(
            "Starting %s factorization of a %dx%d matrix", method, *self.shape
        )
        self.factorization = method
        getattr(self.root, f"{method}_decomposition")()
        return self

    def inverse(self) -> HMatrix:
        """Replace this matrix by its inverse, in place

        Raises:
            ValueError: If a missing block would be filled in. Gauss-Jordan
                inversion fills in far more than the factorizations, so a
                sparse tree that factorizes fine may still be rejected here.
        """
        self._check_unfactorized()
        check_fill_in(self.root, "inverse")
        logger.debug("Starting inversion of a %dx%d matrix", *self.shape)
        self.factorization = "inverse"
        self.root.inverse()
        return self

    def solve(self, b: Any) -> JAXArray:
        """Solve ``A @ x = b`` for ``x`` using the factorization of ``A``

        Args:
            b (n, ...): A vector or matrix with leading dimension matching this
                matrix.
        """
        if self.factorization is None:
            raise ValueError("The matrix must be factorized or inverted first")
        b = jnp.asarray(b)
        logger.debug(
            "Solving with the %s of a %dx%d matrix", self.factorization, *self.shape
        )
        x = Leaf(_to_tree(b, self.rows).reshape(self.shape[0], -1))
        root = self.root
        if self.factorization == "inverse":
            with scratch_copy(x) as rhs:
                x.gemm("N", "N", 1.0, root, rhs, 0.0)
        elif self.factorization == "lu":
            root.solve_lower_triangular_left(x, unitriangular=True)
            root.solve_upper_triangular_left(x, unitriangular=False, lower_stored=False)
        elif self.factorization == "ldlt":
            root.solve_lower_triangular_left(x, unitriangular=True)
            x.multiply_with_diag(root, on_left=True, inverse=True)
            root.solve_upper_triangular_left(x, unitriangular=True, lower_stored=True)
        else:
            root.solve_lower_triangular_left(x, unitriangular=False)
            root.solve_upper_triangular_left(x, unitriangular=False, lower_stored=True)
        return _from_tree(x.data.reshape(b.shape), self.cols)

    def lower_factor(self) -> JAXArray:
        """The lower factor, densely and in tree ordering"""
        if self.factorization not in METHODS:
            raise ValueError("The matrix has not been factorized")
        return factors.lower_factor(self.root, self.factorization)

    def upper_factor(self) -> JAXArray:
        """The upper factor of an LU factorization, densely and in tree ordering"""
        if self.factorization != "lu":
            raise ValueError("The matrix has not been LU factorized")
        return factors.upper_factor(self.root)

    def diagonal(self) -> JAXArray:
        """The diagonal of an LDLT factorization, in tree ordering"""
        if self.factorization != "ldlt":
            raise ValueError("The matrix has not been LDLT factorized")
        return factors.diagonal(self.root)
