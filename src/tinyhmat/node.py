"""
The two shapes of a block tree node. A :class:`Leaf` owns a dense payload and
applies the kernels from :mod:`tinyhmat.dense` to it, and a :class:`BlockNode`
owns a grid of children and runs the recursive algorithms from
:mod:`tinyhmat.recursion` over them.

Nodes are mutable: the factorizations, solves and products below overwrite the
node they are called on (or, for the solves, the right-hand side) and return
``None``.
"""

from __future__ import annotations

__all__ = ["Node", "Leaf", "BlockNode"]

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import jax.numpy as jnp

from tinyhmat import dense, recursion
from tinyhmat.helpers import JAXArray, offsets


def _dense(node: Node) -> JAXArray:
    if node.is_leaf():
        return node.data  # type: ignore
    return node.to_dense()


class Node(ABC):
    """The interface shared by every node of a block tree"""

    @abstractmethod
    def is_leaf(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def nr_child_row(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def nr_child_col(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get(self, i: int, j: int) -> Node | None:
        """The child at grid position ``(i, j)``, or ``None`` for a zero block"""
        raise NotImplementedError

    @property
    @abstractmethod
    def shape(self) -> tuple[int, int]:
        raise NotImplementedError

    @abstractmethod
    def to_dense(self) -> JAXArray:
        """Render this block to a dense matrix, with zeros for missing blocks"""
        raise NotImplementedError

    @abstractmethod
    def set_dense(self, x: JAXArray) -> None:
        """Overwrite the stored entries of this block with those of ``x``"""
        raise NotImplementedError

    @abstractmethod
    def add_dense(self, x: JAXArray, lower: bool = False) -> None:
        """Add ``x`` to this block

        If ``lower`` is ``True``, only the blocks on or below the diagonal of the
        grid receive their part of ``x``.
        """
        raise NotImplementedError

    @abstractmethod
    def scale(self, alpha: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def copy(self) -> Node:
        """A deep copy of this node and its subtree"""
        raise NotImplementedError

    @abstractmethod
    def destroy(self) -> None:
        """Release the payloads held by this node and its subtree"""
        raise NotImplementedError

    @abstractmethod
    def get_diag(self) -> JAXArray:
        """The diagonal ``D`` of an LDLT-factorized block, as a 1-D array"""
        raise NotImplementedError

    @abstractmethod
    def gemm(
        self,
        trans_a: str,
        trans_b: str,
        alpha: Any,
        a: Node,
        b: Node,
        beta: Any,
    ) -> None:
        """``self <- beta * self + alpha * op(a) @ op(b)``"""
        raise NotImplementedError

    @abstractmethod
    def lu_decomposition(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def ldlt_decomposition(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def llt_decomposition(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def inverse(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def solve_lower_triangular_left(
        self, b: Node, unitriangular: bool = False
    ) -> None:
        """Overwrite ``b`` with ``L^-1 b``, where ``L`` is the lower factor
        stored in this block"""
        raise NotImplementedError

    @abstractmethod
    def solve_upper_triangular_right(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        """Overwrite ``b`` with ``b U^-1``, where ``U`` is the upper factor
        stored in this block, or the transpose of the lower one"""
        raise NotImplementedError

    @abstractmethod
    def solve_upper_triangular_left(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        """Overwrite ``b`` with ``U^-1 b``, where ``U`` is the upper factor
        stored in this block, or the transpose of the lower one"""
        raise NotImplementedError

    @abstractmethod
    def mdmt_product(self, m: Node, d: Node | None = None) -> None:
        """``self <- self - m @ D @ m.T``, where ``D`` is the diagonal of the
        LDLT-factorized ``d`` or the identity if ``d`` is ``None``"""
        raise NotImplementedError

    @abstractmethod
    def mdnt_product(self, m: Node, d: Node | None, n: Node) -> None:
        """``self <- self - m @ D @ n.T``, where ``D`` is the diagonal of the
        LDLT-factorized ``d`` or the identity if ``d`` is ``None``"""
        raise NotImplementedError

    def multiply_with_diag(
        self, d: Node, on_left: bool = False, inverse: bool = False
    ) -> None:
        """Scale this block by the diagonal of the LDLT-factorized ``d``

        Args:
            d: A factorized block whose diagonal has the extent of the rows (if
                ``on_left``) or the columns of this block.
            on_left: Multiply by ``D @ self`` instead of ``self @ D``.
            inverse: Use ``D^-1`` instead of ``D``.
        """
        self.multiply_with_vector(d.get_diag(), on_left=on_left, inverse=inverse)

    @abstractmethod
    def multiply_with_vector(
        self, d: JAXArray, on_left: bool = False, inverse: bool = False
    ) -> None:
        raise NotImplementedError


class Leaf(Node):
    """A dense block

    Args:
        data: The entries of the block as a 2-D array.
        permutation: The row permutation of an LU-factorized leaf.
        diagonal: The diagonal of an LDLT-factorized leaf.
    """

    def __init__(
        self,
        data: Any,
        *,
        permutation: JAXArray | None = None,
        diagonal: JAXArray | None = None,
    ):
        self.data = jnp.asarray(data)
        assert self.data.ndim == 2
        self.permutation = permutation
        self.diagonal = diagonal

    def __repr__(self) -> str:
        return f"Leaf(shape={self.shape})"

    def is_leaf(self) -> bool:
        return True

    def nr_child_row(self) -> int:
        return 0

    def nr_child_col(self) -> int:
        return 0

    def get(self, i: int, j: int) -> Node | None:
        raise IndexError("A leaf has no children")

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape  # type: ignore

    def to_dense(self) -> JAXArray:
        return self.data

    def set_dense(self, x: JAXArray) -> None:
        assert x.shape == self.shape
        self.data = jnp.asarray(x)

    def add_dense(self, x: JAXArray, lower: bool = False) -> None:
        del lower
        self.data = self.data + x

    def scale(self, alpha: Any) -> None:
        if alpha == 0:
            self.data = jnp.zeros_like(self.data)
        else:
            self.data = alpha * self.data

    def copy(self) -> Leaf:
        return Leaf(self.data, permutation=self.permutation, diagonal=self.diagonal)

    def destroy(self) -> None:
        self.data = None  # type: ignore
        self.permutation = None
        self.diagonal = None

    def get_diag(self) -> JAXArray:
        if self.diagonal is None:
            raise ValueError("This block has not been LDLT factorized")
        return self.diagonal

    def gemm(
        self,
        trans_a: str,
        trans_b: str,
        alpha: Any,
        a: Node,
        b: Node,
        beta: Any,
    ) -> None:
        if beta == 0:
            self.data = dense.product(_dense(a), _dense(b), alpha, trans_a, trans_b)
        else:
            self.data = dense.gemm(
                self.data, _dense(a), _dense(b), alpha, beta, trans_a, trans_b
            )

    def lu_decomposition(self) -> None:
        packed, perm = dense.lu(self.data)
        dense.check_pivots(jnp.diag(packed), "LU decomposition")
        self.data = packed
        self.permutation = perm

    def ldlt_decomposition(self) -> None:
        l, d = dense.ldlt(self.data)
        dense.check_pivots(d, "LDLT decomposition")
        self.data = l
        self.diagonal = d

    def llt_decomposition(self) -> None:
        l = dense.llt(self.data)
        dense.check_finite(l, "Cholesky decomposition")
        self.data = l

    def inverse(self) -> None:
        inv = dense.inverse(self.data)
        dense.check_finite(inv, "Inverse")
        self.data = inv

    def solve_lower_triangular_left(
        self, b: Node, unitriangular: bool = False
    ) -> None:
        b.set_dense(
            dense.solve_lower_triangular_left(
                self.data, _dense(b), self.permutation, unitriangular=unitriangular
            )
        )

    def solve_upper_triangular_right(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        b.set_dense(
            dense.solve_upper_triangular_right(
                self.data,
                _dense(b),
                unitriangular=unitriangular,
                lower_stored=lower_stored,
            )
        )

    def solve_upper_triangular_left(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        b.set_dense(
            dense.solve_upper_triangular_left(
                self.data,
                _dense(b),
                unitriangular=unitriangular,
                lower_stored=lower_stored,
            )
        )

    def mdmt_product(self, m: Node, d: Node | None = None) -> None:
        diag = None if d is None else d.get_diag()
        self.data = dense.mdmt(self.data, _dense(m), diag)

    def mdnt_product(self, m: Node, d: Node | None, n: Node) -> None:
        diag = None if d is None else d.get_diag()
        self.data = dense.mdnt(self.data, _dense(m), diag, _dense(n))

    def multiply_with_vector(
        self, d: JAXArray, on_left: bool = False, inverse: bool = False
    ) -> None:
        self.data = dense.multiply_with_diag(
            self.data, d, on_left=on_left, inverse=inverse
        )


class BlockNode(Node):
    """A block subdivided into a grid of children

    Args:
        children: A nested sequence with one entry per grid row, each holding
            one :class:`Node` or ``None`` per grid column. ``None`` stands for
            an exact zero block.
        row_sizes: The number of rows covered by each grid row. Only needed if
            a grid row has no child to infer it from.
        col_sizes: The number of columns covered by each grid column. Only
            needed if a grid column has no child to infer it from.
    """

    def __init__(
        self,
        children: Sequence[Sequence[Node | None]],
        row_sizes: Sequence[int] | None = None,
        col_sizes: Sequence[int] | None = None,
    ):
        self.children = [list(row) for row in children]
        nrows = len(self.children)
        ncols = len(self.children[0]) if nrows else 0
        assert nrows > 0 and ncols > 0
        assert all(len(row) == ncols for row in self.children)

        if row_sizes is None:
            row_sizes = [self._infer(i, None) for i in range(nrows)]
        if col_sizes is None:
            col_sizes = [self._infer(None, j) for j in range(ncols)]
        self.row_sizes = tuple(int(s) for s in row_sizes)
        self.col_sizes = tuple(int(s) for s in col_sizes)
        assert len(self.row_sizes) == nrows and len(self.col_sizes) == ncols

        for i, row in enumerate(self.children):
            for j, child in enumerate(row):
                if child is not None and child.shape != (
                    self.row_sizes[i],
                    self.col_sizes[j],
                ):
                    raise ValueError(
                        f"Child ({i}, {j}) has shape {child.shape}, expected "
                        f"{(self.row_sizes[i], self.col_sizes[j])}"
                    )

    def _infer(self, i: int | None, j: int | None) -> int:
        if i is not None:
            cells = [c.shape[0] for c in self.children[i] if c is not None]
        else:
            cells = [row[j].shape[1] for row in self.children if row[j] is not None]
        if not cells:
            raise ValueError(
                "Cannot infer the size of a grid row or column without any "
                "children; pass row_sizes and col_sizes explicitly"
            )
        return cells[0]

    def __repr__(self) -> str:
        return (
            f"BlockNode(shape={self.shape}, "
            f"grid={self.nr_child_row()}x{self.nr_child_col()})"
        )

    def is_leaf(self) -> bool:
        return False

    def nr_child_row(self) -> int:
        return len(self.row_sizes)

    def nr_child_col(self) -> int:
        return len(self.col_sizes)

    def get(self, i: int, j: int) -> Node | None:
        return self.children[i][j]

    @property
    def shape(self) -> tuple[int, int]:
        return (sum(self.row_sizes), sum(self.col_sizes))

    def _blocks(self, x: JAXArray, lower: bool = False):  # type: ignore
        r, c = offsets(self.row_sizes), offsets(self.col_sizes)
        for i, row in enumerate(self.children):
            for j, child in enumerate(row):
                if child is None or (lower and j > i):
                    continue
                yield i, j, child, x[r[i] : r[i + 1], c[j] : c[j + 1]]

    def to_dense(self) -> JAXArray:
        dtype = next(
            (
                child.to_dense().dtype
                for row in self.children
                for child in row
                if child is not None
            ),
            jnp.zeros(()).dtype,
        )
        return jnp.block(
            [
                [
                    (
                        jnp.zeros((m, n), dtype=dtype)
                        if child is None
                        else child.to_dense()
                    )
                    for n, child in zip(self.col_sizes, row)
                ]
                for m, row in zip(self.row_sizes, self.children)
            ]
        )

    def set_dense(self, x: JAXArray) -> None:
        assert x.shape == self.shape
        for _, _, child, block in self._blocks(x):
            child.set_dense(block)

    def add_dense(self, x: JAXArray, lower: bool = False) -> None:
        for i, j, child, block in self._blocks(x, lower=lower):
            child.add_dense(block, lower=lower and i == j)

    def scale(self, alpha: Any) -> None:
        for row in self.children:
            for child in row:
                if child is not None:
                    child.scale(alpha)

    def copy(self) -> BlockNode:
        return BlockNode(
            [[None if c is None else c.copy() for c in row] for row in self.children],
            row_sizes=self.row_sizes,
            col_sizes=self.col_sizes,
        )

    def destroy(self) -> None:
        for row in self.children:
            for child in row:
                if child is not None:
                    child.destroy()
        self.children = [[None] * len(row) for row in self.children]

    def get_diag(self) -> JAXArray:
        diags = []
        for i in range(self.nr_child_row()):
            child = self.get(i, i)
            if child is None:
                raise ValueError(f"Diagonal block ({i}, {i}) is missing")
            diags.append(child.get_diag())
        return jnp.concatenate(diags)

    def _split(self, b: Leaf, by_rows: bool) -> BlockNode:
        # A dense right-hand side cut along this block's partition
        x = b.data
        if by_rows:
            r = offsets(self.row_sizes)
            return BlockNode(
                [[Leaf(x[r[i] : r[i + 1]])] for i in range(self.nr_child_row())]
            )
        c = offsets(self.col_sizes)
        return BlockNode(
            [[Leaf(x[:, c[j] : c[j + 1]]) for j in range(self.nr_child_col())]]
        )

    def gemm(
        self,
        trans_a: str,
        trans_b: str,
        alpha: Any,
        a: Node,
        b: Node,
        beta: Any,
    ) -> None:
        if not a.is_leaf() and not b.is_leaf():
            recursion.gemm(self, trans_a, trans_b, alpha, a, b, beta)
            return
        prod = dense.product(_dense(a), _dense(b), alpha, trans_a, trans_b)
        if beta == 0:
            self.set_dense(prod)
        else:
            if beta != 1:
                self.scale(beta)
            self.add_dense(prod)

    def lu_decomposition(self) -> None:
        recursion.lu_decomposition(self)

    def ldlt_decomposition(self) -> None:
        recursion.ldlt_decomposition(self)

    def llt_decomposition(self) -> None:
        recursion.llt_decomposition(self)

    def inverse(self) -> None:
        recursion.inverse(self)

    def solve_lower_triangular_left(
        self, b: Node, unitriangular: bool = False
    ) -> None:
        if isinstance(b, Leaf):
            tmp = self._split(b, by_rows=True)
            recursion.solve_lower_triangular_left(self, tmp, unitriangular)
            b.set_dense(tmp.to_dense())
        else:
            recursion.solve_lower_triangular_left(self, b, unitriangular)

    def solve_upper_triangular_right(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        if isinstance(b, Leaf):
            tmp = self._split(b, by_rows=False)
            recursion.solve_upper_triangular_right(
                self, tmp, unitriangular, lower_stored
            )
            b.set_dense(tmp.to_dense())
        else:
            recursion.solve_upper_triangular_right(self, b, unitriangular, lower_stored)

    def solve_upper_triangular_left(
        self, b: Node, unitriangular: bool = False, lower_stored: bool = False
    ) -> None:
        if isinstance(b, Leaf):
            tmp = self._split(b, by_rows=True)
            recursion.solve_upper_triangular_left(
                self, tmp, unitriangular, lower_stored
            )
            b.set_dense(tmp.to_dense())
        else:
            recursion.solve_upper_triangular_left(self, b, unitriangular, lower_stored)

    def mdmt_product(self, m: Node, d: Node | None = None) -> None:
        if not m.is_leaf():
            recursion.mdmt_product(self, m, d)
            return
        diag = None if d is None else d.get_diag()
        x = _dense(m)
        self.add_dense(
            dense.mdmt(jnp.zeros(self.shape, dtype=x.dtype), x, diag), lower=True
        )

    def mdnt_product(self, m: Node, d: Node | None, n: Node) -> None:
        if not m.is_leaf() and not n.is_leaf():
            recursion.mdnt_product(self, m, d, n)
            return
        diag = None if d is None else d.get_diag()
        x = _dense(m)
        self.add_dense(
            dense.mdnt(jnp.zeros(self.shape, dtype=x.dtype), x, diag, _dense(n))
        )

    def multiply_with_vector(
        self, d: JAXArray, on_left: bool = False, inverse: bool = False
    ) -> None:
        bounds = offsets(self.row_sizes if on_left else self.col_sizes)
        for i, row in enumerate(self.children):
            for j, child in enumerate(row):
                if child is None:
                    continue
                k = i if on_left else j
                child.multiply_with_vector(
                    d[bounds[k] : bounds[k + 1]], on_left=on_left, inverse=inverse
                )
