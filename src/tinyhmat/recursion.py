r"""
The recursive block algorithms. Everything here is written against the small
capability set shared by every node of a block tree (``is_leaf``,
``nr_child_row``, ``nr_child_col`` and ``get``), and the same code runs whether
the children of a block are further subdivided or are dense leaves: the calls
on children dispatch back into this module for internal nodes, and into
:mod:`tinyhmat.dense` for leaves.

A child slot holding ``None`` is an exact zero block. It is never an error: any
step that would read or write it is skipped.

The factorizations are right-looking. For a block matrix with entries
:math:`H_{ij}`, step :math:`k` factorizes the pivot block :math:`H_{kk}`,
solves for the rest of row and/or column :math:`k`, then applies the Schur
complement update to the trailing blocks :math:`i, j > k`. Step :math:`k+1`
reads the results of step :math:`k`, so steps are run in order, but the solves
within one step are independent of each other, and so are the trailing updates,
and these batches are handed to :func:`tinyhmat.parallel.run_phase`.
"""

from __future__ import annotations

__all__ = [
    "scratch_copy",
    "gemm",
    "lu_decomposition",
    "ldlt_decomposition",
    "llt_decomposition",
    "inverse",
    "mdmt_product",
    "mdnt_product",
    "solve_lower_triangular_left",
    "solve_upper_triangular_right",
    "solve_upper_triangular_left",
]

from collections.abc import Iterator
from contextlib import contextmanager
from functools import partial
from typing import TYPE_CHECKING

from tinyhmat.parallel import run_phase

if TYPE_CHECKING:
    from tinyhmat.node import Node


@contextmanager
def scratch_copy(node: Node) -> Iterator[Node]:
    """A private copy of ``node`` that is destroyed on exit"""
    tmp = node.copy()
    try:
        yield tmp
    finally:
        tmp.destroy()


def _pivot(h: Node, k: int) -> Node:
    hkk = h.get(k, k)
    if hkk is None:
        raise ValueError(f"Diagonal block ({k}, {k}) is missing")
    return hkk


def gemm(
    h: Node,
    trans_a: str,
    trans_b: str,
    alpha: float,
    a: Node,
    b: Node,
    beta: float,
) -> None:
    """``h <- beta * h + alpha * op(a) @ op(b)`` over conformant block grids"""
    inner = a.nr_child_row() if trans_a == "T" else a.nr_child_col()

    def update(i: int, j: int) -> None:
        hij = h.get(i, j)
        if hij is None:
            return
        if beta != 1:
            hij.scale(beta)
        for k in range(inner):
            aik = a.get(k, i) if trans_a == "T" else a.get(i, k)
            bkj = b.get(j, k) if trans_b == "T" else b.get(k, j)
            if aik is not None and bkj is not None:
                hij.gemm(trans_a, trans_b, alpha, aik, bkj, 1.0)

    run_phase(
        partial(update, i, j)
        for i in range(h.nr_child_row())
        for j in range(h.nr_child_col())
    )


def lu_decomposition(h: Node) -> None:
    r"""Block LU decomposition in place

    .. math::

        \left(\begin{array}{cc} H_{11} & H_{12} \\ H_{21} & H_{22}
        \end{array}\right) = \left(\begin{array}{cc} L_{11} & 0 \\
        L_{21} & L_{22} \end{array}\right) \left(\begin{array}{cc} U_{11} &
        U_{12} \\ 0 & U_{22} \end{array}\right)

    where :math:`L_{11}` and :math:`U_{11}` come from the decomposition of
    :math:`H_{11}`, :math:`U_{12}` from solving :math:`L_{11} U_{12} = H_{12}`,
    :math:`L_{21}` from solving :math:`L_{21} U_{11} = H_{21}`, and the rest
    from the decomposition of :math:`H_{22} - L_{21} U_{12}`.
    """
    n = h.nr_child_row()
    for k in range(n):
        hkk = _pivot(h, k)
        hkk.lu_decomposition()

        def solve_row(i: int) -> None:
            hki = h.get(k, i)
            if hki is not None:
                hkk.solve_lower_triangular_left(hki, unitriangular=True)

        def solve_col(i: int) -> None:
            hik = h.get(i, k)
            if hik is not None:
                hkk.solve_upper_triangular_right(
                    hik, unitriangular=False, lower_stored=False
                )

        run_phase(
            [partial(solve_row, i) for i in range(k + 1, n)]
            + [partial(solve_col, i) for i in range(k + 1, n)]
        )

        def update(i: int, j: int) -> None:
            hij, lik, ukj = h.get(i, j), h.get(i, k), h.get(k, j)
            if hij is not None and lik is not None and ukj is not None:
                hij.gemm("N", "N", -1.0, lik, ukj, 1.0)

        run_phase(
            partial(update, i, j) for i in range(k + 1, n) for j in range(k + 1, n)
        )


def ldlt_decomposition(h: Node) -> None:
    r"""Block LDLT decomposition in place, touching only the lower triangle

    .. math::

        H_{ij} = \sum_{k \le \min(i, j)} L_{ik}\,D_k\,L_{jk}^T

    The pivot block gives :math:`L_{kk}` and :math:`D_k`, the rest of column
    :math:`k` is :math:`L_{ik} = H_{ik}\,L_{kk}^{-T}\,D_k^{-1}`, and the
    trailing blocks with :math:`k < j \le i` are updated by
    :math:`H_{ij} \leftarrow H_{ij} - L_{ik}\,D_k\,L_{jk}^T`.
    """
    n = h.nr_child_row()
    for k in range(n):
        hkk = _pivot(h, k)
        hkk.ldlt_decomposition()

        def solve_col(i: int) -> None:
            hik = h.get(i, k)
            if hik is not None:
                hkk.solve_upper_triangular_right(
                    hik, unitriangular=False, lower_stored=True
                )
                hik.multiply_with_diag(hkk, on_left=False, inverse=True)

        run_phase(partial(solve_col, i) for i in range(k + 1, n))

        def update(i: int, j: int) -> None:
            hij, lik = h.get(i, j), h.get(i, k)
            if hij is None or lik is None:
                return
            if i == j:
                hij.mdmt_product(lik, hkk)
            else:
                ljk = h.get(j, k)
                if ljk is not None:
                    hij.mdnt_product(lik, hkk, ljk)

        run_phase(
            partial(update, i, j) for i in range(k + 1, n) for j in range(k + 1, i + 1)
        )


def llt_decomposition(h: Node) -> None:
    r"""Block Cholesky decomposition in place, touching only the lower triangle

    Same elimination as :func:`ldlt_decomposition` without the diagonal:
    :math:`L_{ik} = H_{ik}\,L_{kk}^{-T}` and
    :math:`H_{ij} \leftarrow H_{ij} - L_{ik}\,L_{jk}^T`.
    """
    n = h.nr_child_row()
    for k in range(n):
        hkk = _pivot(h, k)
        hkk.llt_decomposition()

        def solve_col(i: int) -> None:
            hik = h.get(i, k)
            if hik is not None:
                hkk.solve_upper_triangular_right(
                    hik, unitriangular=False, lower_stored=True
                )

        run_phase(partial(solve_col, i) for i in range(k + 1, n))

        def update(i: int, j: int) -> None:
            hij, lik = h.get(i, j), h.get(i, k)
            if hij is None or lik is None:
                return
            if i == j:
                # identity weight, lower triangle only
                hij.mdmt_product(lik)
            else:
                ljk = h.get(j, k)
                if ljk is not None:
                    hij.gemm("N", "T", -1.0, lik, ljk, 1.0)

        run_phase(
            partial(update, i, j) for i in range(k + 1, n) for j in range(k + 1, i + 1)
        )


def _weight_terms(
    m: Node, d: Node | None, i: int
) -> list[tuple[Node | None, Node | None]]:
    # A leaf weight is not subdivided any further, so the operands can only
    # have a single column block at this level.
    if d is None:
        return [(m.get(i, k), None) for k in range(m.nr_child_col())]
    if d.is_leaf():
        return [(m.get(i, 0), d)]
    return [(m.get(i, k), d.get(k, k)) for k in range(d.nr_child_row())]


def mdmt_product(h: Node, m: Node, d: Node | None = None) -> None:
    r"""Symmetric rank update, lower triangle only

    .. math::

        H_{ij} \leftarrow H_{ij} - \sum_k M_{ik}\,D_k\,M_{jk}^T
        \quad\mbox{for}\quad j \le i

    where :math:`D_k` is the diagonal of the LDLT-factorized block
    :math:`d_{kk}`, or the identity if ``d`` is ``None``.
    """

    def update(i: int, j: int) -> None:
        hij = h.get(i, j)
        if hij is None:
            return
        for (mik, dk), (mjk, _) in zip(_weight_terms(m, d, i), _weight_terms(m, d, j)):
            if mik is None or mjk is None:
                continue
            if i == j:
                hij.mdmt_product(mik, dk)
            else:
                hij.mdnt_product(mik, dk, mjk)

    run_phase(
        partial(update, i, j)
        for i in range(h.nr_child_row())
        for j in range(i + 1)
    )


def mdnt_product(h: Node, m: Node, d: Node | None, n: Node) -> None:
    r"""Non-symmetric rank update over the full block grid

    .. math::

        H_{ij} \leftarrow H_{ij} - \sum_k M_{ik}\,D_k\,N_{jk}^T
    """

    def update(i: int, j: int) -> None:
        hij = h.get(i, j)
        if hij is None:
            return
        for (mik, dk), (njk, _) in zip(_weight_terms(m, d, i), _weight_terms(n, d, j)):
            if mik is not None and njk is not None:
                hij.mdnt_product(mik, dk, njk)

    run_phase(
        partial(update, i, j)
        for i in range(h.nr_child_row())
        for j in range(h.nr_child_col())
    )


def solve_lower_triangular_left(h: Node, b: Node, unitriangular: bool) -> None:
    r"""Forward substitution, overwriting ``b`` with the solution of
    :math:`L\,X = B`

    .. math::

        L_{ii}\,X_{ik} = B_{ik} - \sum_{j < i} L_{ij}\,X_{jk}

    Each block column of ``b`` is independent of the others.
    """

    def solve_column(k: int) -> None:
        for i in range(h.nr_child_row()):
            bik = b.get(i, k)
            if bik is None:
                continue
            for j in range(i):
                lij, bjk = h.get(i, j), b.get(j, k)
                if lij is not None and bjk is not None:
                    bik.gemm("N", "N", -1.0, lij, bjk, 1.0)
            _pivot(h, i).solve_lower_triangular_left(bik, unitriangular=unitriangular)

    run_phase(partial(solve_column, k) for k in range(b.nr_child_col()))


def solve_upper_triangular_right(
    h: Node, b: Node, unitriangular: bool, lower_stored: bool
) -> None:
    r"""Forward substitution from the right, overwriting ``b`` with the
    solution of :math:`X\,U = B`

    .. math::

        X_{ki}\,U_{ii} = B_{ki} - \sum_{j < i} X_{kj}\,U_{ji}

    With ``lower_stored``, :math:`U_{ji}` is read as :math:`L_{ij}^T`. Each
    block row of ``b`` is independent of the others.
    """
    trans = "T" if lower_stored else "N"

    def solve_row(k: int) -> None:
        for i in range(h.nr_child_row()):
            bki = b.get(k, i)
            if bki is None:
                continue
            for j in range(i):
                uji = h.get(i, j) if lower_stored else h.get(j, i)
                bkj = b.get(k, j)
                if uji is not None and bkj is not None:
                    bki.gemm("N", trans, -1.0, bkj, uji, 1.0)
            _pivot(h, i).solve_upper_triangular_right(
                bki, unitriangular=unitriangular, lower_stored=lower_stored
            )

    run_phase(partial(solve_row, k) for k in range(b.nr_child_row()))


def solve_upper_triangular_left(
    h: Node, b: Node, unitriangular: bool, lower_stored: bool
) -> None:
    r"""Backward substitution, overwriting ``b`` with the solution of
    :math:`U\,X = B`

    .. math::

        U_{ii}\,X_{ik} = B_{ik} - \sum_{j > i} U_{ij}\,X_{jk}

    With ``lower_stored``, :math:`U_{ij}` is read as :math:`L_{ji}^T`. Each
    block column of ``b`` is independent of the others.
    """
    trans = "T" if lower_stored else "N"

    def solve_column(k: int) -> None:
        for i in reversed(range(h.nr_child_row())):
            bik = b.get(i, k)
            if bik is None:
                continue
            _pivot(h, i).solve_upper_triangular_left(
                bik, unitriangular=unitriangular, lower_stored=lower_stored
            )
            for j in range(i):
                uji = h.get(i, j) if lower_stored else h.get(j, i)
                bjk = b.get(j, k)
                if uji is not None and bjk is not None:
                    bjk.gemm(trans, "N", -1.0, uji, bik, 1.0)

    run_phase(partial(solve_column, k) for k in range(b.nr_child_col()))


def inverse(h: Node) -> None:
    r"""Block Gauss-Jordan inversion in place

    Think of the extended matrix :math:`[H\,|\,I]`. Step :math:`k` turns block
    column :math:`k` of :math:`H` into the identity with row operations, and
    ``h`` keeps the first :math:`k` block columns of the right half next to
    the last :math:`n - k` block columns of the left half. After the last
    step, ``h`` holds :math:`H^{-1}`. The whole grid is used, so ``h`` must
    not rely on symmetric storage.
    """
    n, m = h.nr_child_row(), h.nr_child_col()
    for k in range(n):
        hkk = _pivot(h, k)
        hkk.inverse()

        # Row k is left-multiplied by the new pivot. The destination is also the
        # source, and a zero-weight product would wipe it before it is read.
        def scale_row(j: int) -> None:
            hkj = h.get(k, j)
            if hkj is None:
                return
            with scratch_copy(hkj) as x:
                hkj.gemm("N", "N", 1.0, hkk, x, 0.0)

        run_phase(partial(scale_row, j) for j in range(m) if j != k)

        def update(i: int, j: int) -> None:
            hij, hik, hkj = h.get(i, j), h.get(i, k), h.get(k, j)
            if hij is not None and hik is not None and hkj is not None:
                hij.gemm("N", "N", -1.0, hik, hkj, 1.0)

        run_phase(
            partial(update, i, j)
            for i in range(n)
            for j in range(m)
            if i != k and j != k
        )

        def scale_col(i: int) -> None:
            hik = h.get(i, k)
            if hik is None:
                return
            with scratch_copy(hik) as x:
                hik.gemm("N", "N", -1.0, x, hkk, 0.0)

        run_phase(partial(scale_col, i) for i in range(n) if i != k)
