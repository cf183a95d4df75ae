"""
The dense kernels applied at the leaves of a block tree. These are pure
functions of ``jax`` arrays: each one returns new arrays and the calling
:class:`tinyhmat.node.Leaf` rebinds its payload.

Transpose flags follow the BLAS convention, ``"N"`` for the matrix itself and
``"T"`` for its transpose. Factors are stored packed: after :func:`lu` the unit
lower triangle lives strictly below the diagonal and the upper factor on and
above it, while :func:`ldlt` and :func:`llt` only ever produce (and read) a
lower triangle.
"""

from __future__ import annotations

__all__ = [
    "SingularBlockError",
    "check_finite",
    "check_pivots",
    "gemm",
    "product",
    "lu",
    "ldlt",
    "llt",
    "inverse",
    "solve_lower_triangular_left",
    "solve_upper_triangular_right",
    "solve_upper_triangular_left",
    "mdmt",
    "mdnt",
    "multiply_with_diag",
]

from functools import partial

import jax
import jax.numpy as jnp
from jax.scipy import linalg

from tinyhmat.config import config
from tinyhmat.helpers import JAXArray


class SingularBlockError(ValueError):
    """Raised when a leaf cannot be factorized or inverted"""


def check_finite(x: JAXArray, what: str) -> None:
    if config.check_finite and not bool(jnp.all(jnp.isfinite(x))):
        raise SingularBlockError(
            f"{what} of a {x.shape[0]}x{x.shape[-1]} leaf is not finite; "
            "the block is singular or not positive definite"
        )


def check_pivots(pivots: JAXArray, what: str) -> None:
    check_finite(pivots, what)
    if config.check_finite and bool(jnp.any(pivots == 0)):
        raise SingularBlockError(f"{what} encountered a zero pivot")


def _op(x: JAXArray, trans: str) -> JAXArray:
    return x.T if trans == "T" else x


@partial(jax.jit, static_argnames=("trans_a", "trans_b"))
def gemm(
    c: JAXArray,
    a: JAXArray,
    b: JAXArray,
    alpha: float,
    beta: float,
    trans_a: str = "N",
    trans_b: str = "N",
) -> JAXArray:
    return beta * c + alpha * (_op(a, trans_a) @ _op(b, trans_b))


@partial(jax.jit, static_argnames=("trans_a", "trans_b"))
def product(
    a: JAXArray,
    b: JAXArray,
    alpha: float,
    trans_a: str = "N",
    trans_b: str = "N",
) -> JAXArray:
    return alpha * (_op(a, trans_a) @ _op(b, trans_b))


@jax.jit
def lu(a: JAXArray) -> tuple[JAXArray, JAXArray]:
    """LU decomposition with partial pivoting

    Returns:
        The packed factors and a permutation ``perm`` such that
        ``a[perm] == L @ U``.
    """
    packed, _, perm = jax.lax.linalg.lu(a)
    return packed, perm


@jax.jit
def ldlt(a: JAXArray) -> tuple[JAXArray, JAXArray]:
    """The unpivoted LDLT decomposition of a symmetric matrix

    Only the lower triangle of ``a`` is read.

    Returns:
        The unit lower triangular factor (zeros above the diagonal) and the
        diagonal as a 1-D array.
    """
    n = a.shape[0]
    a = jnp.tril(a)
    idx = jnp.arange(n)

    def impl(j, carry):  # type: ignore
        l, d = carry
        lj = jnp.where(idx < j, l[j], 0)
        dj = a[j, j] - jnp.sum(lj * lj * d)
        col = (a[:, j] - l @ (lj * d)) / dj
        l = l.at[:, j].set(jnp.where(idx > j, col, 0))
        return l, d.at[j].set(dj)

    init = (jnp.zeros_like(a), jnp.zeros(n, dtype=a.dtype))
    l, d = jax.lax.fori_loop(0, n, impl, init)
    return l + jnp.eye(n, dtype=a.dtype), d


@jax.jit
def llt(a: JAXArray) -> JAXArray:
    """The Cholesky factor of a matrix given by its lower triangle"""
    sym = jnp.tril(a) + jnp.tril(a, -1).T
    return linalg.cholesky(sym, lower=True)


@jax.jit
def inverse(a: JAXArray) -> JAXArray:
    return jnp.linalg.inv(a)


def _triangle(x: JAXArray, lower: bool, unitriangular: bool) -> JAXArray:
    if unitriangular:
        k = -1 if lower else 1
        t = jnp.tril(x, k) if lower else jnp.triu(x, k)
        return t + jnp.eye(x.shape[0], dtype=x.dtype)
    return jnp.tril(x) if lower else jnp.triu(x)


@partial(jax.jit, static_argnames=("unitriangular",))
def solve_lower_triangular_left(
    l: JAXArray,
    b: JAXArray,
    perm: JAXArray | None = None,
    unitriangular: bool = False,
) -> JAXArray:
    """Solve ``L @ x = P @ b`` for ``x``, where ``P`` is the row permutation"""
    if perm is not None:
        b = b[perm]
    return linalg.solve_triangular(_triangle(l, True, unitriangular), b, lower=True)


@partial(jax.jit, static_argnames=("unitriangular", "lower_stored"))
def solve_upper_triangular_right(
    u: JAXArray,
    b: JAXArray,
    unitriangular: bool = False,
    lower_stored: bool = False,
) -> JAXArray:
    """Solve ``x @ U = b`` for ``x``

    If ``lower_stored`` is ``True``, ``U`` is the transpose of the lower
    triangle stored in ``u``.
    """
    t = _triangle(u, lower_stored, unitriangular)
    if lower_stored:
        return linalg.solve_triangular(t, b.T, lower=True).T
    return linalg.solve_triangular(t, b.T, lower=False, trans=1).T


@partial(jax.jit, static_argnames=("unitriangular", "lower_stored"))
def solve_upper_triangular_left(
    u: JAXArray,
    b: JAXArray,
    unitriangular: bool = False,
    lower_stored: bool = False,
) -> JAXArray:
    """Solve ``U @ x = b`` for ``x``

    If ``lower_stored`` is ``True``, ``U`` is the transpose of the lower
    triangle stored in ``u``.
    """
    t = _triangle(u, lower_stored, unitriangular)
    if lower_stored:
        return linalg.solve_triangular(t, b, lower=True, trans=1)
    return linalg.solve_triangular(t, b, lower=False)


@jax.jit
def mdmt(c: JAXArray, m: JAXArray, d: JAXArray | None = None) -> JAXArray:
    """``c - m @ diag(d) @ m.T``, with the identity when ``d`` is ``None``"""
    md = m if d is None else m * d[None, :]
    return c - md @ m.T


@jax.jit
def mdnt(
    c: JAXArray, m: JAXArray, d: JAXArray | None, n: JAXArray
) -> JAXArray:
    """``c - m @ diag(d) @ n.T``, with the identity when ``d`` is ``None``"""
    md = m if d is None else m * d[None, :]
    return c - md @ n.T


@partial(jax.jit, static_argnames=("on_left", "inverse"))
def multiply_with_diag(
    c: JAXArray, d: JAXArray, on_left: bool = False, inverse: bool = False
) -> JAXArray:
    if inverse:
        d = 1 / d
    if on_left:
        return d[:, None] * c
    return c * d[None, :]
