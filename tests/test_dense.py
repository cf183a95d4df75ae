# mypy: ignore-errors

import jax.numpy as jnp
import numpy as np
import pytest

from tinyhmat import config, dense
from tinyhmat.node import Leaf
from tinyhmat.test_utils import (
    assert_allclose,
    general_matrix,
    indefinite_matrix,
    spd_matrix,
)


@pytest.fixture
def no_checks():
    config.update("check_finite", False)
    yield
    config.update("check_finite", True)


def test_gemm(random):
    a = random.normal(size=(4, 3))
    b = random.normal(size=(5, 3))
    c = random.normal(size=(4, 5))
    assert_allclose(
        dense.gemm(c, a, b, 2.0, -0.5, "N", "T"), -0.5 * c + 2.0 * a @ b.T
    )
    assert_allclose(dense.product(a, a, 1.5, "T", "N"), 1.5 * a.T @ a)


def test_product_ignores_destination():
    c = Leaf(jnp.full((2, 2), jnp.nan))
    c.gemm("N", "N", 1.0, Leaf(jnp.eye(2)), Leaf(jnp.ones((2, 2))), 0.0)
    assert_allclose(c.data, np.ones((2, 2)))


def test_lu(random):
    a = random.normal(size=(6, 6))
    packed, perm = dense.lu(a)
    l = np.tril(packed, -1) + np.eye(6)
    u = np.triu(packed)
    assert_allclose(l @ u, a[np.asarray(perm)], atol=1e-12)


def test_ldlt_reads_lower_triangle(random):
    a = indefinite_matrix(random, 5)
    poisoned = np.where(np.triu(np.ones((5, 5)), 1) > 0, np.nan, a)
    l, d = dense.ldlt(poisoned)
    assert_allclose(np.diag(l), np.ones(5))
    assert_allclose(np.triu(l, 1), np.zeros((5, 5)))
    assert_allclose(l @ np.diag(d) @ l.T, a, atol=1e-12)


def test_llt_reads_lower_triangle(random):
    a = spd_matrix(random, 5)
    poisoned = np.where(np.triu(np.ones((5, 5)), 1) > 0, 1e6, a)
    l = dense.llt(poisoned)
    assert_allclose(l @ l.T, a, atol=1e-12)


def test_inverse(random):
    a = general_matrix(random, 4)
    assert_allclose(dense.inverse(a) @ a, np.eye(4), atol=1e-12)


@pytest.mark.parametrize("unitriangular", [False, True])
@pytest.mark.parametrize("lower_stored", [False, True])
def test_upper_triangular_solves(random, unitriangular, lower_stored):
    packed = general_matrix(random, 5)
    t = np.tril(packed) if lower_stored else np.triu(packed)
    if unitriangular:
        t = t - np.diag(np.diag(t)) + np.eye(5)
    u = t.T if lower_stored else t

    b = random.normal(size=(5, 3))
    x = dense.solve_upper_triangular_left(
        packed, b, unitriangular=unitriangular, lower_stored=lower_stored
    )
    assert_allclose(u @ x, b, atol=1e-12)

    b = random.normal(size=(3, 5))
    x = dense.solve_upper_triangular_right(
        packed, b, unitriangular=unitriangular, lower_stored=lower_stored
    )
    assert_allclose(x @ u, b, atol=1e-12)


def test_lower_triangular_solve_with_permutation(random):
    a = random.normal(size=(5, 5))
    packed, perm = dense.lu(a)
    b = random.normal(size=(5, 2))
    y = dense.solve_lower_triangular_left(packed, b, perm, unitriangular=True)
    x = dense.solve_upper_triangular_left(packed, y)
    assert_allclose(a @ x, b, atol=1e-12)


def test_rank_updates(random):
    c = random.normal(size=(4, 3))
    m = random.normal(size=(4, 2))
    n = random.normal(size=(3, 2))
    d = random.normal(size=2)
    assert_allclose(dense.mdnt(c, m, d, n), c - m @ np.diag(d) @ n.T)
    assert_allclose(dense.mdnt(c, m, None, n), c - m @ n.T)
    s = random.normal(size=(4, 4))
    assert_allclose(dense.mdmt(s, m, d), s - m @ np.diag(d) @ m.T)


@pytest.mark.parametrize("on_left", [False, True])
@pytest.mark.parametrize("inverse", [False, True])
def test_multiply_with_diag(random, on_left, inverse):
    c = random.normal(size=(3, 3))
    d = random.uniform(1, 2, size=3)
    w = np.diag(1 / d if inverse else d)
    expected = w @ c if on_left else c @ w
    assert_allclose(
        dense.multiply_with_diag(c, d, on_left=on_left, inverse=inverse), expected
    )


@pytest.mark.parametrize(
    "method", ["lu_decomposition", "ldlt_decomposition", "inverse"]
)
def test_singular_leaf(method):
    leaf = Leaf(np.zeros((3, 3)))
    with pytest.raises(dense.SingularBlockError):
        getattr(leaf, method)()


def test_not_positive_definite_leaf():
    with pytest.raises(dense.SingularBlockError):
        Leaf(-np.eye(3)).llt_decomposition()


def test_disabled_checks(no_checks):
    leaf = Leaf(-np.eye(3))
    leaf.llt_decomposition()
    assert not np.all(np.isfinite(leaf.data))
