# mypy: ignore-errors

import logging

import numpy as np
import pytest

from tinyhmat import HMatrix, SingularBlockError, StandardAdmissibility
from tinyhmat.cluster import ClusterTree
from tinyhmat.hmatrix import check_fill_in, updated_blocks
from tinyhmat.node import BlockNode, Leaf
from tinyhmat.test_utils import (
    assert_allclose,
    general_matrix,
    indefinite_matrix,
    spd_matrix,
)

MATRICES = {"lu": general_matrix, "ldlt": indefinite_matrix, "llt": spd_matrix}


@pytest.fixture
def points(random):
    return random.uniform(size=(24, 2))


def test_round_trip(random, points):
    a = random.normal(size=(24, 24))
    h = HMatrix.from_dense(a, leaf_size=4, points=points)
    assert h.shape == (24, 24)
    assert not np.array_equal(h.rows.indices, np.arange(24))
    assert_allclose(h.to_dense(), a)


def test_matmul(random, points):
    a = random.normal(size=(24, 24))
    h = HMatrix.from_dense(
        a, leaf_size=4, points=points, admissibility=StandardAdmissibility()
    )
    x = random.normal(size=24)
    assert_allclose(h @ x, a @ x, atol=1e-12)
    x = random.normal(size=(24, 3))
    assert_allclose(h.matmul(x), a @ x, atol=1e-12)


@pytest.mark.parametrize("method", ["lu", "ldlt", "llt"])
@pytest.mark.parametrize("geometric", [False, True])
def test_factorize_and_solve(random, workers, points, method, geometric):
    a = MATRICES[method](random, 24)
    kwargs = {}
    if geometric:
        kwargs = dict(points=points, admissibility=StandardAdmissibility())
    h = HMatrix.from_dense(a, leaf_size=4, **kwargs).factorize(method)
    assert h.factorization == method

    b = random.normal(size=24)
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)
    b = random.normal(size=(24, 2))
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)


def test_inverse_then_solve(random, workers, points):
    a = general_matrix(random, 24)
    h = HMatrix.from_dense(a, leaf_size=4, points=points).inverse()
    b = random.normal(size=(24, 2))
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)


def test_copy_is_independent(random):
    a = spd_matrix(random, 12)
    h = HMatrix.from_dense(a, leaf_size=3)
    factorized = h.copy().factorize("llt")
    assert factorized.factorization == "llt"
    assert h.factorization is None
    assert_allclose(h.to_dense(), a)


def test_factors(random):
    a = general_matrix(random, 12)
    h = HMatrix.from_dense(a, leaf_size=3).factorize("lu")
    assert_allclose(h.lower_factor() @ h.upper_factor(), a, atol=1e-10)

    a = indefinite_matrix(random, 12)
    h = HMatrix.from_dense(a, leaf_size=3).factorize("ldlt")
    l = h.lower_factor()
    assert_allclose(np.diag(l), np.ones(12))
    assert_allclose(l @ np.diag(h.diagonal()) @ l.T, a, atol=1e-10)

    a = spd_matrix(random, 12)
    h = HMatrix.from_dense(a, leaf_size=3).factorize("llt")
    l = h.lower_factor()
    assert_allclose(l @ l.T, a, atol=1e-10)


def test_lifecycle_errors(random):
    a = spd_matrix(random, 8)
    h = HMatrix.from_dense(a, leaf_size=2)
    with pytest.raises(ValueError):
        h.solve(np.ones(8))
    with pytest.raises(ValueError):
        h.lower_factor()
    with pytest.raises(ValueError):
        h.factorize("qr")

    h.factorize("llt")
    with pytest.raises(ValueError):
        h.factorize("llt")
    with pytest.raises(ValueError):
        h.inverse()
    with pytest.raises(ValueError):
        h.to_dense()
    with pytest.raises(ValueError):
        h @ np.ones(8)
    with pytest.raises(ValueError):
        h.upper_factor()
    with pytest.raises(ValueError):
        h.diagonal()


def test_invalid_construction(random):
    with pytest.raises(ValueError):
        HMatrix.from_dense(np.ones((4, 3)))
    with pytest.raises(ValueError):
        HMatrix.from_dense(np.eye(4), admissibility=StandardAdmissibility())
    with pytest.raises(ValueError):
        HMatrix.from_dense(np.eye(4), points=random.uniform(size=(3, 2)))
    tree = ClusterTree.regular(4, 2)
    with pytest.raises(ValueError):
        HMatrix(Leaf(np.eye(3)), tree, tree)


@pytest.mark.parametrize(
    "method,a", [("lu", np.zeros((4, 4))), ("llt", -np.eye(4))]
)
def test_singular(method, a):
    with pytest.raises(SingularBlockError):
        HMatrix.from_dense(a, leaf_size=2).factorize(method)


def test_debug_logging(random, caplog):
    caplog.set_level(logging.DEBUG, logger="tinyhmat")
    h = HMatrix.from_dense(general_matrix(random, 8), leaf_size=2)
    h.factorize("lu").solve(np.ones(8))
    assert "Starting lu factorization" in caplog.text
    assert "Solving with the lu" in caplog.text


@pytest.mark.parametrize("method", ["lu", "ldlt", "llt"])
def test_sparse_solve_matches_dense(random, workers, method):
    a = MATRICES[method](random, 8) + 8 * np.eye(8)
    a[4:6, 6:8] = a[6:8, 4:6] = 0.0
    b = random.normal(size=8)
    expected = HMatrix.from_dense(a, leaf_size=2).factorize(method).solve(b)
    h = HMatrix.from_dense(a, leaf_size=2, sparse=True).factorize(method)
    assert_allclose(h.solve(b), expected, atol=1e-12)
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)


@pytest.mark.parametrize("method", ["lu", "ldlt", "llt"])
def test_sparse_factors_match_dense(random, method):
    a = MATRICES[method](random, 8) + 8 * np.eye(8)
    a[:2, 2:4] = a[2:4, :2] = 0.0
    a[:4, 6:] = a[6:, :4] = 0.0
    h = HMatrix.from_dense(a, leaf_size=2, sparse=True)
    assert h.root.get(0, 0).get(0, 1) is None
    h.factorize(method)
    full = HMatrix.from_dense(a, leaf_size=2).factorize(method)
    assert_allclose(h.lower_factor(), full.lower_factor(), atol=1e-12)
    b = random.normal(size=(8, 2))
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)


def test_sparse_block_diagonal_inverse(random, workers):
    a = spd_matrix(random, 8)
    a[:4, 4:] = a[4:, :4] = 0.0
    h = HMatrix.from_dense(a, leaf_size=2, sparse=True)
    assert h.root.get(0, 1) is None
    h.inverse()
    b = random.normal(size=8)
    assert_allclose(h.solve(b), np.linalg.solve(a, b), atol=1e-10)


def test_sparse_inverse_with_fill_in(random):
    a = spd_matrix(random, 8)
    a[:2, 2:4] = a[2:4, :2] = 0.0
    h = HMatrix.from_dense(a, leaf_size=2, sparse=True)
    assert h.root.get(0, 0).get(0, 1) is None
    with pytest.raises(ValueError, match="missing blocks"):
        h.inverse()
    assert h.factorization is None
    b = random.normal(size=8)
    assert_allclose(h.factorize("lu").solve(b), np.linalg.solve(a, b), atol=1e-10)


def test_missing_blocks_that_fill_in(random):
    a = general_matrix(random, 6)
    blocks = [
        [Leaf(a[2 * i : 2 * i + 2, 2 * j : 2 * j + 2]) for j in range(3)]
        for i in range(3)
    ]
    blocks[1][2] = blocks[2][1] = None
    tree = ClusterTree.regular(6, 2)
    for method in ["lu", "ldlt", "llt"]:
        h = HMatrix(BlockNode(blocks), tree, tree)
        with pytest.raises(ValueError, match="would be filled in"):
            h.factorize(method)
        assert h.factorization is None
    with pytest.raises(ValueError):
        HMatrix(BlockNode(blocks), tree, tree).inverse()


def test_updated_blocks():
    pattern = np.array(
        [[True, True, False], [True, True, False], [False, False, True]]
    )
    assert not updated_blocks(pattern, "lu")[0, 0]
    assert updated_blocks(pattern, "lu")[1, 1]
    assert not updated_blocks(pattern, "lu")[2].any()
    assert updated_blocks(pattern, "inverse")[0, 0]
    assert not updated_blocks(pattern, "ldlt")[0, 1]
    check_fill_in(BlockNode([[Leaf(np.eye(2)), None], [None, Leaf(np.eye(2))]]), "lu")
