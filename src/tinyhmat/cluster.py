"""
Cluster trees and admissibility conditions. These decide the shape of a block
tree: the cluster trees partition the rows and columns recursively, and a pair
of clusters becomes a leaf of the block tree when either of them can't be split
further or when the admissibility condition accepts the pair.
"""

from __future__ import annotations

__all__ = [
    "ClusterTree",
    "AdmissibilityCondition",
    "StandardAdmissibility",
    "InfluenceRadiusAdmissibility",
]

from abc import abstractmethod
from typing import Any

import equinox as eqx
import numpy as np


class ClusterTree(eqx.Module):
    """A node of a cluster tree

    Args:
        offset: The position of the first degree of freedom of this cluster in
            the tree ordering.
        size: The number of degrees of freedom in this cluster.
        indices (size,): The original index of each degree of freedom of this
            cluster, in tree ordering. For the root, this is the permutation
            that maps the tree ordering to the original one.
        children: The sub-clusters, covering this one in order.
        lower: The lower corner of the bounding box of the cluster's points, if
            the tree was built from coordinates.
        upper: The upper corner of the bounding box.
    """

    offset: int = eqx.field(static=True)
    size: int = eqx.field(static=True)
    indices: np.ndarray
    children: tuple[ClusterTree, ...] = ()
    lower: np.ndarray | None = None
    upper: np.ndarray | None = None

    @property
    def is_leaf(self) -> bool:
        return len(self.children) == 0

    @property
    def depth(self) -> int:
        return 1 + max((c.depth for c in self.children), default=0)

    def leaves(self) -> list[ClusterTree]:
        if self.is_leaf:
            return [self]
        return [leaf for c in self.children for leaf in c.leaves()]

    def diameter(self) -> float:
        if self.lower is None or self.upper is None:
            raise ValueError("This cluster has no bounding box")
        return float(np.linalg.norm(self.upper - self.lower))

    def distance(self, other: ClusterTree) -> float:
        """The distance between the bounding boxes of two clusters"""
        if self.lower is None or other.lower is None:
            raise ValueError("This cluster has no bounding box")
        gap = np.maximum(
            0.0, np.maximum(other.lower - self.upper, self.lower - other.upper)
        )
        return float(np.linalg.norm(gap))

    @classmethod
    def regular(cls, n: int, leaf_size: int) -> ClusterTree:
        """Recursive bisection of ``range(n)`` down to ``leaf_size``"""
        if n < 1 or leaf_size < 1:
            raise ValueError("Both the size and the leaf size must be positive")
        return _bisect(np.arange(n), 0, leaf_size, None)

    @classmethod
    def from_points(cls, points: Any, leaf_size: int) -> ClusterTree:
        """Recursive median bisection of a point cloud

        Each cluster is split in two halves along the largest extent of its
        bounding box, until it holds at most ``leaf_size`` points.

        Args:
            points (n, ndim): The coordinates of the degrees of freedom.
            leaf_size: The maximum number of points in a leaf cluster.
        """
        points = np.asarray(points, dtype=float)
        if points.ndim == 1:
            points = points[:, None]
        if points.ndim != 2 or len(points) < 1 or leaf_size < 1:
            raise ValueError("Expected a non-empty (n, ndim) array of points")
        return _bisect(np.arange(len(points)), 0, leaf_size, points)


def _bisect(
    indices: np.ndarray, offset: int, leaf_size: int, points: np.ndarray | None
) -> ClusterTree:
    lower = upper = None
    if points is not None:
        lower = points[indices].min(axis=0)
        upper = points[indices].max(axis=0)
        axis = int(np.argmax(upper - lower))
        indices = indices[np.argsort(points[indices, axis], kind="stable")]

    size = len(indices)
    if size <= leaf_size:
        return ClusterTree(offset, size, indices, (), lower, upper)

    half = size // 2
    children = (
        _bisect(indices[:half], offset, leaf_size, points),
        _bisect(indices[half:], offset + half, leaf_size, points),
    )
    indices = np.concatenate([c.indices for c in children])
    return ClusterTree(offset, size, indices, children, lower, upper)


class AdmissibilityCondition(eqx.Module):
    """The base class for admissibility conditions"""

    @abstractmethod
    def is_admissible(self, rows: ClusterTree, cols: ClusterTree) -> bool:
        """Returns ``True`` if the block ``rows x cols`` should not be split"""
        raise NotImplementedError


class StandardAdmissibility(AdmissibilityCondition):
    """The Hackbusch admissibility condition

    A pair of clusters is admissible if
    ``min(rows.diameter(), cols.diameter()) <= eta * rows.distance(cols)``.

    Args:
        eta: The admissibility parameter. Larger values accept more blocks.
        max_elements_per_block: Blocks with more entries than this are never
            admissible.
    """

    eta: float = eqx.field(static=True, default=2.0)
    max_elements_per_block: int = eqx.field(static=True, default=5_000_000)

    def is_admissible(self, rows: ClusterTree, cols: ClusterTree) -> bool:
        if rows.size * cols.size > self.max_elements_per_block:
            return False
        dist = rows.distance(cols)
        if dist <= 0.0:
            return False
        return min(rows.diameter(), cols.diameter()) <= self.eta * dist

    def __str__(self) -> str:
        return (
            f"StandardAdmissibility(eta={self.eta}, "
            f"max_elements_per_block={self.max_elements_per_block})"
        )


class InfluenceRadiusAdmissibility(AdmissibilityCondition):
    """Admissibility from the range of influence of each degree of freedom

    Every degree of freedom interacts with the others within its radius. The
    bounding box of a cluster is grown by the largest radius among its degrees
    of freedom, and a pair of clusters is admissible if the grown boxes do not
    overlap, so that no degree of freedom of one reaches the other.

    Args:
        radii (n,): The radius of influence of each degree of freedom, in the
            original ordering.
    """

    radii: np.ndarray = eqx.field(converter=np.asarray)

    def _grown(self, tree: ClusterTree) -> tuple[np.ndarray, np.ndarray]:
        if tree.lower is None or tree.upper is None:
            raise ValueError("This cluster has no bounding box")
        r = float(np.max(self.radii[tree.indices]))
        return tree.lower - r, tree.upper + r

    def is_admissible(self, rows: ClusterTree, cols: ClusterTree) -> bool:
        row_lower, row_upper = self._grown(rows)
        col_lower, col_upper = self._grown(cols)
        return bool(np.any(row_lower > col_upper) or np.any(col_lower > row_upper))

    def __str__(self) -> str:
        return f"InfluenceRadiusAdmissibility(n={len(self.radii)})"
