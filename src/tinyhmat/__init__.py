"""
``tinyhmat`` implements hierarchical matrices in Python, built on top of `jax
<https://github.com/google/jax>`_: dense matrices stored as a recursive tree of
blocks, with the LU, LDLT and Cholesky factorizations, inversion and triangular
solves written once as block-recursive algorithms over that tree. The primary
way to use it is through :class:`HMatrix`:

.. code-block:: python

    A = tinyhmat.HMatrix.from_dense(matrix, leaf_size=64)
    x = A.factorize("lu").solve(b)
"""

__version__ = "0.1.0"
__author__ = "tinyhmat developers"
__email__ = "tinyhmat@users.noreply.github.com"
__uri__ = "https://github.com/tinyhmat/tinyhmat"
__license__ = "BSD"
__description__ = "Hierarchical matrices with block-recursive factorizations"

from tinyhmat import (
    cluster as cluster,
    dense as dense,
    factors as factors,
    recursion as recursion,
)
from tinyhmat.cluster import (
    ClusterTree as ClusterTree,
    InfluenceRadiusAdmissibility as InfluenceRadiusAdmissibility,
    StandardAdmissibility as StandardAdmissibility,
)
from tinyhmat.config import config as config
from tinyhmat.dense import SingularBlockError as SingularBlockError
from tinyhmat.hmatrix import HMatrix as HMatrix
from tinyhmat.node import BlockNode as BlockNode, Leaf as Leaf, Node as Node
