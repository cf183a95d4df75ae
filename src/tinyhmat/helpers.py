from __future__ import annotations

__all__ = ["JAXArray", "offsets"]

from collections.abc import Sequence

import jax
import numpy as np

JAXArray = jax.Array


def offsets(sizes: Sequence[int]) -> np.ndarray:
    """The starting index of each partition, plus the total as a last entry"""
    return np.concatenate(([0], np.cumsum(sizes, dtype=int)))
