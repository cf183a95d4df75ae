# -*- coding: utf-8 -*-
# mypy: ignore-errors

import jax
import numpy as np
import pytest

from tinyhmat import config

jax.config.update("jax_enable_x64", True)


@pytest.fixture
def random():
    return np.random.default_rng(5968)


@pytest.fixture(params=[1, 4], ids=["sequential", "threaded"])
def workers(request):
    previous = config.max_workers
    config.update("max_workers", request.param)
    yield request.param
    config.update("max_workers", previous)
