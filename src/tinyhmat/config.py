"""
Process-wide options, read and updated in the same way as ``jax.config``:

.. code-block:: python

    from tinyhmat import config

    config.update("max_workers", 4)

``max_workers`` sets the size of the thread pool used to run the independent
updates of one elimination step (``1`` runs everything on the calling thread),
and ``check_finite`` controls whether factorized leaves are checked for
singular pivots. Both default to the ``TINYHMAT_MAX_WORKERS`` and
``TINYHMAT_CHECK_FINITE`` environment variables when set.
"""

from __future__ import annotations

__all__ = ["Config", "config"]

import os
from typing import Any


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


class Config:
    def __init__(self) -> None:
        self._values: dict[str, Any] = {
            "max_workers": int(os.environ.get("TINYHMAT_MAX_WORKERS", "1")),
            "check_finite": _env_flag("TINYHMAT_CHECK_FINITE", True),
        }

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__dict__["_values"][name]
        except KeyError:
            raise AttributeError(f"Unrecognized config option: {name}") from None

    def update(self, name: str, value: Any) -> None:
        if name not in self._values:
            raise AttributeError(f"Unrecognized config option: {name}")
        if name == "max_workers":
            value = int(value)
            if value < 1:
                raise ValueError("max_workers must be a positive integer")
        else:
            value = bool(value)
        self._values[name] = value


config = Config()
