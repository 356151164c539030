"""Loss functions: a closed set, selected by name.

Kernels dispatch on the integer value of :class:`Loss`; the enum members
expose the same math to Python callers.
"""

from __future__ import annotations

import math
from enum import IntEnum

from numba import njit

from .errors import ConfigError


@njit(cache=True)
def loss_value(kind, predicted, target):
    if kind == 0:
        # log(1 + exp(-t*p))
        return math.log1p(math.exp(-target * predicted))
    if kind == 1:
        z = target * predicted
        if z <= 0.0:
            return 0.5 - z
        if z < 1.0:
            return 0.5 * (1.0 - z) * (1.0 - z)
        return 0.0
    diff = predicted - target
    return diff * diff


@njit(cache=True)
def loss_derivative(kind, predicted, target):
    if kind == 0:
        return -target / (math.exp(target * predicted) + 1.0)
    if kind == 1:
        z = target * predicted
        if z <= 0.0:
            return -target
        if z < 1.0:
            return target * (z - 1.0)
        return 0.0
    return 2.0 * (predicted - target)


class Loss(IntEnum):
    LOGISTIC = 0
    HINGE = 1
    MSE = 2

    def loss(self, predicted: float, target: float) -> float:
        return loss_value(int(self), float(predicted), float(target))

    def derivative(self, predicted: float, target: float) -> float:
        return loss_derivative(int(self), float(predicted), float(target))


_NAMES = {"logistic": Loss.LOGISTIC, "hinge": Loss.HINGE, "mse": Loss.MSE}


def get_loss(name) -> Loss:
    """Look up a loss by name (``logistic``, ``hinge``, ``mse``)."""
    if isinstance(name, Loss):
        return name
    kind = _NAMES.get(str(name).strip().lower())
    if kind is None:
        raise ConfigError(f"Invalid loss function parameter: {name}")
    return kind
