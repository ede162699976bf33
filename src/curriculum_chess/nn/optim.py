from __future__ import annotations

from enum import Enum
from typing import Iterable

import torch


class OptimizerKind(str, Enum):
    SGD = "sgd"  # plain gradient descent
    MOMENTUM = "momentum"
    ADAGRAD = "adagrad"  # per-parameter adaptive
    RMSPROP = "rmsprop"  # per-parameter adaptive (moving average)
    ADAM = "adam"


def build_optimizer(
    kind: str | OptimizerKind,
    params: Iterable[torch.nn.Parameter],
    *,
    lr: float,
    momentum: float = 0.9,
    weight_decay: float = 0.0,
) -> torch.optim.Optimizer:
    try:
        k = OptimizerKind(str(getattr(kind, "value", kind)).lower())
    except ValueError:
        expected = ", ".join(repr(x.value) for x in OptimizerKind)
        raise ValueError(f"Unsupported optimizer: {kind!r} (expected one of {expected})") from None

    params = list(params)
    if k is OptimizerKind.SGD:
        return torch.optim.SGD(params, lr=lr, weight_decay=weight_decay)
    if k is OptimizerKind.MOMENTUM:
        return torch.optim.SGD(params, lr=lr, momentum=momentum, weight_decay=weight_decay)
    if k is OptimizerKind.ADAGRAD:
        return torch.optim.Adagrad(params, lr=lr, weight_decay=weight_decay)
    if k is OptimizerKind.RMSPROP:
        return torch.optim.RMSprop(params, lr=lr, weight_decay=weight_decay)
    return torch.optim.Adam(params, lr=lr, weight_decay=weight_decay)


class StepOptimizer:
    """Clip -> step -> clear gradients.

    Gradients are cleared after every step, so calling ``step()`` again
    without a new backward pass changes nothing.
    """

    def __init__(self, opt: torch.optim.Optimizer, *, max_grad_norm: float | None = 1.0):
        self.opt = opt
        self.max_grad_norm = max_grad_norm
        self.steps = 0

    def _params(self) -> list[torch.nn.Parameter]:
        return [p for pg in self.opt.param_groups for p in pg["params"]]

    def has_gradients(self) -> bool:
        return any(p.grad is not None for p in self._params())

    def step(self) -> bool:
        if not self.has_gradients():
            return False
        if self.max_grad_norm is not None and self.max_grad_norm > 0:
            torch.nn.utils.clip_grad_norm_(self._params(), self.max_grad_norm)
        self.opt.step()
        self.opt.zero_grad(set_to_none=True)
        self.steps += 1
        return True

    def discard(self) -> None:
        self.opt.zero_grad(set_to_none=True)

    @property
    def lr(self) -> float:
        return float(self.opt.param_groups[0]["lr"])
