from __future__ import annotations

import math
from dataclasses import dataclass

import torch
import torch.nn as nn


class BeliefLayer(nn.Module):
    """Probabilistic input layer.

    x -> Linear -> sigmoid. Each hidden node reads as the probability that a
    latent board feature is present given its parent inputs.
    """

    def __init__(self, d_in: int, d_out: int):
        super().__init__()
        self.fc = nn.Linear(d_in, d_out)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(self.fc(x))


@dataclass(frozen=True)
class RecurrentState:
    h: torch.Tensor  # (B,H)
    c: torch.Tensor  # (B,H)

    def detach(self) -> "RecurrentState":
        return RecurrentState(h=self.h.detach(), c=self.c.detach())

    def clone(self) -> "RecurrentState":
        return RecurrentState(h=self.h.clone(), c=self.c.clone())


class HybridPredictor(nn.Module):
    """Belief layer + LSTM cell + linear head.

    The module itself is stateless; the recurrent state is passed in and
    returned explicitly so a single owner (``Predictor``) controls it.
    """

    def __init__(
        self,
        *,
        input_size: int,
        hidden_size: int,
        output_size: int,
        generator: torch.Generator | None = None,
    ):
        super().__init__()
        if input_size <= 0 or hidden_size <= 0 or output_size <= 0:
            raise ValueError("input_size, hidden_size and output_size must be positive")

        self.input_size = int(input_size)
        self.hidden_size = int(hidden_size)
        self.output_size = int(output_size)

        self.belief = BeliefLayer(self.input_size, self.hidden_size)
        self.temporal = nn.LSTMCell(self.hidden_size, self.hidden_size)
        self.head = nn.Linear(self.hidden_size, self.output_size)

        if generator is not None:
            self.reset_parameters(generator)

    @torch.no_grad()
    def reset_parameters(self, generator: torch.Generator) -> None:
        # Belief weights in [-0.1, 0.1]; recurrent weights scaled by fan-in/out.
        self.belief.fc.weight.uniform_(-0.1, 0.1, generator=generator)
        self.belief.fc.bias.uniform_(-0.1, 0.1, generator=generator)

        scale = math.sqrt(2.0 / (2 * self.hidden_size))
        self.temporal.weight_ih.uniform_(-scale, scale, generator=generator)
        self.temporal.weight_hh.uniform_(-scale, scale, generator=generator)
        self.temporal.bias_ih.zero_()
        self.temporal.bias_hh.zero_()

        bound = 1.0 / math.sqrt(self.hidden_size)
        self.head.weight.uniform_(-bound, bound, generator=generator)
        self.head.bias.uniform_(-bound, bound, generator=generator)

    def initial_state(self, batch_size: int = 1, device: torch.device | None = None) -> RecurrentState:
        z = torch.zeros((batch_size, self.hidden_size), dtype=torch.float32, device=device)
        return RecurrentState(h=z, c=z.clone())

    def forward(self, x: torch.Tensor, state: RecurrentState | None = None) -> tuple[torch.Tensor, RecurrentState]:
        """x: (B, input_size) -> (output (B, output_size), next state)"""
        if state is None:
            state = self.initial_state(x.shape[0], device=x.device)
        p = self.belief(x)
        h, c = self.temporal(p, (state.h, state.c))
        return self.head(h), RecurrentState(h=h, c=c)
