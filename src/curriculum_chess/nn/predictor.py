from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import numpy as np
import torch
import torch.nn.functional as F

from .model import HybridPredictor, RecurrentState


class Predictor:
    """Stateful forward/backward contract around ``HybridPredictor``.

    - ``forward(x)`` runs one step and keeps the recurrent state for the next call.
    - ``backward(target)`` returns the MSE of the latest forward and leaves
      gradients on the parameters for the optimizer.

    The recurrent state is owned here and detached after each step
    (one-step truncated BPTT), so backward never reaches into earlier calls.
    """

    def __init__(self, model: HybridPredictor, device: torch.device | None = None):
        self.device = device or torch.device("cpu")
        self.model = model.to(self.device)
        self.model.train()
        self._state: RecurrentState = self.model.initial_state(1, device=self.device)
        self._pending: torch.Tensor | None = None

    @classmethod
    def create(
        cls,
        *,
        input_size: int,
        hidden_size: int,
        output_size: int,
        seed: int = 0,
        device: torch.device | None = None,
    ) -> "Predictor":
        g = torch.Generator().manual_seed(int(seed))
        model = HybridPredictor(
            input_size=input_size,
            hidden_size=hidden_size,
            output_size=output_size,
            generator=g,
        )
        return cls(model, device=device)

    @classmethod
    def from_checkpoint(cls, path: str | Path, device: torch.device | None = None) -> "Predictor":
        ckpt = torch.load(Path(path), map_location=device or "cpu")
        mc = ckpt["model_config"]
        model = HybridPredictor(
            input_size=int(mc["input_size"]),
            hidden_size=int(mc["hidden_size"]),
            output_size=int(mc["output_size"]),
        )
        model.load_state_dict(ckpt["model"])
        return cls(model, device=device)

    @property
    def input_size(self) -> int:
        return self.model.input_size

    @property
    def output_size(self) -> int:
        return self.model.output_size

    def model_config(self) -> dict[str, int]:
        return {
            "input_size": self.model.input_size,
            "hidden_size": self.model.hidden_size,
            "output_size": self.model.output_size,
        }

    def parameters(self) -> Iterator[torch.nn.Parameter]:
        return self.model.parameters()

    def state_dict(self) -> dict[str, Any]:
        return self.model.state_dict()

    def _as_tensor(self, values: Any, width: int, what: str) -> torch.Tensor:
        arr = np.asarray(values, dtype=np.float32).reshape(-1)
        if arr.shape[0] != width:
            raise ValueError(f"{what} width mismatch: expected {width}, got {arr.shape[0]}")
        return torch.as_tensor(arr, device=self.device).unsqueeze(0)

    def reset_state(self) -> None:
        self._state = self.model.initial_state(1, device=self.device)
        self._pending = None

    @contextmanager
    def preserve_state(self) -> Iterator["Predictor"]:
        """Forward passes inside the block leave the recurrent state untouched."""
        saved = self._state.clone()
        pending = self._pending
        try:
            yield self
        finally:
            self._state = saved
            self._pending = pending

    def forward(self, x: Any) -> np.ndarray:
        xt = self._as_tensor(x, self.input_size, "input")
        out, state = self.model(xt, self._state)
        self._state = state.detach()
        self._pending = out
        return out.detach().cpu().numpy().astype(np.float64).reshape(-1)

    def backward(self, target: Any) -> float:
        if self._pending is None:
            raise RuntimeError("backward() called without a preceding forward()")
        tt = self._as_tensor(target, self.output_size, "target")
        loss = F.mse_loss(self._pending, tt)
        self._pending = None
        if torch.isfinite(loss):
            loss.backward()
        return float(loss.item())

    def discard(self) -> None:
        """Drop the pending forward without computing gradients."""
        self._pending = None
