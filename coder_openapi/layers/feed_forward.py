"""
coder-openapi :: Position-wise Feed-Forward

    FFN(x) = down(GELU(up(x)))

up expands hidden_size -> intermediate_size, down projects back. GELU uses
the tanh approximation.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

from coder_openapi.core.config import ModelConfig
from coder_openapi.core.loader import WeightStore
from coder_openapi.layers.linear import Projection


class FeedForward(nn.Module):

    def __init__(self, up_proj: Projection, down_proj: Projection):
        super().__init__()
        self.up_proj = up_proj
        self.down_proj = down_proj

    @classmethod
    def from_store(cls, weights: WeightStore, prefix: str, config: ModelConfig,
                   device: torch.device) -> "FeedForward":
        return cls(
            up_proj=Projection.from_store(
                weights, f"{prefix}.up_proj", config.hidden_size, config.intermediate_size, device),
            down_proj=Projection.from_store(
                weights, f"{prefix}.down_proj", config.intermediate_size, config.hidden_size, device),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.gelu(self.up_proj(x), approximate="tanh"))
