"""
coder-openapi :: Layer Norm with variance stabilization

Standard layer norm over the last dimension, except that rows whose
variance falls below VARIANCE_FLOOR get VARIANCE_STABILIZER added before
the division. Zero or near-constant activations (e.g. from zero fallback
weights) then normalize to finite values.
"""

from typing import Optional

import torch
import torch.nn as nn

from coder_openapi.core.loader import WeightStore
from coder_openapi.layers.linear import take_param
from coder_openapi.layers.numerics import VARIANCE_FLOOR, VARIANCE_STABILIZER


class StableLayerNorm(nn.Module):

    def __init__(self, weight: nn.Parameter, bias: Optional[nn.Parameter] = None, eps: float = 1e-5):
        super().__init__()
        self.weight = weight
        if bias is not None:
            self.bias = bias
        else:
            self.register_parameter("bias", None)
        self.eps = eps

    @classmethod
    def from_store(cls, weights: WeightStore, prefix: str, hidden_size: int,
                   eps: float, device: torch.device) -> "StableLayerNorm":
        weight = take_param(weights, f"{prefix}.weight", (hidden_size,), device)
        bias = take_param(weights, f"{prefix}.bias", (hidden_size,), device, required=False)
        return cls(weight, bias, eps)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        centered = x - x.mean(dim=-1, keepdim=True)
        var = centered.pow(2).mean(dim=-1, keepdim=True)
        var = torch.where(var < VARIANCE_FLOOR, var + VARIANCE_STABILIZER, var)
        out = centered * torch.rsqrt(var + self.eps) * self.weight
        if self.bias is not None:
            out = out + self.bias
        return out
