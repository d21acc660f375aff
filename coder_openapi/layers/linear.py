"""
coder-openapi :: Projections built from a WeightStore

take_param() moves a named tensor out of the store into a frozen
nn.Parameter. A required weight the checkpoint lacks becomes zeros with a
warning so incomplete checkpoints still build; a weight with the wrong
shape is a hard error.
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from coder_openapi.core.errors import NumericError
from coder_openapi.core.loader import WeightStore
from coder_openapi.core.logging import get_logger

logger = get_logger("coder_openapi.layers")


def take_param(
    weights: WeightStore,
    name: str,
    shape: Tuple[int, ...],
    device: torch.device,
    required: bool = True,
) -> Optional[nn.Parameter]:
    """
    Move `name` out of the store as a frozen parameter.

    Missing and required -> zeros of `shape` (logged). Missing and optional
    -> None.
    """
    tensor = weights.take(name)
    if tensor is None:
        if not required:
            return None
        logger.warning(f"Weight {name} missing from checkpoint, using zeros {shape}")
        tensor = torch.zeros(shape, dtype=torch.float32, device=device)
    elif tuple(tensor.shape) != tuple(shape):
        raise NumericError(
            f"shape mismatch: expected {tuple(shape)}, got {tuple(tensor.shape)}",
            stage="construction", tensor=name,
        )
    return nn.Parameter(tensor.to(device=device, dtype=torch.float32), requires_grad=False)


class Projection(nn.Module):
    """y = x W^T (+ b), weights taken from the store."""

    def __init__(self, weight: nn.Parameter, bias: Optional[nn.Parameter] = None):
        super().__init__()
        self.weight = weight
        if bias is not None:
            self.bias = bias
        else:
            self.register_parameter("bias", None)

    @classmethod
    def from_store(
        cls,
        weights: WeightStore,
        prefix: str,
        in_features: int,
        out_features: int,
        device: torch.device,
    ) -> "Projection":
        weight = take_param(weights, f"{prefix}.weight", (out_features, in_features), device)
        bias = take_param(weights, f"{prefix}.bias", (out_features,), device, required=False)
        return cls(weight, bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return F.linear(x, self.weight, self.bias)
