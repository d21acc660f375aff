"""
coder-openapi :: Numerical Safety

Checks applied at every stage boundary of the forward pass:
  - reject NaN / Inf, naming the stage and tensor
  - clamp activations to [-ACTIVATION_LIMIT, ACTIVATION_LIMIT]
  - softmax with max-subtraction, probabilities checked finite and >= 0

Normalization adds VARIANCE_STABILIZER to rows whose variance is below
VARIANCE_FLOOR (see layers/norm.py).
"""

import torch

from coder_openapi.core.errors import NumericError

ACTIVATION_LIMIT = 1e4
VARIANCE_FLOOR = 1e-6
VARIANCE_STABILIZER = 1e-5


def check_finite(tensor: torch.Tensor, stage: str, name: str) -> torch.Tensor:
    if not torch.isfinite(tensor).all():
        nan = int(torch.isnan(tensor).sum().item())
        inf = int(torch.isinf(tensor).sum().item())
        raise NumericError(f"{nan} NaN and {inf} Inf entries", stage=stage, tensor=name)
    return tensor


def clamp_activations(tensor: torch.Tensor) -> torch.Tensor:
    return tensor.clamp(min=-ACTIVATION_LIMIT, max=ACTIVATION_LIMIT)


def guard(tensor: torch.Tensor, stage: str, name: str = "hidden_states") -> torch.Tensor:
    """check_finite, then clamp."""
    return clamp_activations(check_finite(tensor, stage, name))


def stable_softmax(scores: torch.Tensor, stage: str = "attention") -> torch.Tensor:
    """Softmax over the last dim with max-subtraction; validates the result."""
    shifted = scores - scores.amax(dim=-1, keepdim=True)
    exp = shifted.exp()
    probs = exp / exp.sum(dim=-1, keepdim=True)
    check_finite(probs, stage, "probs")
    if (probs < 0).any():
        raise NumericError("negative attention probabilities", stage=stage, tensor="probs")
    return probs
