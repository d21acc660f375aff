"""
coder-openapi :: Sampling

Turns final-position logits into the next token id.

Strategies:
  - greedy (argmax), used when the request carries no temperature
  - temperature scaling + weighted random draw
  - top-p (nucleus) truncation of the candidate distribution
"""

import math
from typing import Optional

import torch

from coder_openapi.core.errors import NumericError


def _last_position(logits: torch.Tensor) -> torch.Tensor:
    """(seq_len, vocab) or (vocab,) -> (vocab,)"""
    if logits.dim() == 2:
        return logits[-1]
    if logits.dim() == 1:
        return logits
    raise NumericError(
        f"expected logits of shape (seq_len, vocab) or (vocab,), got {tuple(logits.shape)}",
        stage="sampling", tensor="logits",
    )


def greedy(logits: torch.Tensor) -> int:
    """Deterministic arg-max over the vocabulary."""
    return int(_last_position(logits).argmax().item())


def apply_top_p(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Keep the smallest set of tokens whose cumulative probability reaches
    top_p, renormalized. The most likely token always survives.
    """
    if top_p >= 1.0:
        return probs
    sorted_probs, sorted_idx = probs.sort(descending=True)
    cumulative = sorted_probs.cumsum(dim=-1)
    drop = (cumulative - sorted_probs) >= top_p
    sorted_probs = sorted_probs.masked_fill(drop, 0.0)
    kept = torch.zeros_like(probs).scatter(-1, sorted_idx, sorted_probs)
    return kept / kept.sum()


def temperature_sample(
    logits: torch.Tensor,
    temperature: float,
    top_p: float = 1.0,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Scale logits by 1/temperature, softmax, optionally truncate to the
    nucleus, then draw one token from the resulting distribution.

    Args:
        logits: (seq_len, vocab) or (vocab,)
        temperature: finite, > 0
        top_p: nucleus mass in (0, 1]; 1.0 keeps every candidate
        generator: optional CPU generator for reproducible draws
    """
    if temperature is None or not math.isfinite(float(temperature)) or float(temperature) <= 0.0:
        raise NumericError(
            f"temperature must be finite and > 0, got {temperature}",
            stage="sampling", tensor="temperature",
        )

    row = _last_position(logits).detach().to("cpu", torch.float64)
    scaled = row / float(temperature)
    probs = torch.softmax(scaled - scaled.max(), dim=-1)
    if not torch.isfinite(probs).all():
        raise NumericError("non-finite probabilities", stage="sampling", tensor="probs")

    probs = apply_top_p(probs, top_p)
    return int(torch.multinomial(probs, num_samples=1, generator=generator).item())


def sample_next(
    logits: torch.Tensor,
    temperature: Optional[float],
    top_p: float = 1.0,
    generator: Optional[torch.Generator] = None,
) -> int:
    """Greedy when temperature is absent, temperature sampling otherwise."""
    if temperature is None:
        return greedy(logits)
    return temperature_sample(logits, temperature, top_p=top_p, generator=generator)
