"""
coder-openapi :: Multi-Head Attention

    scores = Q K^T / sqrt(head_dim) (+ additive mask)
    probs  = softmax(scores)            max-subtracted, validated
    out    = O(probs V)

Shapes are single-sequence: (seq_len, hidden_size). Grouped KV heads are
repeated up to the query head count.
"""

import math
from typing import Optional

import torch
import torch.nn as nn

from coder_openapi.core.config import ModelConfig
from coder_openapi.core.loader import WeightStore
from coder_openapi.layers.linear import Projection
from coder_openapi.layers.numerics import check_finite, stable_softmax


def causal_mask(seq_len: int, device: torch.device) -> torch.Tensor:
    """(seq_len, seq_len) additive mask: 0 on and below the diagonal, -inf above."""
    mask = torch.full((seq_len, seq_len), float("-inf"), device=device)
    return torch.triu(mask, diagonal=1)


class MultiHeadAttention(nn.Module):

    def __init__(
        self,
        q_proj: Projection,
        k_proj: Projection,
        v_proj: Projection,
        o_proj: Projection,
        num_heads: int,
        num_kv_heads: int,
        head_dim: int,
    ):
        super().__init__()
        self.q_proj = q_proj
        self.k_proj = k_proj
        self.v_proj = v_proj
        self.o_proj = o_proj
        self.num_heads = num_heads
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.num_kv_groups = num_heads // num_kv_heads
        self.scale = 1.0 / math.sqrt(head_dim)

    @classmethod
    def from_store(cls, weights: WeightStore, prefix: str, config: ModelConfig,
                   device: torch.device) -> "MultiHeadAttention":
        hidden = config.hidden_size
        q_out = config.num_attention_heads * config.head_dim
        kv_out = config.kv_heads * config.head_dim
        return cls(
            q_proj=Projection.from_store(weights, f"{prefix}.q_proj", hidden, q_out, device),
            k_proj=Projection.from_store(weights, f"{prefix}.k_proj", hidden, kv_out, device),
            v_proj=Projection.from_store(weights, f"{prefix}.v_proj", hidden, kv_out, device),
            o_proj=Projection.from_store(weights, f"{prefix}.o_proj", q_out, hidden, device),
            num_heads=config.num_attention_heads,
            num_kv_heads=config.kv_heads,
            head_dim=config.head_dim,
        )

    def _split_heads(self, x: torch.Tensor, heads: int) -> torch.Tensor:
        # (seq, heads * head_dim) -> (heads, seq, head_dim)
        return x.view(x.shape[0], heads, self.head_dim).transpose(0, 1)

    def forward(
        self,
        query: torch.Tensor,
        key: torch.Tensor,
        value: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        q = self._split_heads(self.q_proj(query), self.num_heads)
        k = self._split_heads(self.k_proj(key), self.num_kv_heads)
        v = self._split_heads(self.v_proj(value), self.num_kv_heads)

        if self.num_kv_groups > 1:
            k = k.repeat_interleave(self.num_kv_groups, dim=0)
            v = v.repeat_interleave(self.num_kv_groups, dim=0)

        scores = torch.matmul(q, k.transpose(-1, -2)) * self.scale
        check_finite(scores, "attention", "scores")
        if mask is not None:
            scores = scores + mask

        probs = stable_softmax(scores, stage="attention")
        context = torch.matmul(probs, v)                       # (heads, seq_q, head_dim)
        context = context.transpose(0, 1).reshape(query.shape[0], self.num_heads * self.head_dim)
        return self.o_proj(context)
