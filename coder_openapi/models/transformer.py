"""
coder-openapi :: Transformer Stack

Post-norm decoder built entirely from a WeightStore:

    x = embed(token_ids)
    for layer in layers:
        x = input_layernorm(x + attn(x, x, x, causal_mask))
        x = post_attention_layernorm(x + ffn(x))
    logits = lm_head(final_norm(x))

Checkpoint names (HF style, biases optional):
    model.embed_tokens.weight
    model.layers.{i}.self_attn.{q,k,v,o}_proj.{weight,bias}
    model.layers.{i}.mlp.{up,down}_proj.{weight,bias}
    model.layers.{i}.input_layernorm.{weight,bias}            after attention
    model.layers.{i}.post_attention_layernorm.{weight,bias}   after the feed-forward
    model.norm.{weight,bias}
    lm_head.weight                 tied to the embedding when absent

After embedding, after every layer and around the final norm the hidden
states are checked for NaN/Inf (NumericError naming the stage) and clamped.
The forward pass holds no state between calls.
"""

from typing import List, Optional, Sequence, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from coder_openapi.core.config import ModelConfig
from coder_openapi.core.errors import NumericError
from coder_openapi.core.loader import WeightStore, get_device
from coder_openapi.core.logging import get_logger
from coder_openapi.layers.attention import MultiHeadAttention, causal_mask
from coder_openapi.layers.feed_forward import FeedForward
from coder_openapi.layers.linear import take_param
from coder_openapi.layers.norm import StableLayerNorm
from coder_openapi.layers.numerics import check_finite, clamp_activations, guard

logger = get_logger("coder_openapi.transformer")


# =========================================================================
# Decoder layer
# =========================================================================

class TransformerLayer(nn.Module):

    def __init__(
        self,
        self_attn: MultiHeadAttention,
        mlp: FeedForward,
        attn_norm: StableLayerNorm,
        ffn_norm: StableLayerNorm,
    ):
        super().__init__()
        self.self_attn = self_attn
        self.mlp = mlp
        self.attn_norm = attn_norm
        self.ffn_norm = ffn_norm

    @classmethod
    def from_store(cls, weights: WeightStore, index: int, config: ModelConfig,
                   device: torch.device) -> "TransformerLayer":
        prefix = f"model.layers.{index}"
        hidden, eps = config.hidden_size, config.layer_norm_eps
        return cls(
            self_attn=MultiHeadAttention.from_store(weights, f"{prefix}.self_attn", config, device),
            mlp=FeedForward.from_store(weights, f"{prefix}.mlp", config, device),
            # HF checkpoints name the norms by position, not by the sublayer they follow
            attn_norm=StableLayerNorm.from_store(
                weights, f"{prefix}.input_layernorm", hidden, eps, device),
            ffn_norm=StableLayerNorm.from_store(
                weights, f"{prefix}.post_attention_layernorm", hidden, eps, device),
        )

    def forward(self, hidden: torch.Tensor, mask: Optional[torch.Tensor] = None) -> torch.Tensor:
        attn_out = self.self_attn(hidden, hidden, hidden, mask)
        hidden = self.attn_norm(clamp_activations(hidden + attn_out))
        ff_out = self.mlp(hidden)
        return self.ffn_norm(clamp_activations(hidden + ff_out))


# =========================================================================
# Full stack
# =========================================================================

class TransformerStack(nn.Module):
    """
    Token ids -> next-token logits.

    Built with from_weights(); every parameter is frozen and the forward
    pass runs under inference_mode.
    """

    def __init__(
        self,
        config: ModelConfig,
        embed_tokens: nn.Parameter,
        layers: List[TransformerLayer],
        norm: StableLayerNorm,
        lm_head: Optional[nn.Parameter] = None,
    ):
        super().__init__()
        self.config = config
        self.embed_tokens = embed_tokens
        self.layers = nn.ModuleList(layers)
        self.norm = norm
        if lm_head is not None:
            self.lm_head = lm_head
        else:
            self.register_parameter("lm_head", None)

    @property
    def tied_embeddings(self) -> bool:
        return self.lm_head is None

    @property
    def device(self) -> torch.device:
        return self.embed_tokens.device

    @classmethod
    def from_weights(
        cls,
        config: ModelConfig,
        weights: WeightStore,
        device: Optional[torch.device] = None,
    ) -> "TransformerStack":
        """
        Move every tensor the architecture needs out of the store.

        Missing weights become zeros (logged), mis-shaped weights raise
        NumericError. Tensors left in the store afterwards are unused by
        this architecture and are reported at debug level.
        """
        device = device or get_device()
        hidden, vocab = config.hidden_size, config.vocab_size

        embed_tokens = take_param(weights, "model.embed_tokens.weight", (vocab, hidden), device)
        layers = [
            TransformerLayer.from_store(weights, i, config, device)
            for i in range(config.num_hidden_layers)
        ]
        norm = StableLayerNorm.from_store(weights, "model.norm", hidden, config.layer_norm_eps, device)
        lm_head = take_param(weights, "lm_head.weight", (vocab, hidden), device, required=False)

        unused = weights.remaining()
        if unused:
            logger.debug(f"{config.model_id}: {len(unused)} checkpoint tensors unused: {unused[:8]}")

        stack = cls(config, embed_tokens, layers, norm, lm_head)
        stack.eval()
        n_params = sum(p.numel() for p in stack.parameters())
        logger.info(
            f"{config.model_id}: built {config.num_hidden_layers} layers, "
            f"{n_params:,} params on {device}"
            + (" (tied lm_head)" if stack.tied_embeddings else "")
        )
        return stack

    def _input_ids(self, token_ids: Union[Sequence[int], torch.Tensor]) -> torch.Tensor:
        ids = torch.as_tensor(token_ids, dtype=torch.long)
        if ids.dim() != 1:
            raise NumericError(f"expected a 1-D id sequence, got shape {tuple(ids.shape)}",
                               stage="embedding", tensor="input_ids")
        if ids.numel() == 0:
            raise NumericError("empty token sequence", stage="embedding", tensor="input_ids")
        if (ids < 0).any():
            raise NumericError("negative token id", stage="embedding", tensor="input_ids")
        if (ids >= self.config.vocab_size).any():
            raise NumericError(
                f"token id {int(ids.max().item())} out of range for vocab {self.config.vocab_size}",
                stage="embedding", tensor="input_ids",
            )
        return ids.to(self.device)

    def forward(self, token_ids: Union[Sequence[int], torch.Tensor]) -> torch.Tensor:
        """
        Args:
            token_ids: 1-D sequence of ids in [0, vocab_size)

        Returns:
            logits: (seq_len, vocab_size)
        """
        with torch.inference_mode():
            ids = self._input_ids(token_ids)
            hidden = guard(F.embedding(ids, self.embed_tokens), "embedding")
            mask = causal_mask(ids.shape[0], self.device)

            for i, layer in enumerate(self.layers):
                hidden = guard(layer(hidden, mask), f"layer_{i}")

            check_finite(hidden, "final_norm", "input")
            hidden = guard(self.norm(hidden), "final_norm", "output")

            head = self.embed_tokens if self.lm_head is None else self.lm_head
            logits = F.linear(hidden, head)
            return check_finite(logits, "lm_head", "logits")
