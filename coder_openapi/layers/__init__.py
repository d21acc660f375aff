"""
coder-openapi :: Transformer building blocks.
Every block is built from a WeightStore and keeps its parameters frozen.
"""

from coder_openapi.layers.attention import MultiHeadAttention, causal_mask
from coder_openapi.layers.feed_forward import FeedForward
from coder_openapi.layers.linear import Projection, take_param
from coder_openapi.layers.norm import StableLayerNorm
