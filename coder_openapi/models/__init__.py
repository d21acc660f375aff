"""
Model implementations for coder-openapi.
One post-norm transformer stack serves every registered model kind.
"""

from coder_openapi.models.registry import ModelHandle, ModelKind, list_model_ids
from coder_openapi.models.transformer import TransformerLayer, TransformerStack
