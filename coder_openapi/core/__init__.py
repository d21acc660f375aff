"""
coder-openapi :: Core

Infrastructure shared by every model kind.
  - config: YAML application config and per-model ModelConfig
  - errors: typed engine failures
  - loader: hub fetch and safetensors weight loading
  - tokenizer: text <-> token ids
  - sampling: greedy / temperature / top-p
"""

from coder_openapi.core.config import AppConfig, ModelConfig
from coder_openapi.core.errors import (
    AssetError, CoderError, InvalidParameter, ManifestError,
    ModelUnavailable, NumericError, TokenizerError,
)
from coder_openapi.core.loader import AssetLoader, WeightStore
from coder_openapi.core.tokenizer import CoderTokenizer, load_tokenizer
from coder_openapi.core.sampling import greedy, sample_next, temperature_sample
