"""
coder-openapi: OpenAI-style chat completions for locally hosted code models.

  Assets:      Hugging Face Hub -> models_cache/<hub id>/ -> safetensors mmap
  Compute:     one post-norm transformer stack, NaN/Inf checked at every stage
  Sampling:    greedy, temperature, top-p
  Serving:     aiohttp, per-model read-write locks, bounded SSE streaming
"""

__version__ = "0.1.0"
