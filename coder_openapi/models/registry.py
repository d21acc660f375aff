"""
coder-openapi :: Model Registry

The closed set of models this server runs. Each kind has exactly one slot
in the model manager; a live model is a ModelHandle.

To add a model:
    1. Add a ModelKind member whose value is the model id
    2. Add its manifest entry under models: in config/app.yml
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

import torch

from coder_openapi.core.config import ModelConfig
from coder_openapi.core.errors import ModelUnavailable
from coder_openapi.core.tokenizer import CoderTokenizer
from coder_openapi.models.transformer import TransformerStack


class ModelKind(Enum):
    YI_CODER = "yi-coder"
    DEEPSEEK_CODER = "deepseek-coder"

    @property
    def display_name(self) -> str:
        return _DISPLAY[self][0]

    @property
    def description(self) -> str:
        return _DISPLAY[self][1]

    @staticmethod
    def from_id(model_id: str) -> "ModelKind":
        for kind in ModelKind:
            if kind.value == model_id:
                return kind
        available = ", ".join(list_model_ids())
        raise ModelUnavailable(f"Model {model_id} is not available. Available: {available}")


_DISPLAY: Dict[ModelKind, tuple] = {
    ModelKind.YI_CODER: ("Yi-Coder", "Yi series code generation model"),
    ModelKind.DEEPSEEK_CODER: ("Deepseek-Coder", "Deepseek series code generation model"),
}


def list_model_ids() -> List[str]:
    return [kind.value for kind in ModelKind]


@dataclass
class ModelHandle:
    """A loaded model: resolved config, frozen stack and tokenizer."""
    kind: ModelKind
    config: ModelConfig
    stack: TransformerStack
    tokenizer: CoderTokenizer

    @property
    def model_id(self) -> str:
        return self.kind.value

    @property
    def device(self) -> torch.device:
        return self.stack.device
