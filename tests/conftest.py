"""
Shared fixtures for coder-openapi tests.

Everything runs on CPU against tiny synthetic models:
  - a WordLevel tokenizer over a fixed word list
  - random safetensors weights in the checkpoint naming the stack expects
  - a fake hub that copies files from a local "remote" directory and
    records every fetch
"""

import json
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from safetensors.torch import save_file
from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from coder_openapi.core.config import AppConfig, ModelConfig, ModelFiles
from coder_openapi.core.loader import AssetLoader, WeightStore
from coder_openapi.core.metrics import CoderMetrics
from coder_openapi.core.tokenizer import CoderTokenizer
from coder_openapi.engine.model_manager import ModelManager
from coder_openapi.models.registry import ModelHandle, ModelKind
from coder_openapi.models.transformer import TransformerStack


WORDS = [
    "[UNK]", "Hello", "world", "def", "return", "print", "(", ")",
    ":", "x", "y", "=", "+", "if", "else", "for",
]

TINY_ARCH = {
    "vocab_size": len(WORDS),
    "hidden_size": 8,
    "num_attention_heads": 2,
    "num_key_value_heads": 2,
    "num_hidden_layers": 2,
    "intermediate_size": 16,
    "layer_norm_eps": 1e-5,
}

HUB_IDS = {
    "yi-coder": "test-org/yi-coder-tiny",
    "deepseek-coder": "test-org/deepseek-coder-tiny",
}

WEIGHT_FILES = {
    "yi-coder": ["model.safetensors"],
    "deepseek-coder": ["model-00001-of-00002.safetensors", "model-00002-of-00002.safetensors"],
}


# =========================================================================
# Builders
# =========================================================================

def build_tokenizer() -> Tokenizer:
    tokenizer = Tokenizer(WordLevel(vocab={w: i for i, w in enumerate(WORDS)}, unk_token="[UNK]"))
    tokenizer.pre_tokenizer = Whitespace()
    return tokenizer


def random_state_dict(arch: Dict = TINY_ARCH, seed: int = 0, tie_embeddings: bool = False) -> Dict[str, torch.Tensor]:
    """Every tensor the stack consumes, in checkpoint naming, small random values."""
    g = torch.Generator().manual_seed(seed)
    hidden = arch["hidden_size"]
    vocab = arch["vocab_size"]
    inter = arch["intermediate_size"]
    head_dim = hidden // arch["num_attention_heads"]
    kv_out = arch.get("num_key_value_heads", arch["num_attention_heads"]) * head_dim

    def rand(*shape):
        return torch.randn(*shape, generator=g) * 0.2

    sd = {"model.embed_tokens.weight": rand(vocab, hidden)}
    for i in range(arch["num_hidden_layers"]):
        p = f"model.layers.{i}"
        sd[f"{p}.self_attn.q_proj.weight"] = rand(hidden, hidden)
        sd[f"{p}.self_attn.k_proj.weight"] = rand(kv_out, hidden)
        sd[f"{p}.self_attn.v_proj.weight"] = rand(kv_out, hidden)
        sd[f"{p}.self_attn.o_proj.weight"] = rand(hidden, hidden)
        sd[f"{p}.self_attn.q_proj.bias"] = rand(hidden)
        sd[f"{p}.mlp.up_proj.weight"] = rand(inter, hidden)
        sd[f"{p}.mlp.down_proj.weight"] = rand(hidden, inter)
        sd[f"{p}.input_layernorm.weight"] = torch.ones(hidden)
        sd[f"{p}.input_layernorm.bias"] = torch.zeros(hidden)
        sd[f"{p}.post_attention_layernorm.weight"] = torch.ones(hidden)
    sd["model.norm.weight"] = torch.ones(hidden)
    if not tie_embeddings:
        sd["lm_head.weight"] = rand(vocab, hidden)
    return sd


def tiny_model_config(model_id: str = "yi-coder", **overrides) -> ModelConfig:
    values = dict(TINY_ARCH)
    values.update(overrides)
    return ModelConfig(
        model_id=model_id,
        hf_hub_id=HUB_IDS.get(model_id, "test-org/tiny"),
        files=ModelFiles(weights=tuple(WEIGHT_FILES.get(model_id, ["model.safetensors"]))),
        temperature=0.7,
        top_p=0.9,
        max_tokens=4,
        **values,
    )


def write_model_dir(directory: Path, weight_files: List[str], seed: int = 0,
                    arch: Dict = TINY_ARCH) -> Path:
    """A complete model directory: shards, config, tokenizer, generation config."""
    directory.mkdir(parents=True, exist_ok=True)
    sd = random_state_dict(arch, seed=seed)
    names = sorted(sd)
    per_shard = -(-len(names) // len(weight_files))
    for i, filename in enumerate(weight_files):
        shard = {n: sd[n].contiguous() for n in names[i * per_shard:(i + 1) * per_shard]}
        save_file(shard, str(directory / filename))
    (directory / "config.json").write_text(json.dumps(arch))
    build_tokenizer().save(str(directory / "tokenizer.json"))
    (directory / "tokenizer_config.json").write_text(json.dumps({"model_max_length": 64}))
    (directory / "generation_config.json").write_text(json.dumps({"max_new_tokens": 4}))
    return directory


def app_config_dict(cache_dir: Path) -> Dict:
    return {
        "models_cache_dir": str(cache_dir),
        "server": {"host": "127.0.0.1", "port": 0},
        "chat": {
            "defaults": {"temperature": 0.7, "top_p": 0.9, "n": 1, "max_tokens": 4, "stream": False},
            "stream": {"buffer_size": 4, "send_timeout": 1.0},
        },
        "models": {
            model_id: {
                "hf_hub_id": HUB_IDS[model_id],
                "model_files": {"weights": WEIGHT_FILES[model_id]},
            }
            for model_id in HUB_IDS
        },
    }


class FakeHub:
    """Hub stand-in: copies <remote_root>/<hub_id>/<filename> into local_dir."""

    def __init__(self, remote_root: Path, fail: bool = False, delay: float = 0.0):
        self.remote_root = Path(remote_root)
        self.fail = fail
        self.delay = delay
        self.calls: List[tuple] = []

    def fetch(self, hub_id: str, filename: str, local_dir: Path) -> Path:
        self.calls.append((hub_id, filename))
        if self.delay:
            import time
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError(f"hub unreachable: {hub_id}/{filename}")
        source = self.remote_root / hub_id / filename
        if not source.exists():
            raise FileNotFoundError(f"404: {hub_id}/{filename}")
        dest = Path(local_dir) / filename
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        return dest


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def cpu():
    return torch.device("cpu")


@pytest.fixture
def tokenizer() -> CoderTokenizer:
    return CoderTokenizer(build_tokenizer())


@pytest.fixture
def model_config() -> ModelConfig:
    return tiny_model_config("yi-coder")


@pytest.fixture
def handle(model_config, tokenizer, cpu) -> ModelHandle:
    stack = TransformerStack.from_weights(model_config, WeightStore(random_state_dict()), device=cpu)
    return ModelHandle(kind=ModelKind.YI_CODER, config=model_config, stack=stack, tokenizer=tokenizer)


@pytest.fixture
def remote_root(tmp_path) -> Path:
    root = tmp_path / "remote"
    for model_id, hub_id in HUB_IDS.items():
        write_model_dir(root / hub_id, WEIGHT_FILES[model_id], seed=len(model_id))
    return root


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    return tmp_path / "models_cache"


@pytest.fixture
def app_config(cache_dir) -> AppConfig:
    return AppConfig.from_dict(app_config_dict(cache_dir))


@pytest.fixture
def fake_hub(remote_root) -> FakeHub:
    return FakeHub(remote_root)


@pytest.fixture
def loader(app_config, fake_hub) -> AssetLoader:
    return AssetLoader(app_config, hub=fake_hub)


@pytest.fixture
def manager(app_config, loader, cpu) -> ModelManager:
    return ModelManager(app_config, loader=loader, metrics=CoderMetrics(), device=cpu)


def install_local(cache_dir: Path, model_id: str, seed: int = 0) -> Path:
    """Place a complete model directory in the cache, as if already downloaded."""
    return write_model_dir(cache_dir / HUB_IDS[model_id], WEIGHT_FILES[model_id], seed=seed)
