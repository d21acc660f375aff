"""
coder-openapi :: Configuration

One AppConfig value is built at startup from config/app.yml and handed
to the loader, the model manager and the server. There is no global
registry: everything that needs configuration receives it explicitly.

The models: section is the manifest. Per model id it names the hub repo,
the files to fetch and, optionally, architecture overrides. Anything the
manifest leaves out is back-filled from the downloaded config.json and
generation_config.json.
"""

import json
import math
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from coder_openapi.core.errors import ManifestError

DEFAULT_CONFIG_PATH = "config/app.yml"

ARCH_FIELDS = (
    "hidden_size",
    "num_attention_heads",
    "num_key_value_heads",
    "num_hidden_layers",
    "intermediate_size",
    "vocab_size",
    "layer_norm_eps",
)

# Hugging Face config.json spells some hyperparameters differently
_CONFIG_ALIASES = {
    "num_hidden_layers": ("num_hidden_layers", "num_layers", "n_layer"),
    "layer_norm_eps": ("layer_norm_eps", "layer_norm_epsilon", "rms_norm_eps"),
    "num_attention_heads": ("num_attention_heads", "n_head"),
    "hidden_size": ("hidden_size", "n_embd"),
}


def _known(cls, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the keys that are dataclass fields of cls."""
    if not data:
        return {}
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: Optional[str] = None
    shutdown_timeout: int = 30


@dataclass
class ChatDefaults:
    temperature: float = 0.7
    top_p: float = 0.9
    n: int = 1
    max_tokens: int = 2048
    stream: bool = False


@dataclass
class StreamConfig:
    buffer_size: int = 32         # bounded channel capacity (fragments)
    send_timeout: float = 5.0     # seconds a full channel is tolerated


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False
    file: Optional[str] = None


@dataclass
class MetricsConfig:
    enabled: bool = True


@dataclass(frozen=True)
class ModelFiles:
    """Files a model needs locally before it can be enabled."""
    weights: Tuple[str, ...]
    config: str = "config.json"
    tokenizer: str = "tokenizer.json"
    tokenizer_config: str = "tokenizer_config.json"
    generation_config: str = "generation_config.json"

    def all(self) -> List[str]:
        names = list(self.weights) + [
            self.config, self.tokenizer, self.tokenizer_config, self.generation_config,
        ]
        # tokenizer and tokenizer_config may name the same file
        return list(dict.fromkeys(names))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ModelFiles":
        weights = data.get("weights")
        if not weights:
            raise ManifestError("model_files.weights must list at least one shard")
        if isinstance(weights, str):
            weights = [weights]
        return ModelFiles(weights=tuple(weights), **_known(ModelFiles, {
            k: v for k, v in data.items() if k != "weights"
        }))


@dataclass(frozen=True)
class ModelManifest:
    """One entry of the models: section."""
    model_id: str
    hf_hub_id: str
    files: ModelFiles
    name: str = ""
    description: str = ""
    overrides: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(model_id: str, data: Dict[str, Any]) -> "ModelManifest":
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest entry for {model_id} must be a mapping")
        hub_id = data.get("hf_hub_id")
        if not hub_id:
            raise ManifestError(f"Manifest entry for {model_id} has no hf_hub_id")
        if "model_files" not in data:
            raise ManifestError(f"Manifest entry for {model_id} has no model_files")
        overrides = {
            k: data[k] for k in ARCH_FIELDS + ("temperature", "top_p", "max_tokens")
            if data.get(k) is not None
        }
        return ModelManifest(
            model_id=model_id,
            hf_hub_id=hub_id,
            files=ModelFiles.from_dict(data["model_files"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            overrides=overrides,
        )


@dataclass(frozen=True)
class ModelConfig:
    """
    Fully resolved per-model configuration.

    Architecture hyperparameters, generation defaults, file manifest and
    hub id. Immutable once built by AppConfig.get_model_config().
    """
    model_id: str
    hf_hub_id: str
    files: ModelFiles

    # Architecture
    vocab_size: int
    hidden_size: int
    num_attention_heads: int
    num_hidden_layers: int
    intermediate_size: int
    num_key_value_heads: Optional[int] = None
    layer_norm_eps: float = 1e-5

    # Generation defaults
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 2048

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def kv_heads(self) -> int:
        return self.num_key_value_heads or self.num_attention_heads

    def validate(self) -> "ModelConfig":
        for name in ("vocab_size", "hidden_size", "num_attention_heads",
                     "num_hidden_layers", "intermediate_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ManifestError(f"{self.model_id}: {name} must be a positive integer, got {value!r}")
        if self.hidden_size % self.num_attention_heads:
            raise ManifestError(
                f"{self.model_id}: hidden_size {self.hidden_size} is not divisible "
                f"by num_attention_heads {self.num_attention_heads}"
            )
        if self.num_attention_heads % self.kv_heads:
            raise ManifestError(
                f"{self.model_id}: num_attention_heads {self.num_attention_heads} is not "
                f"a multiple of num_key_value_heads {self.kv_heads}"
            )
        if not (self.layer_norm_eps > 0 and math.isfinite(self.layer_norm_eps)):
            raise ManifestError(f"{self.model_id}: layer_norm_eps must be finite and > 0")
        return self


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Cannot read {path}: {e}") from e


@dataclass
class AppConfig:
    """Application configuration, loaded once from YAML."""
    models: Dict[str, ModelManifest]
    models_cache_dir: str = "models_cache"
    server: ServerConfig = field(default_factory=ServerConfig)
    chat_defaults: ChatDefaults = field(default_factory=ChatDefaults)
    stream: StreamConfig = field(default_factory=StreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @staticmethod
    def load(path: str = DEFAULT_CONFIG_PATH) -> "AppConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ManifestError(f"Cannot open config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {path}: {e}") from e
        return AppConfig.from_dict(data or {})

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AppConfig":
        models = {
            model_id: ModelManifest.from_dict(model_id, entry)
            for model_id, entry in (data.get("models") or {}).items()
        }
        chat = data.get("chat") or {}
        return AppConfig(
            models=models,
            models_cache_dir=data.get("models_cache_dir", "models_cache"),
            server=ServerConfig(**_known(ServerConfig, data.get("server"))),
            chat_defaults=ChatDefaults(**_known(ChatDefaults, chat.get("defaults"))),
            stream=StreamConfig(**_known(StreamConfig, chat.get("stream"))),
            logging=LoggingConfig(**_known(LoggingConfig, data.get("logging"))),
            metrics=MetricsConfig(**_known(MetricsConfig, data.get("metrics"))),
        )

    def with_overrides(self, **changes) -> "AppConfig":
        """Copy with top-level or server.* fields replaced (CLI flags)."""
        server_changes = {k: v for k, v in changes.items() if k in ("host", "port", "api_key") and v is not None}
        top = {k: v for k, v in changes.items() if k not in server_changes and v is not None}
        return replace(self, server=replace(self.server, **server_changes), **top)

    # -----------------------------------------------------------------
    # Manifest lookups
    # -----------------------------------------------------------------

    def manifest(self, model_id: str) -> ModelManifest:
        if model_id not in self.models:
            available = ", ".join(self.models) or "none"
            raise ManifestError(f"Unknown model: {model_id}. Available: {available}")
        return self.models[model_id]

    def model_dir(self, model_id: str) -> Path:
        return Path(self.models_cache_dir) / self.manifest(model_id).hf_hub_id

    def get_model_config(self, model_id: str) -> ModelConfig:
        """
        Resolve the full ModelConfig for a model id.

        Manifest overrides win; missing hyperparameters come from the local
        config.json, missing generation defaults from generation_config.json
        and then from chat.defaults.
        """
        manifest = self.manifest(model_id)
        model_dir = self.model_dir(model_id)
        values: Dict[str, Any] = dict(manifest.overrides)

        if any(values.get(k) is None for k in ARCH_FIELDS):
            remote = _read_json(model_dir / manifest.files.config)
            for key in ARCH_FIELDS:
                if values.get(key) is not None:
                    continue
                for alias in _CONFIG_ALIASES.get(key, (key,)):
                    if remote.get(alias) is not None:
                        values[key] = remote[alias]
                        break

        generation = _read_json(model_dir / manifest.files.generation_config)
        defaults = self.chat_defaults
        values.setdefault("temperature", generation.get("temperature", defaults.temperature))
        values.setdefault("top_p", generation.get("top_p", defaults.top_p))
        values.setdefault("max_tokens", generation.get("max_new_tokens", defaults.max_tokens))

        missing = [k for k in ("vocab_size", "hidden_size", "num_attention_heads",
                               "num_hidden_layers", "intermediate_size") if values.get(k) is None]
        if missing:
            raise ManifestError(
                f"{model_id}: missing hyperparameters {missing} "
                f"(not in manifest and no {manifest.files.config} in {model_dir})"
            )
        if values.get("layer_norm_eps") is None:
            values.pop("layer_norm_eps", None)

        return ModelConfig(
            model_id=model_id,
            hf_hub_id=manifest.hf_hub_id,
            files=manifest.files,
            **values,
        ).validate()
