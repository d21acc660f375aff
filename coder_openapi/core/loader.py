"""
coder-openapi :: Asset Loader

Resolves the files a model needs, fetches the missing ones from the hub
and memory-maps safetensors shards into a WeightStore.

  resolve(model_id)       -> required local paths
  ensure_local(model_id)  -> fetch what is missing (never re-fetches)
  load_weights(paths)     -> WeightStore on the active device

Failures:
  unknown model id            ManifestError
  hub / network failure       AssetError (no retry)
  file missing after fetch    AssetError
  malformed shard             AssetError
"""

import asyncio
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import torch
from safetensors import SafetensorError, safe_open

from coder_openapi.core.config import AppConfig
from coder_openapi.core.errors import AssetError, CoderError
from coder_openapi.core.hub import HubClient
from coder_openapi.core.logging import get_logger

logger = get_logger("coder_openapi.loader")

BYTES_PER_MB = 1024.0 * 1024.0
BYTES_PER_GB = 1024.0 * 1024.0 * 1024.0


def get_device() -> torch.device:
    """Accelerator when present, host CPU otherwise."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


class WeightStore:
    """
    Parameter path -> tensor, built once per load.

    Tensors are handed out with take(), which removes them from the store:
    the layer that takes a tensor owns it, nothing else keeps a reference.
    """

    def __init__(self, tensors: Optional[Dict[str, torch.Tensor]] = None):
        self._tensors: Dict[str, torch.Tensor] = dict(tensors or {})

    def __len__(self) -> int:
        return len(self._tensors)

    def __contains__(self, name: str) -> bool:
        return name in self._tensors

    def names(self) -> List[str]:
        return sorted(self._tensors)

    def take(self, name: str) -> Optional[torch.Tensor]:
        return self._tensors.pop(name, None)

    def remaining(self) -> List[str]:
        return self.names()


# =========================================================================
# safetensors
# =========================================================================

def _load_safetensors_file(path: Path, device: torch.device) -> Dict[str, torch.Tensor]:
    """Memory-map one .safetensors shard and materialize its tensors on device."""
    tensors: Dict[str, torch.Tensor] = {}
    total_bytes = 0
    try:
        with safe_open(str(path), framework="pt", device="cpu") as f:
            for name in f.keys():
                tensor = f.get_tensor(name)
                size = tensor.numel() * tensor.element_size()
                total_bytes += size
                logger.debug(
                    f"Loaded tensor: {name}, shape: {tuple(tensor.shape)}, dtype: {tensor.dtype}, "
                    f"size: {size / BYTES_PER_MB:.2f} MB"
                )
                tensors[name] = tensor.to(device=device, dtype=torch.float32)
    except FileNotFoundError as e:
        raise AssetError(f"Weight file not found: {path}") from e
    except (SafetensorError, OSError, RuntimeError, ValueError) as e:
        raise AssetError(f"Malformed weight container {path}: {e}") from e

    logger.info(
        f"Total loaded size for {path.name}: {total_bytes / BYTES_PER_GB:.2f} GB "
        f"({total_bytes / BYTES_PER_MB:.2f} MB), {len(tensors)} tensors"
    )
    return tensors


class AssetLoader:
    """Per-model file resolution, hub fetch and weight loading."""

    def __init__(self, config: AppConfig, hub: Optional[HubClient] = None):
        self.config = config
        self.hub = hub or HubClient()

    def resolve(self, model_id: str) -> List[Path]:
        """Every file the model needs, under its cache directory."""
        manifest = self.config.manifest(model_id)
        model_dir = self.config.model_dir(model_id)
        return [model_dir / name for name in manifest.files.all()]

    def missing(self, model_id: str) -> List[Path]:
        return [p for p in self.resolve(model_id) if not p.exists()]

    def weight_paths(self, model_id: str) -> List[Path]:
        manifest = self.config.manifest(model_id)
        model_dir = self.config.model_dir(model_id)
        return [model_dir / name for name in manifest.files.weights]

    def tokenizer_path(self, model_id: str) -> Path:
        """The fast-tokenizer JSON among the manifest files, else the declared tokenizer."""
        files = self.config.manifest(model_id).files
        model_dir = self.config.model_dir(model_id)
        for name in (files.tokenizer, files.tokenizer_config):
            if name.endswith("tokenizer.json"):
                return model_dir / name
        return model_dir / files.tokenizer

    async def ensure_local(self, model_id: str) -> List[Path]:
        """
        Fetch every missing file for model_id.

        Files already on disk are left alone, so calling this twice with an
        unchanged manifest performs no fetch the second time.
        """
        manifest = self.config.manifest(model_id)
        model_dir = self.config.model_dir(model_id)
        model_dir.mkdir(parents=True, exist_ok=True)

        paths = []
        for filename in manifest.files.all():
            path = model_dir / filename
            if not path.exists():
                try:
                    await asyncio.to_thread(self.hub.fetch, manifest.hf_hub_id, filename, model_dir)
                except CoderError:
                    raise
                except Exception as e:
                    raise AssetError(f"Failed to fetch {manifest.hf_hub_id}/{filename}: {e}") from e
                if not path.exists():
                    raise AssetError(f"{filename} still missing in {model_dir} after fetch")
            paths.append(path)
        return paths

    def load_weights(self, paths: Iterable[Path], device: Optional[torch.device] = None) -> WeightStore:
        """Load all .safetensors containers among paths into one WeightStore."""
        device = device or get_device()
        tensors: Dict[str, torch.Tensor] = {}
        for path in paths:
            path = Path(path)
            if path.suffix != ".safetensors":
                continue
            if not path.exists():
                raise AssetError(f"Weight file not found: {path}")
            tensors.update(_load_safetensors_file(path, device))
        if not tensors:
            raise AssetError("No tensors found in the given weight files")
        return WeightStore(tensors)
