"""
coder-openapi :: Model Manager

Owns the lifecycle of every model kind:

    status(id)            -> ModelStatus, read from disk on every call
    download(id)          -> fetch missing files, build, install
    load(id)              -> build from files already on disk, install
    get(id)               -> installed ModelHandle or None
    chat_completion(...)  -> run the generation loop on an installed model

One slot per ModelKind, each behind its own ReadWriteLock: requests hold
the read lock while they generate, installing a new handle takes the
write lock. Fetching and building happen outside the RW lock (serialized
per kind) so a download never stalls requests to the model already
installed, and kinds never contend with each other.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

import torch

from coder_openapi.core.chat import ChatMessage, ChatParams
from coder_openapi.core.config import AppConfig
from coder_openapi.core.errors import CoderError, ModelUnavailable
from coder_openapi.core.loader import AssetLoader, get_device
from coder_openapi.core.locks import ReadWriteLock
from coder_openapi.core.logging import get_logger
from coder_openapi.core.metrics import CoderMetrics
from coder_openapi.core.tokenizer import load_tokenizer
from coder_openapi.engine.channel import StreamChannel
from coder_openapi.engine.generation import GenerationLoop, GenerationResult
from coder_openapi.models.registry import ModelHandle, ModelKind
from coder_openapi.models.transformer import TransformerStack

logger = get_logger("coder_openapi.model_manager")


@dataclass(frozen=True)
class ModelStatus:
    is_cached: bool = False      # at least one required file on disk
    is_enabled: bool = False     # every required file on disk

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


class _ModelSlot:
    """Installed handle of one kind, plus the locks that guard it."""

    def __init__(self, kind: ModelKind):
        self.kind = kind
        self.lock = ReadWriteLock()
        self.install_lock = asyncio.Lock()
        self.handle: Optional[ModelHandle] = None


class ModelManager:
    """
    Args:
        config: application configuration
        loader: asset loader (default: AssetLoader with a real hub client)
        metrics: metrics sink (default: per config.metrics)
        device: compute device for weights (default: get_device())
        generation: generation loop (default: GenerationLoop())
    """

    def __init__(
        self,
        config: AppConfig,
        loader: Optional[AssetLoader] = None,
        metrics: Optional[CoderMetrics] = None,
        device: Optional[torch.device] = None,
        generation: Optional[GenerationLoop] = None,
    ):
        self.config = config
        self.loader = loader or AssetLoader(config)
        self.metrics = metrics or CoderMetrics(enabled=config.metrics.enabled)
        self.device = device or get_device()
        self.generation = generation or GenerationLoop()
        self._slots: Dict[ModelKind, _ModelSlot] = {kind: _ModelSlot(kind) for kind in ModelKind}
        self._status: Dict[str, ModelStatus] = {}

    # -----------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------

    def status(self, model_id: str) -> ModelStatus:
        """Check the files on disk. Unknown model id -> ManifestError."""
        paths = self.loader.resolve(model_id)
        present = [p.exists() for p in paths]
        status = ModelStatus(is_cached=any(present), is_enabled=all(present))
        self._status[model_id] = status
        return status

    @property
    def statuses(self) -> Dict[str, ModelStatus]:
        """Last computed status per model id."""
        return dict(self._status)

    def refresh(self) -> Dict[str, ModelStatus]:
        return {model_id: self.status(model_id) for model_id in self.config.models}

    def loaded_models(self) -> List[str]:
        return [kind.value for kind, slot in self._slots.items() if slot.handle is not None]

    def _slot(self, model_id: str) -> _ModelSlot:
        return self._slots[ModelKind.from_id(model_id)]

    def _update_loaded_gauge(self):
        self.metrics.set_models_loaded(len(self.loaded_models()))

    # -----------------------------------------------------------------
    # Install
    # -----------------------------------------------------------------

    def _build(self, kind: ModelKind) -> ModelHandle:
        """Blocking: read config, tokenizer and weights, construct the stack."""
        model_id = kind.value
        config = self.config.get_model_config(model_id)
        tokenizer = load_tokenizer(self.loader.tokenizer_path(model_id))
        if tokenizer.vocab_size > config.vocab_size:
            logger.warning(
                f"{model_id}: tokenizer vocab {tokenizer.vocab_size} exceeds "
                f"model vocab {config.vocab_size}"
            )
        weights = self.loader.load_weights(self.loader.weight_paths(model_id), device=self.device)
        stack = TransformerStack.from_weights(config, weights, device=self.device)
        return ModelHandle(kind=kind, config=config, stack=stack, tokenizer=tokenizer)

    async def _install(self, model_id: str, fetch: bool) -> ModelHandle:
        self.config.manifest(model_id)
        slot = self._slot(model_id)

        async with slot.install_lock:
            try:
                if fetch:
                    await self.loader.ensure_local(model_id)
                else:
                    missing = self.loader.missing(model_id)
                    if missing:
                        names = ", ".join(p.name for p in missing)
                        raise ModelUnavailable(f"Model {model_id} is not downloaded (missing: {names})")
                handle = await asyncio.to_thread(self._build, slot.kind)
            except Exception:
                self.metrics.on_download(model_id, "error")
                raise
            finally:
                self.status(model_id)

            async with slot.lock.write():
                replaced = slot.handle is not None
                slot.handle = handle

        self._update_loaded_gauge()
        self.metrics.on_download(model_id, "ok")
        logger.info(f"Model {model_id} {'reloaded' if replaced else 'ready'} on {handle.device}")
        return handle

    async def download(self, model_id: str) -> ModelHandle:
        """
        Fetch whatever is missing, then build and install the model.

        On failure the previously installed handle (if any) stays in place.
        """
        logger.info(f"Downloading model {model_id}")
        return await self._install(model_id, fetch=True)

    async def load(self, model_id: str) -> ModelHandle:
        """Build and install from local files only; never touches the hub."""
        return await self._install(model_id, fetch=False)

    async def load_enabled(self) -> List[str]:
        """Install every model whose files are all on disk. Used at startup."""
        loaded = []
        for kind in ModelKind:
            model_id = kind.value
            if model_id not in self.config.models or not self.status(model_id).is_enabled:
                continue
            try:
                await self.load(model_id)
                loaded.append(model_id)
            except CoderError as e:
                logger.error(f"Failed to load {model_id} at startup: {e.message}")
        return loaded

    async def get(self, model_id: str) -> Optional[ModelHandle]:
        slot = self._slot(model_id)
        async with slot.lock.read():
            return slot.handle

    async def close(self):
        """Drop every installed handle."""
        for slot in self._slots.values():
            async with slot.lock.write():
                slot.handle = None
        self._update_loaded_gauge()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -----------------------------------------------------------------
    # Entry points for the HTTP layer
    # -----------------------------------------------------------------

    def _require_known(self, model_id: str):
        if model_id not in self.config.models:
            raise ModelUnavailable(f"Model {model_id} is not available")
        ModelKind.from_id(model_id)

    async def check_available(self, model_id: str) -> ModelHandle:
        """Installed handle, or ModelUnavailable."""
        self._require_known(model_id)
        handle = await self.get(model_id)
        if handle is None:
            raise ModelUnavailable(f"Model {model_id} is not downloaded or not enabled")
        return handle

    def list_models(self) -> List[dict]:
        models = []
        for kind in ModelKind:
            model_id = kind.value
            if model_id not in self.config.models:
                continue
            manifest = self.config.manifest(model_id)
            status = self.status(model_id)
            models.append({
                "id": model_id,
                "object": "model",
                "name": manifest.name or kind.display_name,
                "description": manifest.description or kind.description,
                "owned_by": manifest.hf_hub_id.split("/")[0],
                "is_cached": status.is_cached,
                "is_enabled": status.is_enabled,
            })
        return models

    async def download_model(self, model_id: str) -> dict:
        self._require_known(model_id)
        await self.download(model_id)
        return {"status": "success", "model_id": model_id}

    async def chat_completion(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        params: ChatParams,
        channel: Optional[StreamChannel] = None,
    ) -> GenerationResult:
        """
        Generate a reply with an installed model.

        With a channel, streams a single choice into it (the channel is
        finished on return); without one, returns params.n choices.
        """
        start = self.metrics.on_request_start()
        try:
            self._require_known(model_id)
        except ModelUnavailable:
            if channel is not None:
                channel.finish()
            raise
        slot = self._slot(model_id)

        async with slot.lock.read():
            handle = slot.handle
            if handle is None:
                if channel is not None:
                    channel.finish()
                raise ModelUnavailable(f"Model {model_id} is not downloaded or not enabled")
            try:
                if channel is None:
                    result = await self.generation.run(handle, messages, params)
                else:
                    result = await self.generation.generate_stream(handle, messages, params, channel)
            except CoderError as e:
                self.metrics.on_request_end(model_id, start, 0, 0, outcome=e.error_type)
                raise

        self.metrics.on_request_end(
            model_id, start, result.prompt_tokens, result.completion_tokens,
            outcome="ok" if result.finish_reason == "length" else result.finish_reason,
        )
        return result
