"""
coder-openapi :: Test Asset Loader

Tests:
  - file resolution under models_cache/<hub id>/
  - hub fetch of missing files only (idempotent)
  - hub failures surface as AssetError, without retry
  - safetensors loading across shards, malformed containers
  - WeightStore ownership (take removes)
  - HubClient -> hf_hub_download arguments
"""

import os
import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from safetensors.torch import save_file

from coder_openapi.core import hub as hub_module
from coder_openapi.core.errors import AssetError, ManifestError
from coder_openapi.core.hub import HubClient
from coder_openapi.core.loader import AssetLoader, WeightStore

from conftest import HUB_IDS, WEIGHT_FILES, FakeHub, install_local, random_state_dict


class TestResolve:

    def test_resolve_paths(self, loader, cache_dir):
        paths = loader.resolve("deepseek-coder")
        model_dir = cache_dir / HUB_IDS["deepseek-coder"]
        assert all(p.parent == model_dir for p in paths)
        names = [p.name for p in paths]
        assert names[:2] == WEIGHT_FILES["deepseek-coder"]
        assert "config.json" in names
        assert "tokenizer.json" in names
        assert "generation_config.json" in names

    def test_unknown_model(self, loader):
        with pytest.raises(ManifestError):
            loader.resolve("llama-coder")

    def test_missing_lists_everything_initially(self, loader):
        assert loader.missing("yi-coder") == loader.resolve("yi-coder")

    def test_tokenizer_path_prefers_fast_tokenizer(self, tmp_path):
        from coder_openapi.core.config import AppConfig
        config = AppConfig.from_dict({
            "models_cache_dir": str(tmp_path),
            "models": {"yi-coder": {
                "hf_hub_id": "org/yi",
                "model_files": {
                    "weights": ["model.safetensors"],
                    "tokenizer": "tokenizer.model",
                    "tokenizer_config": "tokenizer.json",
                },
            }},
        })
        path = AssetLoader(config, hub=FakeHub(tmp_path)).tokenizer_path("yi-coder")
        assert path == tmp_path / "org/yi" / "tokenizer.json"


class TestEnsureLocal:

    @pytest.mark.asyncio
    async def test_fetches_missing_files(self, loader, fake_hub):
        paths = await loader.ensure_local("yi-coder")
        assert all(p.exists() for p in paths)
        assert len(fake_hub.calls) == len(paths)
        assert all(hub_id == HUB_IDS["yi-coder"] for hub_id, _ in fake_hub.calls)

    @pytest.mark.asyncio
    async def test_second_call_fetches_nothing(self, loader, fake_hub):
        await loader.ensure_local("deepseek-coder")
        first = len(fake_hub.calls)
        await loader.ensure_local("deepseek-coder")
        assert len(fake_hub.calls) == first

    @pytest.mark.asyncio
    async def test_present_files_not_refetched(self, loader, fake_hub, cache_dir):
        model_dir = cache_dir / HUB_IDS["yi-coder"]
        model_dir.mkdir(parents=True)
        (model_dir / "config.json").write_text("{}")
        await loader.ensure_local("yi-coder")
        fetched = [name for _, name in fake_hub.calls]
        assert "config.json" not in fetched
        assert (model_dir / "config.json").read_text() == "{}"

    @pytest.mark.asyncio
    async def test_hub_failure_is_asset_error_without_retry(self, app_config, remote_root):
        hub = FakeHub(remote_root, fail=True)
        loader = AssetLoader(app_config, hub=hub)
        with pytest.raises(AssetError, match="Failed to fetch"):
            await loader.ensure_local("yi-coder")
        assert len(hub.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_remote_file(self, app_config, tmp_path):
        loader = AssetLoader(app_config, hub=FakeHub(tmp_path / "empty-remote"))
        with pytest.raises(AssetError):
            await loader.ensure_local("yi-coder")

    @pytest.mark.asyncio
    async def test_file_still_missing_after_fetch(self, app_config):
        class SilentHub:
            def fetch(self, hub_id, filename, local_dir):
                return Path(local_dir) / filename

        loader = AssetLoader(app_config, hub=SilentHub())
        with pytest.raises(AssetError, match="still missing"):
            await loader.ensure_local("yi-coder")


class TestLoadWeights:

    def test_load_sharded(self, loader, cache_dir, cpu):
        install_local(cache_dir, "deepseek-coder")
        store = loader.load_weights(loader.weight_paths("deepseek-coder"), device=cpu)
        expected = random_state_dict()
        assert set(store.names()) == set(expected)
        for name, tensor in expected.items():
            loaded = store.take(name)
            assert loaded.dtype == torch.float32
            assert torch.equal(loaded, tensor)

    def test_fp16_converted_to_fp32(self, loader, tmp_path, cpu):
        path = tmp_path / "half.safetensors"
        save_file({"w": torch.ones(2, 2, dtype=torch.float16)}, str(path))
        store = loader.load_weights([path], device=cpu)
        assert store.take("w").dtype == torch.float32

    def test_non_safetensors_skipped(self, loader, tmp_path, cpu):
        path = tmp_path / "model.safetensors"
        save_file({"w": torch.zeros(3)}, str(path))
        (tmp_path / "config.json").write_text("{}")
        store = loader.load_weights([path, tmp_path / "config.json"], device=cpu)
        assert store.names() == ["w"]

    def test_malformed_container(self, loader, tmp_path, cpu):
        path = tmp_path / "broken.safetensors"
        path.write_bytes(b"\x10\x00\x00\x00\x00\x00\x00\x00not a header")
        with pytest.raises(AssetError, match="Malformed"):
            loader.load_weights([path], device=cpu)

    def test_missing_file(self, loader, tmp_path, cpu):
        with pytest.raises(AssetError, match="not found"):
            loader.load_weights([tmp_path / "absent.safetensors"], device=cpu)

    def test_no_tensors(self, loader, tmp_path, cpu):
        with pytest.raises(AssetError, match="No tensors"):
            loader.load_weights([tmp_path / "config.json"], device=cpu)


class TestWeightStore:

    def test_take_removes(self):
        store = WeightStore({"a": torch.zeros(1), "b": torch.ones(1)})
        assert "a" in store
        tensor = store.take("a")
        assert tensor is not None
        assert "a" not in store
        assert store.take("a") is None
        assert store.remaining() == ["b"]
        assert len(store) == 1


class TestHubClient:

    def test_fetch_calls_hf_hub_download(self, monkeypatch, tmp_path):
        calls = {}

        def fake_download(**kwargs):
            calls.update(kwargs)
            return str(Path(kwargs["local_dir"]) / kwargs["filename"])

        monkeypatch.setattr(hub_module, "hf_hub_download", fake_download)
        client = HubClient(token="secret", revision="main")
        path = client.fetch("org/model", "config.json", tmp_path)

        assert path == tmp_path / "config.json"
        assert calls["repo_id"] == "org/model"
        assert calls["filename"] == "config.json"
        assert calls["local_dir"] == str(tmp_path)
        assert calls["token"] == "secret"
        assert calls["revision"] == "main"
