"""
coder-openapi :: CLI

Usage:
    coder-openapi serve [--config config/app.yml] [--host 0.0.0.0] [--port 8080]
    coder-openapi list
    coder-openapi download <model>
    coder-openapi check <model>

Every command reads the same YAML configuration (--config, default
config/app.yml).
"""

import argparse
import asyncio
import sys

from coder_openapi.core.config import DEFAULT_CONFIG_PATH, AppConfig
from coder_openapi.core.errors import CoderError
from coder_openapi.core.logging import configure_from


def _load_config(args) -> AppConfig:
    config = AppConfig.load(args.config)
    overrides = {
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "api_key": getattr(args, "api_key", None),
        "models_cache_dir": getattr(args, "models_cache_dir", None),
    }
    config = config.with_overrides(**overrides)
    if getattr(args, "log_level", None):
        config.logging.level = args.log_level
    if getattr(args, "json_logs", False):
        config.logging.json = True
    configure_from(config.logging)
    return config


def cmd_serve(args):
    """Start the API server."""
    from coder_openapi.api.server import CoderServer

    config = _load_config(args)
    print(f"coder-openapi :: serving {', '.join(config.models) or 'no models'}")
    print(f"  host={config.server.host} port={config.server.port} cache={config.models_cache_dir}")
    server = CoderServer(config, warm_start=not args.no_warm_start)
    server.run()


def cmd_list(args):
    """List configured models with their on-disk status."""
    from coder_openapi.engine.model_manager import ModelManager

    config = _load_config(args)
    models = ModelManager(config).list_models()
    if not models:
        print("No models configured.")
        return

    print(f"{'Id':<18} {'Name':<16} {'Cached':>7} {'Enabled':>8}  {'Description'}")
    print("-" * 80)
    for m in models:
        print(
            f"{m['id']:<18} {m['name']:<16} {str(m['is_cached']):>7} "
            f"{str(m['is_enabled']):>8}  {m['description']}"
        )


def cmd_download(args):
    """Fetch a model's files from the hub and verify it builds."""
    from coder_openapi.engine.model_manager import ModelManager

    config = _load_config(args)
    manager = ModelManager(config)

    async def _run():
        try:
            handle = await manager.download(args.model)
            print(f"{args.model}: ready ({handle.config.num_hidden_layers} layers, device={handle.device})")
        finally:
            await manager.close()

    asyncio.run(_run())


def cmd_check(args):
    """Show the resolved files of a model and whether each is on disk."""
    from coder_openapi.core.loader import AssetLoader

    config = _load_config(args)
    manifest = config.manifest(args.model)
    loader = AssetLoader(config)

    print(f"Model:       {args.model}")
    print(f"Hub repo:    {manifest.hf_hub_id}")
    print(f"Directory:   {config.model_dir(args.model)}")
    for path in loader.resolve(args.model):
        if path.exists():
            size_mb = path.stat().st_size / 1e6
            print(f"  {path.name:<40} OK ({size_mb:.1f} MB)")
        else:
            print(f"  {path.name:<40} MISSING")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coder-openapi",
        description="OpenAI-style chat completion server for local code models",
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the YAML configuration")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--models-cache-dir", default=None, help="Override models_cache_dir")
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--api-key", default=None, help="Require this Bearer token on /v1/*")
    p_serve.add_argument("--no-warm-start", action="store_true",
                         help="Do not load downloaded models at startup")
    p_serve.set_defaults(func=cmd_serve)

    # list
    p_list = sub.add_parser("list", help="List configured models")
    p_list.set_defaults(func=cmd_list)

    # download
    p_download = sub.add_parser("download", help="Download and load a model")
    p_download.add_argument("model", help="Model id (e.g. yi-coder)")
    p_download.set_defaults(func=cmd_download)

    # check
    p_check = sub.add_parser("check", help="Check which model files are on disk")
    p_check.add_argument("model", help="Model id")
    p_check.set_defaults(func=cmd_check)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except CoderError as e:
        print(f"error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
