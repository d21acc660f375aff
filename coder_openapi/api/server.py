"""
coder-openapi :: API Server (aiohttp)

OpenAI-style chat completion API over the locally hosted code models.
text -> tokenize -> transformer stack -> sample -> detokenize -> text

Endpoints:
    POST /v1/chat/completions   -> chat completion (sync + SSE streaming)
    GET  /v1/models             -> models with cached / enabled status
    POST /v1/models/download    -> fetch + load a model
    GET  /health                -> health check + loaded models
    GET  /metrics               -> Prometheus metrics

Engine errors (CoderError) map onto HTTP statuses in error_middleware;
error bodies are {"error": {"message", "type", "param"?}}.
"""

import asyncio
import json
import time
import uuid
from typing import List, Optional, Union

import torch
from aiohttp import web

from coder_openapi.core.chat import ChatMessage, ChatParams
from coder_openapi.core.config import AppConfig
from coder_openapi.core.errors import CoderError, InvalidParameter
from coder_openapi.core.logging import RequestLogger, get_logger
from coder_openapi.engine.channel import StreamChannel
from coder_openapi.engine.generation import GenerationResult
from coder_openapi.engine.model_manager import ModelManager

logger = get_logger("coder_openapi.server")


def _sse(payload: Union[str, dict]) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def _reap_producer(producer: "asyncio.Future") -> None:
    """Done callback for a stream producer whose handler was cancelled."""
    if producer.cancelled():
        return
    exc = producer.exception()
    if exc is not None:
        logger.warning(f"stream producer failed after its request was cancelled: {exc}")


class CoderServer:
    """
    HTTP front end of one ModelManager.

    Args:
        config: application configuration (server / stream sections used here)
        manager: model manager (default: built from config)
        warm_start: load every fully downloaded model on startup
    """

    def __init__(
        self,
        config: AppConfig,
        manager: Optional[ModelManager] = None,
        warm_start: bool = True,
    ):
        self.config = config
        self.manager = manager or ModelManager(config)
        self.metrics = self.manager.metrics
        self.host = config.server.host
        self.port = config.server.port
        self.api_key = config.server.api_key
        self.warm_start = warm_start
        self.request_counter: int = 0
        self._start_time = time.monotonic()

    # =====================================================================
    # Request parsing
    # =====================================================================

    @staticmethod
    async def _read_json(request: web.Request) -> dict:
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise InvalidParameter("body", "Invalid JSON in request body") from e
        if not isinstance(body, dict):
            raise InvalidParameter("body", "Request body must be a JSON object")
        return body

    @staticmethod
    def _parse_messages(body: dict) -> List[ChatMessage]:
        raw = body.get("messages")
        if not isinstance(raw, list) or not raw:
            raise InvalidParameter("messages", "Missing 'messages' field")
        return [ChatMessage.from_dict(m, i) for i, m in enumerate(raw)]

    # =====================================================================
    # Responses
    # =====================================================================

    @staticmethod
    def _completion_body(request_id: str, model_id: str, result: GenerationResult) -> dict:
        return {
            "id": request_id,
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model_id,
            "choices": [
                {"index": i, "message": message.to_dict(), "finish_reason": result.finish_reason}
                for i, message in enumerate(result.messages)
            ],
            "usage": {
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "total_tokens": result.prompt_tokens + result.completion_tokens,
            },
        }

    @staticmethod
    def _chunk(request_id: str, created: int, model_id: str, delta: dict,
               finish_reason: Optional[str]) -> dict:
        return {
            "id": request_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    @staticmethod
    async def _send_event(response: web.StreamResponse, channel: StreamChannel,
                          payload: Union[str, dict]) -> bool:
        """Write one SSE event; a vanished client closes the channel."""
        if channel.closed:
            return False
        try:
            await response.write(_sse(payload))
        except ConnectionError:
            channel.close()
            return False
        return True

    # =====================================================================
    # Handlers
    # =====================================================================

    async def handle_chat_completions(self, request: web.Request) -> web.StreamResponse:
        """POST /v1/chat/completions"""
        body = await self._read_json(request)
        model_id = body.get("model")
        if not isinstance(model_id, str) or not model_id:
            raise InvalidParameter("model", "Missing 'model' field")
        messages = self._parse_messages(body)
        params = ChatParams.from_request(body).validate()
        stream = params.stream if "stream" in body else self.config.chat_defaults.stream

        self.request_counter += 1
        request_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
        log = RequestLogger(request_id, model_id)
        log.debug(f"chat completion: {len(messages)} messages, stream={stream}")

        if stream:
            return await self._stream_chat(request, request_id, model_id, messages, params, log)

        result = await self.manager.chat_completion(model_id, messages, params)
        log.info(
            f"completed: {result.completion_tokens} tokens in {log.elapsed_ms():.0f}ms",
            prompt_tokens=result.prompt_tokens, completion_tokens=result.completion_tokens,
        )
        return web.json_response(self._completion_body(request_id, model_id, result))

    async def _stream_chat(
        self,
        request: web.Request,
        request_id: str,
        model_id: str,
        messages: List[ChatMessage],
        params: ChatParams,
        log: RequestLogger,
    ) -> web.StreamResponse:
        """SSE stream of chat.completion.chunk events, terminated by [DONE]."""
        # availability errors surface as plain HTTP errors, before the stream opens
        await self.manager.check_available(model_id)

        response = web.StreamResponse(headers={"Cache-Control": "no-cache", "Access-Control-Allow-Origin": "*"})
        response.content_type = "text/event-stream"
        await response.prepare(request)

        channel = StreamChannel(self.config.stream.buffer_size, self.config.stream.send_timeout)
        producer = asyncio.ensure_future(
            self.manager.chat_completion(model_id, messages, params, channel=channel)
        )
        created = int(time.time())

        first = True
        try:
            async for fragment in channel:
                delta = {"content": fragment.content}
                if first:
                    delta["role"] = fragment.role
                    first = False
                chunk = self._chunk(request_id, created, model_id, delta, None)
                if not await self._send_event(response, channel, chunk):
                    log.warning("client disconnected, stopping generation")
                    break
        except asyncio.CancelledError:
            # nobody will await the producer now; its outcome still gets retrieved
            producer.add_done_callback(_reap_producer)
            raise
        finally:
            # handler cancelled or client gone: let the producer stop at its next send
            if not producer.done() and not channel.finished:
                channel.close()

        try:
            result = await producer
        except CoderError as e:
            log.error(f"stream failed: {e.message}")
            await self._send_event(response, channel, {"error": e.to_dict()})
        except Exception as e:
            log.error(f"stream failed: {e}")
            logger.error(f"Unhandled error while streaming {request_id}", exc_info=True)
            await self._send_event(response, channel, {"error": {"message": str(e), "type": "server_error"}})
        else:
            log.info(
                f"stream finished ({result.finish_reason}): {result.completion_tokens} tokens "
                f"in {log.elapsed_ms():.0f}ms"
            )
            await self._send_event(
                response, channel, self._chunk(request_id, created, model_id, {}, result.finish_reason))

        if await self._send_event(response, channel, "[DONE]"):
            await response.write_eof()
        return response

    async def handle_models(self, request: web.Request) -> web.Response:
        """GET /v1/models"""
        return web.json_response({"object": "list", "data": self.manager.list_models()})

    async def handle_download(self, request: web.Request) -> web.Response:
        """POST /v1/models/download"""
        body = await self._read_json(request)
        model_id = body.get("model_id")
        if not isinstance(model_id, str) or not model_id:
            raise InvalidParameter("model_id", "Missing 'model_id' field")
        logger.info(f"Received download request for model: {model_id}")
        result = await self.manager.download_model(model_id)
        logger.info(f"Successfully downloaded model: {model_id}")
        return web.json_response(result)

    async def handle_health(self, request: web.Request) -> web.Response:
        """GET /health"""
        health = {
            "status": "ok",
            "uptime_seconds": int(time.monotonic() - self._start_time),
            "requests_served": self.request_counter,
            "loaded_models": self.manager.loaded_models(),
            "models": {k: v.to_dict() for k, v in self.manager.refresh().items()},
            "device": str(self.manager.device),
        }
        if torch.cuda.is_available():
            free, total = torch.cuda.mem_get_info()
            health["gpu"] = {
                "free_mb": round(free / 1e6),
                "total_mb": round(total / 1e6),
                "used_mb": round((total - free) / 1e6),
            }
        return web.json_response(health)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics, Prometheus text format."""
        if not self.metrics.enabled:
            return web.json_response(
                {"error": {"message": "Metrics are disabled", "type": "invalid_request_error"}},
                status=404,
            )
        return web.Response(body=self.metrics.render(), headers={"Content-Type": self.metrics.content_type})

    async def _handle_options(self, request):
        """CORS preflight."""
        return web.Response()

    # =====================================================================
    # Middleware
    # =====================================================================

    @web.middleware
    async def cors_middleware(self, request, handler):
        """Add CORS headers to all responses."""
        if request.method == "OPTIONS":
            resp = web.Response()
        else:
            resp = await handler(request)
        if not resp.prepared:
            resp.headers["Access-Control-Allow-Origin"] = "*"
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return resp

    @web.middleware
    async def error_middleware(self, request, handler):
        """CoderError -> OpenAI-style error body with its HTTP status."""
        try:
            return await handler(request)
        except CoderError as e:
            if e.http_status >= 500:
                logger.error(f"{request.method} {request.path} failed: {e.message}")
            else:
                logger.info(f"{request.method} {request.path} rejected: {e.message}")
            return web.json_response({"error": e.to_dict()}, status=e.http_status)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
            return web.json_response(
                {"error": {"message": str(e), "type": "server_error"}},
                status=500,
            )

    @web.middleware
    async def auth_middleware(self, request, handler):
        """Check Bearer token on /v1/* endpoints."""
        if self.api_key and request.path.startswith("/v1/"):
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != self.api_key:
                return web.json_response(
                    {"error": {"message": "Invalid API key", "type": "authentication_error"}},
                    status=401,
                )
        return await handler(request)

    # =====================================================================
    # App lifecycle
    # =====================================================================

    def create_app(self) -> web.Application:
        """Create the aiohttp application with routes and model lifecycle."""
        middlewares = [self.cors_middleware, self.error_middleware]
        if self.api_key:
            middlewares.append(self.auth_middleware)
        app = web.Application(middlewares=middlewares)
        app.router.add_route("OPTIONS", "/v1/chat/completions", self._handle_options)
        app.router.add_route("OPTIONS", "/v1/models/download", self._handle_options)
        app.router.add_post("/v1/chat/completions", self.handle_chat_completions)
        app.router.add_get("/v1/models", self.handle_models)
        app.router.add_post("/v1/models/download", self.handle_download)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)

        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app):
        if self.warm_start:
            loaded = await self.manager.load_enabled()
            logger.info(f"Models ready at startup: {', '.join(loaded) or 'none'}")

    async def _on_cleanup(self, app):
        logger.info("Server cleanup: releasing models...")
        await self.manager.close()
        logger.info("Server cleanup complete")

    def run(self):
        """Start the server (blocking)."""
        logger.info(f"coder-openapi :: {', '.join(self.config.models) or 'no models configured'}")
        logger.info(f"  http://{self.host}:{self.port}")
        logger.info(f"  POST /v1/chat/completions | GET /v1/models | POST /v1/models/download")
        logger.info(f"  GET /health | GET /metrics")
        app = self.create_app()
        web.run_app(
            app,
            host=self.host,
            port=self.port,
            shutdown_timeout=self.config.server.shutdown_timeout,
            print=None,
        )


def create_app(config: AppConfig, manager: Optional[ModelManager] = None,
               warm_start: bool = True) -> web.Application:
    return CoderServer(config, manager=manager, warm_start=warm_start).create_app()
