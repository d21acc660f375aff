"""
coder-openapi :: Prometheus Metrics

  coder_openapi_requests_total{model,outcome}      chat completions served
  coder_openapi_prompt_tokens_total{model}         prompt tokens processed
  coder_openapi_generated_tokens_total{model}      tokens generated
  coder_openapi_request_duration_seconds{model}    request latency
  coder_openapi_downloads_total{model,outcome}     download / load attempts
  coder_openapi_models_loaded                      live model handles

Metrics live on a private CollectorRegistry so several servers (and test
cases) can coexist in one process. The server exposes them at /metrics.
"""

import time

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST


class CoderMetrics:
    """Prometheus metrics for the model manager and API."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.registry = CollectorRegistry()

        self.requests_total = Counter(
            "coder_openapi_requests_total", "Chat completion requests",
            ["model", "outcome"], registry=self.registry,
        )
        self.prompt_tokens = Counter(
            "coder_openapi_prompt_tokens_total", "Prompt tokens processed",
            ["model"], registry=self.registry,
        )
        self.generated_tokens = Counter(
            "coder_openapi_generated_tokens_total", "Tokens generated",
            ["model"], registry=self.registry,
        )
        self.request_duration = Histogram(
            "coder_openapi_request_duration_seconds", "Chat completion latency",
            ["model"], registry=self.registry,
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        )
        self.downloads_total = Counter(
            "coder_openapi_downloads_total", "Model download / load attempts",
            ["model", "outcome"], registry=self.registry,
        )
        self.models_loaded = Gauge(
            "coder_openapi_models_loaded", "Model handles currently live",
            registry=self.registry,
        )

    def on_request_start(self) -> float:
        return time.perf_counter()

    def on_request_end(self, model: str, start_time: float, prompt_tokens: int,
                       output_tokens: int, outcome: str = "ok"):
        if not self.enabled:
            return
        self.requests_total.labels(model=model, outcome=outcome).inc()
        if outcome != "ok":
            return
        self.request_duration.labels(model=model).observe(time.perf_counter() - start_time)
        self.prompt_tokens.labels(model=model).inc(prompt_tokens)
        self.generated_tokens.labels(model=model).inc(output_tokens)

    def on_download(self, model: str, outcome: str):
        if self.enabled:
            self.downloads_total.labels(model=model, outcome=outcome).inc()

    def set_models_loaded(self, count: int):
        if self.enabled:
            self.models_loaded.set(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)
