"""Prometheus metrics for the compile pipeline and its HTTP services."""

from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from dotting_providers.base import ProviderResponse


_HTTP_REQUEST_COUNT = Counter(
    "dotting_http_requests_total",
    "Total HTTP requests processed by service",
    labelnames=("service", "method", "route", "status"),
)

_HTTP_REQUEST_LATENCY = Histogram(
    "dotting_http_request_duration_seconds",
    "Latency of HTTP requests",
    labelnames=("service", "method", "route"),
)

_PHASE_DURATION = Histogram(
    "dotting_phase_duration_seconds",
    "Duration of compile pipeline phases",
    labelnames=("service", "phase"),
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 600),
)

_PHASE_COUNTER = Counter(
    "dotting_phase_runs_total",
    "Count of phase executions by outcome",
    labelnames=("service", "phase", "status"),
)

_COMPILE_OUTCOMES = Counter(
    "dotting_compilations_total",
    "Compile jobs by final outcome (success or error code)",
    labelnames=("service", "intent", "outcome"),
)

_DISPATCH_COUNTER = Counter(
    "dotting_dispatch_total",
    "Worker dispatch attempts by result",
    labelnames=("service", "result"),
)

_LLM_TOKENS = Counter(
    "dotting_llm_tokens_total",
    "Token usage by provider and phase",
    labelnames=("service", "phase", "provider", "token_type"),
)

_LLM_COST = Counter(
    "dotting_llm_cost_usd_total",
    "Aggregated LLM cost in USD",
    labelnames=("service", "phase", "provider"),
)

_LLM_LATENCY = Histogram(
    "dotting_llm_latency_seconds",
    "Latency of LLM provider calls",
    labelnames=("service", "phase", "provider"),
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect request metrics for FastAPI services."""

    def __init__(self, app: FastAPI, service_name: str) -> None:
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start = perf_counter()
        response = await call_next(request)
        elapsed = perf_counter() - start

        route_template = request.url.path
        route = request.scope.get("route")
        if route and getattr(route, "path", None):
            route_template = route.path  # type: ignore[assignment]

        status = getattr(response, "status_code", 500)
        _HTTP_REQUEST_COUNT.labels(self.service_name, request.method, route_template, str(status)).inc()
        _HTTP_REQUEST_LATENCY.labels(self.service_name, request.method, route_template).observe(elapsed)
        return response


def setup_fastapi_metrics(app: FastAPI, service_name: str, endpoint: str = "/metrics") -> None:
    """Register Prometheus middleware and metrics endpoint for a FastAPI app."""

    if getattr(app.state, "metrics_configured", False):
        return

    app.add_middleware(PrometheusMiddleware, service_name=service_name)

    @app.get(endpoint, include_in_schema=False)
    async def _metrics_endpoint() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.state.metrics_configured = True


def observe_phase_duration(
    phase: str,
    duration_seconds: float,
    *,
    service_name: str,
    status: str = "success",
) -> None:
    """Record duration and outcome of one pipeline phase."""

    _PHASE_DURATION.labels(service_name, phase).observe(max(duration_seconds, 0.0))
    _PHASE_COUNTER.labels(service_name, phase, status).inc()


def record_compile_outcome(*, service_name: str, intent: str, outcome: str) -> None:
    """Count a finished compile job. ``outcome`` is "success" or an error code."""

    _COMPILE_OUTCOMES.labels(service_name, intent, outcome).inc()


def record_dispatch(*, service_name: str, result: str) -> None:
    _DISPATCH_COUNTER.labels(service_name, result).inc()


def observe_provider_response(
    *,
    phase: str,
    provider: str,
    service_name: str,
    response: Optional["ProviderResponse"],
) -> None:
    """Capture token usage, latency, and cost from provider responses."""

    if response is None:
        return

    prompt_tokens = getattr(response, "prompt_tokens", None)
    if isinstance(prompt_tokens, (int, float)) and prompt_tokens >= 0:
        _LLM_TOKENS.labels(service_name, phase, provider, "prompt").inc(prompt_tokens)

    completion_tokens = getattr(response, "completion_tokens", None)
    if isinstance(completion_tokens, (int, float)) and completion_tokens >= 0:
        _LLM_TOKENS.labels(service_name, phase, provider, "completion").inc(completion_tokens)

    latency_ms = getattr(response, "latency_ms", None)
    if isinstance(latency_ms, (int, float)) and latency_ms >= 0:
        _LLM_LATENCY.labels(service_name, phase, provider).observe(latency_ms / 1000)

    cost_usd = getattr(response, "cost_usd", None)
    if isinstance(cost_usd, (int, float)) and cost_usd >= 0:
        _LLM_COST.labels(service_name, phase, provider).inc(cost_usd)
