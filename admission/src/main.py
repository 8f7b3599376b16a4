from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Annotated, Any

import uvicorn
from fastapi import Body, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from admission.src.models import AdmissionReviewError
from admission.src.pipeline import AdmissionPipeline, AdmissionTimeoutError, NamespaceLabelLookup
from admission.src.webhooks import AdmissionWebhook
from reconciler.src.config import parse_bool

APP_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "operator_webhook_requests_total",
    "Total admission webhook HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "operator_webhook_latency_seconds",
    "Admission webhook request latency in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "operator_webhook_requests_in_flight",
    "Current number of admission webhook requests being processed",
)
BASE_METRIC_PATHS = frozenset({"/healthz", "/readyz", "/metrics"})
_TRACING_INITIALIZED = False


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Paths outside the registered webhook routes are reported as ``other`` so
    scanners cannot blow up label cardinality.  Skips ``/metrics`` itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = self._normalize_metric_path(request)
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
        return response

    @staticmethod
    def _normalize_metric_path(request: Request) -> str:
        known = getattr(request.app.state, "metric_paths", BASE_METRIC_PATHS)
        if request.url.path in known:
            return request.url.path
        return "other"


def _review_handler(pipeline: AdmissionPipeline) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def handle_review(review: Annotated[dict[str, Any], Body()]) -> dict[str, Any]:
        return pipeline.handle(review)

    handle_review.__name__ = f"review_{pipeline.webhook.webhook_type}_{type(pipeline.webhook).__name__}"
    return handle_review


def configure_tracing(app: FastAPI) -> None:
    """Enable OpenTelemetry tracing when ``OTEL_ENABLED=true``.

    The webhook server stays fully functional when OpenTelemetry packages
    are absent; tracing is then skipped with a warning.
    """
    global _TRACING_INITIALIZED

    if not parse_bool(os.getenv("OTEL_ENABLED")):
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.fastapi import (
            FastAPIInstrumentor,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
    except ImportError:
        LOGGER.warning(
            "OTEL_ENABLED=true but OpenTelemetry packages are not installed; tracing disabled"
        )
        return

    if not _TRACING_INITIALIZED:
        endpoint_base = os.getenv(
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            "http://otel-collector.monitoring.svc:4318",
        )
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
            endpoint_base
            if endpoint_base.endswith("/v1/traces")
            else endpoint_base.rstrip("/") + "/v1/traces"
        )

        resource = Resource.create({
            "service.name": os.getenv("OTEL_SERVICE_NAME", "admission-webhooks"),
            "service.namespace": os.getenv("OTEL_SERVICE_NAMESPACE")
            or os.getenv("POD_NAMESPACE", "default"),
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _TRACING_INITIALIZED = True
        LOGGER.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)

    FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,readyz,metrics")


def create_app(
    webhooks: Sequence[AdmissionWebhook],
    namespace_labels: NamespaceLabelLookup | None = None,
    ready: Callable[[], bool] | None = None,
    max_workers: int = 16,
) -> FastAPI:
    """Create the admission FastAPI application.

    Endpoints:
        ``POST <webhook.endpoint>`` - one AdmissionReview route per webhook.
        ``GET /healthz`` - Liveness probe (always ``200 ok``).
        ``GET /readyz``  - ``200`` once ``ready()`` is true.
        ``GET /metrics`` - Prometheus metrics in text exposition format.

    Webhook callbacks run on a dedicated pool of ``max_workers`` threads so
    a hung callback only costs its own slot until its timeout fires.
    """
    endpoints = [webhook.endpoint for webhook in webhooks]
    duplicates = sorted({path for path in endpoints if endpoints.count(path) > 1})
    if duplicates:
        raise ValueError(f"Duplicate webhook endpoints: {', '.join(duplicates)}")

    app = FastAPI(title="admission-webhooks", version=APP_VERSION)
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="admission")
    app.state.executor = executor
    app.state.metric_paths = BASE_METRIC_PATHS | set(endpoints)
    app.add_middleware(MetricsMiddleware)
    configure_tracing(app)

    @app.exception_handler(AdmissionReviewError)
    async def bad_review_handler(request: Request, exc: AdmissionReviewError) -> JSONResponse:
        LOGGER.warning("Rejected malformed AdmissionReview on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})

    @app.exception_handler(AdmissionTimeoutError)
    async def timeout_handler(request: Request, exc: AdmissionTimeoutError) -> JSONResponse:
        LOGGER.error("Admission webhook timed out on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=504, content={"error": "timeout", "detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        LOGGER.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    for webhook in webhooks:
        pipeline = AdmissionPipeline(webhook, executor=executor, namespace_labels=namespace_labels)
        app.add_api_route(
            webhook.endpoint,
            _review_handler(pipeline),
            methods=["POST"],
            name=webhook.name,
        )
        LOGGER.info("Serving %s webhook %s on %s", webhook.webhook_type, webhook.name, webhook.endpoint)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> PlainTextResponse:
        if ready is None or ready():
            return PlainTextResponse("ok")
        return PlainTextResponse("not ready", status_code=503)

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app


def start_webhook_server(
    app: FastAPI,
    port: int,
    certfile: str | None = None,
    keyfile: str | None = None,
) -> tuple[uvicorn.Server, threading.Thread]:
    """Serve ``app`` with uvicorn on a daemon thread; set ``server.should_exit`` to stop."""
    if certfile is None:
        LOGGER.warning("Webhook server running without TLS; the API server requires HTTPS")
    server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host="0.0.0.0",  # noqa: S104
            port=port,
            ssl_certfile=certfile,
            ssl_keyfile=keyfile,
            log_config=None,
            access_log=False,
        )
    )
    thread = threading.Thread(target=server.run, name="webhook-server", daemon=True)
    thread.start()
    LOGGER.info("Webhook server listening on :%d", port)
    return server, thread
