import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
import uvicorn

from firecracker_gateway import __version__
from firecracker_gateway.api import execution, health
from firecracker_gateway.backends import ExecutionBackend, create_backend
from firecracker_gateway.config import Settings

# OpenTelemetry (minimal) instrumentation
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.resources import SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

settings = Settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def setup_tracing(app: FastAPI, settings: Settings):
    """Initialize OTLP exporter and instrument FastAPI."""
    try:
        service_name = settings.otel_service_name
        endpoint = settings.otel_exporter_otlp_endpoint or "localhost:4317"

        provider = TracerProvider(
            resource=Resource.create({SERVICE_NAME: service_name})
        )
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

        FastAPIInstrumentor.instrument_app(app)
        logger.info(
            "OpenTelemetry tracing initialized",
            extra={"service": service_name, "endpoint": endpoint},
        )
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    owns_backend = getattr(app.state, "backend", None) is None

    logger.info("Starting Firecracker execution gateway")

    # One backend per process: it tracks active VMs and the concurrency cap
    if owns_backend:
        app.state.backend = create_backend(app.state.settings)

    yield

    logger.info("Shutting down Firecracker execution gateway")
    if owns_backend:
        await app.state.backend.close()
        app.state.backend = None


def create_app(
    settings: Optional[Settings] = None, backend: Optional[ExecutionBackend] = None
) -> FastAPI:
    """Build the gateway application.

    Args:
        settings: Configuration; read from the environment when omitted
        backend: Pre-built execution backend; the lifespan creates (and later
            closes) a Firecracker backend when omitted
    """
    settings = settings or Settings()

    app = FastAPI(
        title="Firecracker Execution Gateway",
        description="Runs submitted code in Firecracker microVMs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.backend = backend

    if settings.enable_tracing:
        setup_tracing(app, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(
        RequestValidationError, execution.validation_exception_handler
    )

    # Include routers
    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(execution.router, prefix=settings.api_prefix)

    # Mount Prometheus metrics
    app.mount("/metrics", make_asgi_app())

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": "Firecracker Execution Gateway",
            "version": __version__,
            "status": "running",
        }

    return app


app = create_app(settings)


def run():
    uvicorn.run(
        "firecracker_gateway.main:app",
        host=settings.gateway_host,
        port=settings.gateway_port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    run()
