"""Prometheus metrics for the Firecracker execution gateway"""

from prometheus_client import Counter, Histogram, Gauge, Info

# Execution metrics
EXECUTIONS_TOTAL = Counter(
    "gateway_executions_total",
    "Total number of code execution requests",
    ["language", "outcome"],  # outcome: success/failure/error
)

EXECUTION_DURATION = Histogram(
    "gateway_execution_duration_seconds",
    "Wall-clock time spent serving execution requests",
    ["language"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

ACTIVE_VMS = Gauge("gateway_active_vms", "Number of Firecracker VMs currently tracked")

# Service metrics
SERVICE_INFO = Info("gateway_service", "Execution gateway information")

# Error metrics
ERROR_REQUESTS_TOTAL = Counter(
    "gateway_errors_total",
    "Total number of errors",
    ["error_type", "component"],  # component: gateway/backend/status
)


class MetricsCollector:
    """Collects and manages metrics for the gateway"""

    def __init__(
        self, service_name: str = "firecracker-gateway", version: str = "0.1.0"
    ):
        self.service_name = service_name
        self.version = version

        SERVICE_INFO.info({"service_name": service_name, "version": version})

    def record_execution(self, language: str, outcome: str, duration: float):
        """Record one execution request"""
        EXECUTIONS_TOTAL.labels(language=language, outcome=outcome).inc()
        EXECUTION_DURATION.labels(language=language).observe(duration)

    def record_error(self, error_type: str, component: str):
        """Record error metrics"""
        ERROR_REQUESTS_TOTAL.labels(error_type=error_type, component=component).inc()

    def set_active_vms(self, count: int):
        ACTIVE_VMS.set(count)


# Global metrics instance
metrics = MetricsCollector()
