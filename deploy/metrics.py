import psutil
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# ── Metric definitions ──

deployments_total = Counter(
    "berth_deployments_total",
    "Deployment attempts",
    ["strategy", "result"],
)

deployment_duration_seconds = Histogram(
    "berth_deployment_duration_seconds",
    "Wall time of a deploy call in seconds",
    ["strategy"],
    buckets=[1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

health_checks_total = Counter(
    "berth_health_checks_total",
    "Health gate outcomes",
    ["result"],
)

scale_operations_total = Counter(
    "berth_scale_operations_total",
    "Units created or removed by scaling",
    ["process_type", "direction"],
)

unit_failures_total = Counter(
    "berth_unit_failures_total",
    "Per-unit failures isolated inside a batch",
    ["operation"],
)

rollbacks_total = Counter(
    "berth_rollbacks_total",
    "Rollback attempts",
    ["result"],
)

managed_units = Gauge(
    "berth_managed_units",
    "Units recorded in the registry",
    ["app_name", "process_type"],
)

host_memory_percent = Gauge("berth_host_memory_percent", "Host memory in use (percent)")


# ── Helper functions ──

def record_deployment(strategy: str, success: bool, duration_seconds: float):
    deployments_total.labels(strategy=strategy, result="success" if success else "failure").inc()
    deployment_duration_seconds.labels(strategy=strategy).observe(duration_seconds)


def record_health_check(result: str):
    health_checks_total.labels(result=result).inc()


def record_scale(process_type: str, direction: str, count: int = 1):
    scale_operations_total.labels(process_type=process_type, direction=direction).inc(count)


def record_unit_failure(operation: str):
    unit_failures_total.labels(operation=operation).inc()


def record_rollback(success: bool):
    rollbacks_total.labels(result="success" if success else "failure").inc()


def set_managed_units(app_name: str, process_type: str, count: int):
    managed_units.labels(app_name=app_name, process_type=process_type).set(count)


def update_host_metrics():
    """Refresh host-level gauges."""
    host_memory_percent.set(psutil.virtual_memory().percent)


def metrics_payload() -> tuple[bytes, str]:
    """Prometheus exposition body and its content type."""
    update_host_metrics()
    return generate_latest(), CONTENT_TYPE_LATEST
