"""
Prometheus metrics for the IP Lookup API
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Build info
BUILD_INFO = Gauge(
    'iplookup_build_info',
    'Build information',
    ['version']
)

# HTTP requests by status class
HTTP_REQUESTS_TOTAL = Counter(
    'iplookup_http_requests_total',
    'Total number of HTTP requests',
    ['status_class']
)

# Lookups
LOOKUPS_TOTAL = Counter(
    'iplookup_lookups_total',
    'Total number of IP lookups',
    ['outcome']
)

LOOKUP_LATENCY = Histogram(
    'iplookup_lookup_latency_seconds',
    'IP lookup latency in seconds',
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1]
)

# Databases
DATABASE_LOADED = Gauge(
    'iplookup_database_loaded',
    'Database published status (1=loaded, 0=not loaded)',
    ['database']
)

DATABASE_LAST_REFRESH = Gauge(
    'iplookup_database_last_refresh_timestamp',
    'Timestamp of the last successful database publish',
    ['database']
)

REFRESH_TOTAL = Counter(
    'iplookup_refresh_total',
    'Database refresh attempts by outcome',
    ['database', 'outcome']
)


class PrometheusMetrics:
    """Thin facade over the module-level collectors"""

    def set_build_info(self, version: str):
        """Set build info gauge."""
        BUILD_INFO.labels(version=version).set(1)

    def increment_requests(self, status_code: int):
        """Increment request counter with status class."""
        if 200 <= status_code < 300:
            status_class = "2xx"
        elif 400 <= status_code < 500:
            status_class = "4xx"
        elif status_code >= 500:
            status_class = "5xx"
        else:
            status_class = "other"
        HTTP_REQUESTS_TOTAL.labels(status_class=status_class).inc()

    def increment_lookups(self, outcome: str):
        """Increment lookup counter (success, invalid, unavailable, error)."""
        LOOKUPS_TOTAL.labels(outcome=outcome).inc()

    def observe_lookup_latency(self, seconds: float):
        """Observe lookup latency."""
        LOOKUP_LATENCY.observe(seconds)

    def set_database_loaded(self, database: str, loaded: bool):
        """Set database loaded status."""
        DATABASE_LOADED.labels(database=database).set(1 if loaded else 0)

    def set_database_last_refresh(self, database: str, timestamp: float):
        """Set database last refresh timestamp."""
        DATABASE_LAST_REFRESH.labels(database=database).set(timestamp)

    def increment_refresh(self, database: str, outcome: str):
        """Increment refresh counter for a database."""
        REFRESH_TOTAL.labels(database=database, outcome=outcome).inc()

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics in text format."""
        return generate_latest()

    def get_content_type(self) -> str:
        """Get the content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST

# Global metrics instance
prometheus_metrics = PrometheusMetrics()
