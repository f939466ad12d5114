"""Prometheus metrics for the image sourcing pipeline."""

from prometheus_client import Counter, Histogram, Info

app_info = Info("sku_studio", "SKU studio image sourcing application info")
app_info.info({"version": "0.1.0", "name": "sku-studio"})

# Job metrics
scrape_jobs_total = Counter(
    "scrape_jobs_total",
    "Total number of scrape jobs by terminal order status",
    ["status"],
)

scrape_job_duration_seconds = Histogram(
    "scrape_job_duration_seconds",
    "Wall clock time spent on a scrape job",
    buckets=[10, 30, 60, 120, 180, 240, 300, 600],
)

identifiers_processed_total = Counter(
    "identifiers_processed_total",
    "Identifiers processed by outcome",
    ["status"],
)

# Store metrics
store_scrapes_total = Counter(
    "store_scrapes_total",
    "Store scrape attempts by outcome",
    ["store", "outcome"],
)

# Image metrics
image_downloads_total = Counter(
    "image_downloads_total",
    "Candidate image downloads by outcome",
    ["outcome"],
)

upscale_requests_total = Counter(
    "upscale_requests_total",
    "Super-resolution calls by outcome",
    ["outcome"],
)

# Money
refunds_total = Counter(
    "refunds_total",
    "Refunds issued for failed orders",
    ["source"],
)

stuck_orders_recovered_total = Counter(
    "stuck_orders_recovered_total",
    "Orders force-failed by the stuck job sweeper",
)

persistence_failures_total = Counter(
    "persistence_failures_total",
    "Status writes that exhausted their retries",
    ["operation"],
)


def record_job_finished(status: str, duration: float):
    """Record a scrape job reaching a terminal status."""
    scrape_jobs_total.labels(status=status).inc()
    scrape_job_duration_seconds.observe(duration)


def record_identifier(status: str):
    identifiers_processed_total.labels(status=status).inc()


def record_store_scrape(store: str, outcome: str):
    """Record a store scrape outcome (found, empty, error)."""
    store_scrapes_total.labels(store=store, outcome=outcome).inc()


def record_download(outcome: str):
    image_downloads_total.labels(outcome=outcome).inc()


def record_upscale(outcome: str):
    upscale_requests_total.labels(outcome=outcome).inc()


def record_refund(source: str):
    refunds_total.labels(source=source).inc()


def record_stuck_order_recovered():
    stuck_orders_recovered_total.inc()


def record_persistence_failure(operation: str):
    persistence_failures_total.labels(operation=operation).inc()
