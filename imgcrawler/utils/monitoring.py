"""
Monitoring and metrics collection for the image crawler.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server


class MetricsCollector:
    """
    Collects crawler metrics into a private Prometheus registry.

    Each collector owns its registry so that several crawl sessions (or
    tests) can run in one process without clashing metric names.
    """

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()
        self.current_values: Dict[str, float] = {}

        self.counters = {
            'pages_crawled_total': Counter(
                'imgcrawler_pages_crawled_total',
                'Total number of pages fetched and processed',
                registry=self.registry
            ),
            'pages_failed_total': Counter(
                'imgcrawler_pages_failed_total',
                'Total number of pages that failed',
                registry=self.registry
            ),
            'images_recorded_total': Counter(
                'imgcrawler_images_recorded_total',
                'Total number of image records appended to the index',
                registry=self.registry
            ),
            'assets_downloaded_total': Counter(
                'imgcrawler_assets_downloaded_total',
                'Total number of image assets downloaded',
                registry=self.registry
            ),
            'assets_skipped_total': Counter(
                'imgcrawler_assets_skipped_total',
                'Total number of image downloads skipped as duplicates',
                registry=self.registry
            ),
            'errors_total': Counter(
                'imgcrawler_errors_total',
                'Total number of crawl errors',
                ['error_type'],
                registry=self.registry
            ),
        }
        self.gauges = {
            'queue_size': Gauge(
                'imgcrawler_queue_size',
                'Number of URLs waiting in the frontier',
                registry=self.registry
            ),
            'active_workers': Gauge(
                'imgcrawler_active_workers',
                'Number of workers processing a page',
                registry=self.registry
            ),
        }
        self.fetch_time = Histogram(
            'imgcrawler_fetch_time_seconds',
            'Time spent fetching a page, including retries',
            registry=self.registry
        )

    def start_server(self):
        """Start the Prometheus exposition HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment_counter(self, name: str, amount: float = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        counter = self.counters[name]
        if labels:
            counter.labels(**labels).inc(amount)
            key = f"{name}:{','.join(f'{k}={v}' for k, v in sorted(labels.items()))}"
        else:
            counter.inc(amount)
            key = name
        self.current_values[key] = self.current_values.get(key, 0) + amount

    def set_gauge(self, name: str, value: float):
        """Set a gauge metric value."""
        self.gauges[name].set(value)
        self.current_values[name] = value

    def observe_fetch_time(self, seconds: float):
        self.fetch_time.observe(seconds)

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all recorded metrics."""
        return dict(self.current_values)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_page_crawled(self, fetch_time: float):
        self.metrics.increment_counter('pages_crawled_total')
        self.metrics.observe_fetch_time(fetch_time)

    def record_page_failed(self):
        self.metrics.increment_counter('pages_failed_total')

    def record_images(self, count: int):
        if count:
            self.metrics.increment_counter('images_recorded_total', count)

    def record_asset_downloaded(self):
        self.metrics.increment_counter('assets_downloaded_total')

    def record_asset_skipped(self):
        self.metrics.increment_counter('assets_skipped_total')

    def record_error(self, error_type: str):
        """Record an error event."""
        self.metrics.increment_counter('errors_total', labels={'error_type': error_type})

    def update_queue_size(self, size: int):
        self.metrics.set_gauge('queue_size', size)

    def update_active_workers(self, count: int):
        self.metrics.set_gauge('active_workers', count)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'pages_per_minute': (
                    current_values.get('pages_crawled_total', 0) / (runtime / 60) if runtime > 0 else 0
                ),
            }
        }
