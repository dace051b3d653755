"""
Prometheus metrics collection for CertMon.
"""

import re
import socket
import sys
import time
from typing import Any, Dict

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from certmon.logger import get_logger

# Metrics whose values are whole numbers and should not be rendered as 1.7e+09
_INTEGER_METRICS = (
    "certmon_tls_certificate_expiration_timestamp",
    "certmon_last_probe_timestamp",
    "certmon_probe_consecutive_failures",
    "certmon_domains_monitored",
    "app_memory_bytes",
    "app_thread_count",
)


class MetricsCollector:
    """Prometheus metrics sink for certificate expirations and probe activity."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Certificate metrics
        self.certificate_expiration_timestamp = Gauge(
            "certmon_tls_certificate_expiration_timestamp",
            "TLS certificate expiration dates, in seconds since 1970-01-01 midnight UTC, "
            "by domain name.",
            ["domain"],
            registry=self.registry,
        )

        # Probe metrics
        self.probe_total = Counter(
            "certmon_probe_total",
            "Probe attempts by domain and result",
            ["domain", "result"],
            registry=self.registry,
        )

        self.probe_duration_seconds = Histogram(
            "certmon_probe_duration_seconds",
            "Time spent connecting and reading the certificate chain",
            ["domain"],
            registry=self.registry,
        )

        self.last_probe_timestamp = Gauge(
            "certmon_last_probe_timestamp",
            "Time of the last probe attempt (Unix timestamp)",
            ["domain"],
            registry=self.registry,
        )

        self.probe_consecutive_failures = Gauge(
            "certmon_probe_consecutive_failures",
            "Failed probes since the last successful one",
            ["domain"],
            registry=self.registry,
        )

        self.domains_monitored = Gauge(
            "certmon_domains_monitored", "Number of monitored domains", registry=self.registry
        )

        # Application metrics
        self.app_memory_bytes = Gauge(
            "app_memory_bytes",
            "Application memory usage in bytes",
            ["type"],
            registry=self.registry,
        )

        self.app_cpu_percent = Gauge(
            "app_cpu_percent", "Application CPU usage percentage", registry=self.registry
        )

        self.app_thread_count = Gauge(
            "app_thread_count", "Number of application threads", registry=self.registry
        )

        self.app_info = Info(
            "app_info",
            "Application information",
            ["hostname", "version", "python_version"],
            registry=self.registry,
        )

        self._last_system_update = 0.0
        self._system_update_interval = 30

        self.logger.info("Metrics collector initialized")

    def set_domains(self, count: int) -> None:
        self.domains_monitored.set(count)

    def observe(self, domain: str, expiration_unix_seconds: float) -> None:
        """
        Record the current certificate expiration for a domain.

        Args:
            domain: Monitored domain
            expiration_unix_seconds: Chain minimum notAfter as a Unix timestamp
        """
        try:
            self.certificate_expiration_timestamp.labels(domain=domain).set(
                float(expiration_unix_seconds)
            )
            self.logger.debug(
                f"Expiration gauge for {domain} set to {expiration_unix_seconds:.0f}",
                extra={"domain": domain},
            )
        except Exception as e:
            self.logger.error(f"Failed to update expiration metric for {domain}: {e}")

    def record_probe(self, domain: str, success: bool, duration: float, failures: int = 0) -> None:
        """
        Record the outcome of a probe attempt.

        Args:
            domain: Probed domain
            success: Whether an expiration was obtained
            duration: Probe duration in seconds
            failures: Consecutive failures after this attempt
        """
        try:
            result = "success" if success else "failure"
            self.probe_total.labels(domain=domain, result=result).inc()
            self.probe_duration_seconds.labels(domain=domain).observe(duration)
            self.last_probe_timestamp.labels(domain=domain).set(int(time.time()))
            self.probe_consecutive_failures.labels(domain=domain).set(failures)
        except Exception as e:
            self.logger.error(f"Failed to record probe metrics for {domain}: {e}")

    def update_system_metrics(self) -> None:
        """Update process metrics, at most once per update interval."""
        current_time = time.time()

        if current_time - self._last_system_update < self._system_update_interval:
            return

        try:
            process = psutil.Process()

            memory_info = process.memory_info()
            self.app_memory_bytes.labels(type="rss").set(int(memory_info.rss))
            self.app_memory_bytes.labels(type="vms").set(int(memory_info.vms))

            cpu_percent = process.cpu_percent()
            self.app_cpu_percent.set(cpu_percent)

            thread_count = process.num_threads()
            self.app_thread_count.set(int(thread_count))

            from certmon import __version__

            self.app_info.labels(
                hostname=socket.gethostname(),
                version=__version__,
                python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ).info({"platform": sys.platform, "process_id": str(process.pid)})

            self._last_system_update = current_time

            self.logger.debug(
                f"System metrics updated - RSS: {memory_info.rss}, "
                f"CPU: {cpu_percent}%, Threads: {thread_count}"
            )

        except Exception as e:
            self.logger.error(f"Failed to update system metrics: {e}")

    def get_metrics(self) -> str:
        """
        Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        self.update_system_metrics()
        raw_metrics = generate_latest(self.registry).decode("utf-8")
        return self._format_numeric_values(raw_metrics)

    def _format_numeric_values(self, metrics_text: str) -> str:
        """Render whole-number samples of integer metrics without exponent or decimals."""
        formatted_lines = []

        for line in metrics_text.split("\n"):
            if line.startswith("#") or not line.strip():
                formatted_lines.append(line)
                continue

            match = re.match(r"^([^}]+})\s+(.+)$", line) or re.match(r"^([^\s]+)\s+(.+)$", line)
            if not match or not match.group(1).startswith(_INTEGER_METRICS):
                formatted_lines.append(line)
                continue

            metric_name, value = match.groups()
            try:
                float_value = float(value)
            except ValueError:
                formatted_lines.append(line)
                continue

            if float_value.is_integer():
                formatted_lines.append(f"{metric_name} {int(float_value)}")
            else:
                formatted_lines.append(line)

        return "\n".join(formatted_lines)

    def get_content_type(self) -> str:
        """Get content type for metrics endpoint."""
        return CONTENT_TYPE_LATEST

    def get_registry_status(self) -> Dict[str, Any]:
        """Get Prometheus registry status for health checks."""
        try:
            metrics_count = len(list(self.registry.collect()))

            return {
                "prometheus_registry": {
                    "status": "healthy",
                    "metrics_count": metrics_count,
                    "last_update": self._last_system_update,
                }
            }
        except Exception as e:
            return {"prometheus_registry": {"status": "error", "error": str(e)}}
