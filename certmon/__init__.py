"""
CertMon

Periodically checks the TLS certificate expiration dates of a set of
internet domains and exposes them as a status page and Prometheus metrics.
"""

__version__ = "1.0.0"
__author__ = "CertMon Team"
__description__ = "TLS certificate expiration monitor for internet domains"

from certmon.config import Config
from certmon.metrics import MetricsCollector
from certmon.monitor import CertificateMonitor, DomainMonitor
from certmon.prober import find_expiration_time
from certmon.status import StatusRenderer
from certmon.table import ExpirationRecord, ExpirationTable

__all__ = [
    "Config",
    "CertificateMonitor",
    "DomainMonitor",
    "ExpirationRecord",
    "ExpirationTable",
    "MetricsCollector",
    "StatusRenderer",
    "find_expiration_time",
]
