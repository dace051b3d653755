"""
Shared expiration table for CertMon.

Every domain monitor writes its own entry and the status page and API read
snapshots. All map access happens under one lock; records are immutable and
replaced wholesale, so a reader never observes a half-written record.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExpirationRecord:
    """Last known certificate state of a single domain."""

    domain: str
    expiration: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    failures: int = 0

    @property
    def is_known(self) -> bool:
        """True once a probe has succeeded for this domain."""
        return self.expiration is not None

    def to_dict(self) -> Dict[str, object]:
        """Serialize the record for JSON responses."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "domain": self.domain,
            "expiration": _iso(self.expiration),
            "expiration_timestamp": (
                self.expiration.timestamp() if self.expiration is not None else None
            ),
            "last_attempt": _iso(self.last_attempt),
            "last_success": _iso(self.last_success),
            "last_error": self.last_error,
            "failures": self.failures,
        }


class ExpirationTable:
    """Thread-safe mapping from domain name to its latest ExpirationRecord.

    Keys are fixed at construction; writing to a domain that was not
    configured raises KeyError.
    """

    def __init__(self, domains: Iterable[str], clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, ExpirationRecord] = {}
        for domain in domains:
            self._records.setdefault(domain, ExpirationRecord(domain=domain))
        self._domains = tuple(self._records)

    @property
    def domains(self) -> tuple:
        """Configured domains, in configuration order."""
        return self._domains

    def __len__(self) -> int:
        return len(self._domains)

    def __contains__(self, domain: object) -> bool:
        return domain in self._records

    def set(self, domain: str, expiration: datetime) -> ExpirationRecord:
        """Store a successful probe result for domain."""
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        now = self._clock()
        with self._lock:
            current = self._records[domain]
            record = replace(
                current,
                expiration=expiration,
                last_attempt=now,
                last_success=now,
                last_error=None,
                failures=0,
            )
            self._records[domain] = record
        return record

    def record_failure(self, domain: str, error: str) -> ExpirationRecord:
        """Store a failed probe for domain, keeping the previous expiration."""
        now = self._clock()
        with self._lock:
            current = self._records[domain]
            record = replace(
                current,
                last_attempt=now,
                last_error=error,
                failures=current.failures + 1,
            )
            self._records[domain] = record
        return record

    def get(self, domain: str) -> ExpirationRecord:
        with self._lock:
            return self._records[domain]

    def snapshot(self) -> List[ExpirationRecord]:
        """Return a point-in-time copy of all records, ordered by domain."""
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda record: record.domain)
