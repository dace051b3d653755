"""
Per-domain certificate monitoring loops for CertMon.
"""

import asyncio
import functools
import random
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from certmon.config import Config
from certmon.logger import get_logger, log_probe_failure, log_probe_start, log_probe_success
from certmon.metrics import MetricsCollector
from certmon.prober import find_expiration_time
from certmon.table import ExpirationTable

ProbeFunc = Callable[[str], datetime]


class DomainMonitor:
    """
    Polling loop for a single domain.

    Each cycle waits a random jitter, probes the domain in the executor,
    records the outcome and then waits the base interval. Probe failures are
    recorded and logged but never leave this loop.
    """

    def __init__(
        self,
        domain: str,
        table: ExpirationTable,
        metrics: MetricsCollector,
        probe: ProbeFunc,
        executor: ThreadPoolExecutor,
        stop_event: asyncio.Event,
        interval: float = 10.0,
        jitter_ms: int = 5000,
        rng: Optional[random.Random] = None,
    ):
        self.domain = domain
        self.table = table
        self.metrics = metrics
        self.probe = probe
        self.executor = executor
        self.interval = interval
        self.jitter_ms = jitter_ms
        self.logger = get_logger("monitor")

        self._stop_event = stop_event
        self._rng = rng or random.Random()
        # Held across probe and write so loop and manual rounds never overlap
        self._probe_lock = asyncio.Lock()

    def next_jitter(self) -> float:
        """Draw a jitter in seconds, uniform over [0, jitter_ms) milliseconds."""
        if self.jitter_ms <= 0:
            return 0.0
        return self._rng.randrange(self.jitter_ms) / 1000.0

    async def _wait(self, seconds: float) -> bool:
        """Sleep for seconds unless stopped first; returns True if stopped."""
        if self._stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def probe_once(self) -> bool:
        """
        Probe the domain once and record the outcome.

        Returns:
            True if an expiration was obtained
        """
        async with self._probe_lock:
            return await self._probe_and_record()

    async def _probe_and_record(self) -> bool:
        start_time = time.monotonic()
        loop = asyncio.get_running_loop()
        try:
            expiration = await loop.run_in_executor(self.executor, self.probe, self.domain)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration = time.monotonic() - start_time
            record = self.table.record_failure(self.domain, f"{type(e).__name__}: {e}")
            self.metrics.record_probe(self.domain, False, duration, record.failures)
            log_probe_failure(self.logger, self.domain, e, record.failures)
            return False

        duration = time.monotonic() - start_time
        self.table.set(self.domain, expiration)
        self.metrics.observe(self.domain, expiration.timestamp())
        self.metrics.record_probe(self.domain, True, duration, 0)
        log_probe_success(self.logger, self.domain, expiration.isoformat(), duration)
        return True

    async def run(self) -> None:
        """Run probe cycles until the stop event is set."""
        self.logger.debug(f"Monitor started for {self.domain}")
        while not self._stop_event.is_set():
            try:
                jitter = self.next_jitter()
                if await self._wait(jitter):
                    break
                log_probe_start(self.logger, self.domain, jitter)
                await self.probe_once()
                if await self._wait(self.interval):
                    break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in monitor loop for {self.domain}: {e}")
                if await self._wait(self.interval):
                    break
        self.logger.debug(f"Monitor stopped for {self.domain}")


class CertificateMonitor:
    """Owns one DomainMonitor task per configured domain."""

    def __init__(
        self,
        config: Config,
        table: ExpirationTable,
        metrics: MetricsCollector,
        probe: Optional[ProbeFunc] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.table = table
        self.metrics = metrics
        self.logger = get_logger("monitor")

        if probe is None:
            probe = functools.partial(
                find_expiration_time,
                port=config.probe_port,
                timeout=config.probe_timeout_seconds,
            )
        self.probe = probe

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        # One thread per domain at minimum, so a hung probe only ever holds its own
        self._pool_size = max(config.workers, len(table))
        self._executor = ThreadPoolExecutor(
            max_workers=self._pool_size, thread_name_prefix="certmon-probe"
        )
        self._rng = rng or random.Random()
        self._started_at: Optional[float] = None

        self.monitors: Dict[str, DomainMonitor] = {}

        self.metrics.set_domains(len(table))
        self.logger.info(
            f"Certificate monitor initialized - Domains: {len(table)}, Workers: {self._pool_size}"
        )

    def _build_monitors(self, stop_event: asyncio.Event) -> None:
        self.monitors = {
            domain: DomainMonitor(
                domain=domain,
                table=self.table,
                metrics=self.metrics,
                probe=self.probe,
                executor=self._executor,
                stop_event=stop_event,
                interval=self.config.probe_interval_seconds,
                jitter_ms=self.config.probe_jitter_ms,
                rng=random.Random(self._rng.random()),
            )
            for domain in self.table.domains
        }

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start one monitoring task per domain."""
        if self._running:
            self.logger.warning("Monitor is already running")
            return

        # Event is created here so it binds to the running loop
        self._stop_event = asyncio.Event()
        self._build_monitors(self._stop_event)
        self._tasks = [
            asyncio.create_task(monitor.run(), name=f"certmon-{domain}")
            for domain, monitor in self.monitors.items()
        ]
        self._running = True
        self._started_at = time.time()
        self.logger.info(
            f"Started monitoring {len(self._tasks)} domains - "
            f"Interval: {self.config.probe_interval}, Jitter: {self.config.probe_jitter}"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Signal every loop to stop, then wait for them to exit."""
        if self._stop_event is not None:
            self._stop_event.set()

        if self._tasks:
            # Tasks blocked in a probe do not see the event until it returns
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

        self._running = False
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.logger.info("Certificate monitor stopped")

    async def probe_once(self) -> Dict[str, Any]:
        """
        Probe every domain once, concurrently.

        Returns:
            Summary with per-domain success flags
        """
        if not self.monitors:
            self._build_monitors(self._stop_event or asyncio.Event())

        start_time = time.time()
        domains = list(self.monitors)
        results = await asyncio.gather(
            *(self.monitors[domain].probe_once() for domain in domains)
        )
        duration = time.time() - start_time
        succeeded = sum(1 for ok in results if ok)

        self.logger.info(
            f"Probe round completed - Duration: {duration:.2f}s, "
            f"Succeeded: {succeeded}, Failed: {len(domains) - succeeded}"
        )

        return {
            "domains": dict(zip(domains, results)),
            "summary": {
                "duration": duration,
                "succeeded": succeeded,
                "failed": len(domains) - succeeded,
            },
            "timestamp": start_time,
        }

    async def get_health_status(self) -> Dict[str, Any]:
        """Get monitor health status."""
        records = self.table.snapshot()
        return {
            "monitor_status": "running" if self._running else "stopped",
            "domains_monitored": len(records),
            "domains_known": sum(1 for record in records if record.is_known),
            "domains_failing": sum(1 for record in records if record.last_error is not None),
            "worker_pool_size": self._pool_size,
            "started_at": self._started_at,
        }
