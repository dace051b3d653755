"""
Tests for the per-domain monitoring loops.
"""

import asyncio
import random
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from certmon.metrics import MetricsCollector
from certmon.monitor import CertificateMonitor, DomainMonitor
from certmon.prober import ProbeConnectionError
from certmon.table import ExpirationTable

EXPIRATIONS = {
    "a.example": datetime(2025, 6, 1, tzinfo=timezone.utc),
    "b.example": datetime(2030, 1, 1, tzinfo=timezone.utc),
    "c.example": datetime(2028, 3, 15, tzinfo=timezone.utc),
}


def fixed_probe(domain):
    return EXPIRATIONS[domain]


async def wait_for_condition(condition, timeout=5.0):
    """Poll condition until it holds or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        await asyncio.sleep(0.01)
    return condition()


@pytest.fixture
def mock_metrics():
    """Create a mock metrics collector."""
    return MagicMock(spec=MetricsCollector)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False)


class TestDomainMonitor:
    """Test a single domain's loop."""

    def _monitor(self, table, metrics, executor, probe, jitter_ms=0, interval=0.01, rng=None):
        return DomainMonitor(
            domain="a.example",
            table=table,
            metrics=metrics,
            probe=probe,
            executor=executor,
            stop_event=asyncio.Event(),
            interval=interval,
            jitter_ms=jitter_ms,
            rng=rng,
        )

    def test_jitter_range(self, mock_metrics, executor):
        """Test that jitter is drawn from [0, 5000) milliseconds."""
        table = ExpirationTable(["a.example"])
        monitor = self._monitor(
            table, mock_metrics, executor, fixed_probe, jitter_ms=5000, rng=random.Random(42)
        )

        draws = [monitor.next_jitter() for _ in range(2000)]

        assert all(0.0 <= draw < 5.0 for draw in draws)
        assert len(set(draws)) > 100

    def test_zero_jitter(self, mock_metrics, executor):
        """Test that a zero jitter bound disables jitter."""
        table = ExpirationTable(["a.example"])
        monitor = self._monitor(table, mock_metrics, executor, fixed_probe, jitter_ms=0)

        assert monitor.next_jitter() == 0.0

    @pytest.mark.asyncio
    async def test_probe_once_success(self, mock_metrics, executor):
        """Test that a successful probe updates the table and the metrics sink."""
        table = ExpirationTable(["a.example"])
        monitor = self._monitor(table, mock_metrics, executor, fixed_probe)

        assert await monitor.probe_once() is True

        expiration = EXPIRATIONS["a.example"]
        assert table.get("a.example").expiration == expiration
        mock_metrics.observe.assert_called_once_with("a.example", expiration.timestamp())
        mock_metrics.record_probe.assert_called_once()
        assert mock_metrics.record_probe.call_args.args[1] is True

    @pytest.mark.asyncio
    async def test_probe_once_failure_keeps_value(self, mock_metrics, executor):
        """Test that a failed probe leaves the previous expiration in place."""
        table = ExpirationTable(["a.example"])
        table.set("a.example", EXPIRATIONS["a.example"])

        def failing_probe(domain):
            raise ProbeConnectionError(f"{domain}:443: connection refused")

        monitor = self._monitor(table, mock_metrics, executor, failing_probe)

        assert await monitor.probe_once() is False

        record = table.get("a.example")
        assert record.expiration == EXPIRATIONS["a.example"]
        assert record.failures == 1
        assert "ProbeConnectionError" in record.last_error
        mock_metrics.observe.assert_not_called()
        assert mock_metrics.record_probe.call_args.args[1] is False

    @pytest.mark.asyncio
    async def test_failure_before_first_success_stays_unknown(self, mock_metrics, executor):
        """Test that an immediately failing host remains unknown."""
        table = ExpirationTable(["a.example"])

        def failing_probe(domain):
            raise OSError("network unreachable")

        monitor = self._monitor(table, mock_metrics, executor, failing_probe)
        await monitor.probe_once()

        assert table.get("a.example").expiration is None

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, mock_metrics, executor):
        """Test that the loop exits once the stop event is set."""
        table = ExpirationTable(["a.example"])
        monitor = self._monitor(table, mock_metrics, executor, fixed_probe, interval=60)

        task = asyncio.create_task(monitor.run())
        assert await wait_for_condition(lambda: table.get("a.example").is_known)

        monitor._stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert task.done()

    @pytest.mark.asyncio
    async def test_run_survives_unexpected_errors(self, mock_metrics, executor):
        """Test that the loop keeps going when recording raises."""
        table = MagicMock(spec=ExpirationTable)
        calls = []

        def flaky_set(domain, expiration):
            calls.append(domain)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return MagicMock(expiration=expiration)

        table.set.side_effect = flaky_set
        monitor = self._monitor(table, mock_metrics, executor, fixed_probe, interval=0.01)

        task = asyncio.create_task(monitor.run())
        assert await wait_for_condition(lambda: table.set.call_count >= 2)

        monitor._stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)


class TestCertificateMonitor:
    """Test the monitor pool."""

    @pytest.mark.asyncio
    async def test_all_domains_probed(self, fast_config, mock_metrics):
        """Test that every configured domain gets its own loop."""
        table = ExpirationTable(fast_config.domains)
        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=fixed_probe)

        await monitor.start()
        try:
            assert monitor.running
            assert set(monitor.monitors) == set(fast_config.domains)
            assert await wait_for_condition(
                lambda: all(record.is_known for record in table.snapshot())
            )
        finally:
            await monitor.stop()

        assert not monitor.running
        for domain, expiration in EXPIRATIONS.items():
            assert table.get(domain).expiration == expiration
        mock_metrics.set_domains.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_failure_isolated_between_domains(self, fast_config, mock_metrics):
        """Test that a failing domain never affects the others."""
        table = ExpirationTable(fast_config.domains)

        def probe(domain):
            if domain == "a.example":
                raise ProbeConnectionError("a.example:443: connection refused")
            return EXPIRATIONS[domain]

        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=probe)
        await monitor.start()
        try:
            assert await wait_for_condition(
                lambda: table.get("b.example").is_known
                and table.get("c.example").is_known
                and table.get("a.example").failures >= 2
            )
        finally:
            await monitor.stop()

        assert table.get("a.example").expiration is None
        assert table.get("b.example").expiration == EXPIRATIONS["b.example"]
        assert table.get("b.example").last_error is None

    @pytest.mark.asyncio
    async def test_blocked_probe_does_not_stall_others(self, fast_config, mock_metrics):
        """Test that a hanging probe for one domain leaves other loops running."""
        table = ExpirationTable(fast_config.domains)
        release = threading.Event()
        calls = defaultdict(int)

        def probe(domain):
            calls[domain] += 1
            if domain == "a.example":
                release.wait(timeout=10)
                return EXPIRATIONS[domain]
            return EXPIRATIONS[domain]

        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=probe)
        await monitor.start()
        try:
            assert await wait_for_condition(
                lambda: calls["b.example"] >= 3 and calls["c.example"] >= 3
            )
            assert calls["a.example"] == 1
            await asyncio.wait_for(monitor.stop(timeout=0.2), timeout=2.0)
        finally:
            release.set()

        # The cancelled probe never wrote its result
        assert table.get("a.example").expiration is None

    @pytest.mark.asyncio
    async def test_probes_sequential_within_domain(self, fast_config, mock_metrics):
        """Test that a domain never has two probes in flight."""
        table = ExpirationTable(fast_config.domains)
        lock = threading.Lock()
        in_flight = defaultdict(int)
        peak = defaultdict(int)
        calls = defaultdict(int)

        def probe(domain):
            with lock:
                in_flight[domain] += 1
                peak[domain] = max(peak[domain], in_flight[domain])
                calls[domain] += 1
            time.sleep(0.02)
            with lock:
                in_flight[domain] -= 1
            return EXPIRATIONS[domain]

        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=probe)
        await monitor.start()
        try:
            assert await wait_for_condition(lambda: min(calls.values() or [0]) >= 3 and len(calls) == 3)
        finally:
            await monitor.stop()

        assert all(value == 1 for value in peak.values())

    @pytest.mark.asyncio
    async def test_hung_domains_do_not_starve_pool(self, mock_metrics):
        """Test that more hung domains than workers still leave a thread for the rest."""
        from certmon.config import Config

        hung = ["h1.example", "h2.example", "h3.example", "h4.example"]
        config = Config(
            domains=hung + ["ok.example"],
            probe_interval="20ms",
            probe_jitter="0ms",
            workers=2,
        )
        table = ExpirationTable(config.domains)
        release = threading.Event()
        started = set()

        def probe(domain):
            started.add(domain)
            if domain in hung:
                release.wait(timeout=10)
            return EXPIRATIONS["b.example"]

        monitor = CertificateMonitor(config, table, mock_metrics, probe=probe)
        await monitor.start()
        try:
            assert await wait_for_condition(lambda: table.get("ok.example").is_known, timeout=2.0)
            assert await wait_for_condition(lambda: started >= set(hung), timeout=2.0)
            await asyncio.wait_for(monitor.stop(timeout=0.2), timeout=2.0)
        finally:
            release.set()

    def test_pool_sized_for_every_domain(self, mock_metrics):
        """Test that the pool has at least one thread per domain."""
        from certmon.config import Config

        config = Config(domains=[f"d{i}.example" for i in range(6)], workers=2)
        monitor = CertificateMonitor(config, ExpirationTable(config.domains), mock_metrics)

        assert monitor._executor._max_workers == 6
        monitor._executor.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_manual_round_waits_for_loop_probe(self, mock_metrics):
        """Test that a manual round never overlaps the loop's probe of the same domain."""
        from certmon.config import Config

        config = Config(domains=["a.example"], probe_interval="20ms", probe_jitter="0ms")
        table = ExpirationTable(config.domains)
        lock = threading.Lock()
        state = {"in_flight": 0, "peak": 0, "calls": 0}

        def probe(domain):
            with lock:
                state["in_flight"] += 1
                state["peak"] = max(state["peak"], state["in_flight"])
                state["calls"] += 1
            time.sleep(0.2)
            with lock:
                state["in_flight"] -= 1
            return EXPIRATIONS[domain]

        monitor = CertificateMonitor(config, table, mock_metrics, probe=probe)
        await monitor.start()
        try:
            assert await wait_for_condition(lambda: state["calls"] >= 1)
            results = await monitor.probe_once()
        finally:
            await monitor.stop()

        assert results["domains"] == {"a.example": True}
        assert state["peak"] == 1
        assert table.get("a.example").expiration == EXPIRATIONS["a.example"]

    @pytest.mark.asyncio
    async def test_stop_is_prompt_during_interval(self, mock_metrics):
        """Test that stop preempts a long interval sleep."""
        from certmon.config import Config

        config = Config(domains=["a.example"], probe_interval="1h", probe_jitter="0ms")
        table = ExpirationTable(config.domains)
        monitor = CertificateMonitor(config, table, mock_metrics, probe=fixed_probe)

        await monitor.start()
        assert await wait_for_condition(lambda: table.get("a.example").is_known)

        started = time.monotonic()
        await monitor.stop()

        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, fast_config, mock_metrics):
        """Test that starting a running monitor does not spawn more loops."""
        table = ExpirationTable(fast_config.domains)
        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=fixed_probe)

        await monitor.start()
        try:
            tasks = list(monitor._tasks)
            await monitor.start()
            assert monitor._tasks == tasks
        finally:
            await monitor.stop()

    @pytest.mark.asyncio
    async def test_probe_once_round(self, fast_config, mock_metrics):
        """Test a single probe round across all domains."""
        table = ExpirationTable(fast_config.domains)

        def probe(domain):
            if domain == "c.example":
                raise ProbeConnectionError("c.example:443: timed out")
            return EXPIRATIONS[domain]

        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=probe)
        try:
            results = await monitor.probe_once()
        finally:
            await monitor.stop()

        assert results["domains"] == {"a.example": True, "b.example": True, "c.example": False}
        assert results["summary"]["succeeded"] == 2
        assert results["summary"]["failed"] == 1
        assert table.get("c.example").failures == 1

    @pytest.mark.asyncio
    async def test_health_status(self, fast_config, mock_metrics):
        """Test monitor health reporting."""
        table = ExpirationTable(fast_config.domains)
        table.set("a.example", EXPIRATIONS["a.example"])
        table.record_failure("b.example", "timeout")
        monitor = CertificateMonitor(fast_config, table, mock_metrics, probe=fixed_probe)

        health = await monitor.get_health_status()

        assert health["monitor_status"] == "stopped"
        assert health["domains_monitored"] == 3
        assert health["domains_known"] == 1
        assert health["domains_failing"] == 1
        assert health["worker_pool_size"] == max(fast_config.workers, 3)
        await monitor.stop()

    def test_default_probe_uses_config(self, mock_metrics):
        """Test that the default prober is bound to the configured port and timeout."""
        from certmon.config import Config

        config = Config(domains=["a.example"], probe_port=8443, probe_timeout="3s")
        monitor = CertificateMonitor(config, ExpirationTable(config.domains), mock_metrics)

        assert monitor.probe.keywords == {"port": 8443, "timeout": 3.0}
        monitor._executor.shutdown(wait=False)
