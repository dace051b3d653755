#!/usr/bin/env python3
"""
CertMon - Main Application Entry Point
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import click
import uvicorn
from fastapi import FastAPI

from certmon import __version__
from certmon.api import create_app
from certmon.config import Config, load_config
from certmon.logger import setup_logging
from certmon.metrics import MetricsCollector
from certmon.monitor import CertificateMonitor
from certmon.status import render_text
from certmon.table import ExpirationTable


class CertMonApp:
    """Main application class for CertMon."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        dry_run: bool = False,
        domains: Optional[List[str]] = None,
        port: Optional[int] = None,
    ):
        self.config: Optional[Config] = None
        self.table: Optional[ExpirationTable] = None
        self.metrics: Optional[MetricsCollector] = None
        self.monitor: Optional[CertificateMonitor] = None
        self.app: Optional[FastAPI] = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.domains = domains
        self.port = port
        self._server: Optional[uvicorn.Server] = None
        self.logger = logging.getLogger(__name__)

    def _load_config(self) -> Config:
        config = load_config(self.config_path)
        overrides = {}
        if self.domains:
            overrides["domains"] = self.domains
        if self.port:
            overrides["port"] = self.port
        if self.dry_run:
            overrides["dry_run"] = True
        if overrides:
            # Re-validate so CLI values go through the same checks as file values
            config = Config(**{**config.model_dump(), **overrides})
        return config

    async def initialize(self) -> None:
        """Initialize all application components."""
        try:
            self.config = self._load_config()

            setup_logging(self.config)
            self.logger.info("Initializing CertMon")

            self.table = ExpirationTable(self.config.domains)
            self.metrics = MetricsCollector()
            self.monitor = CertificateMonitor(
                config=self.config, table=self.table, metrics=self.metrics
            )

            self.app = create_app(monitor=self.monitor, metrics=self.metrics, config=self.config)

            if not self.config.dry_run:
                await self.monitor.start()

            self.logger.info(f"CertMon initialized - monitoring {', '.join(self.table.domains)}")

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            raise

    async def run(self) -> None:
        """Run the application server or perform a single dry-run probe."""
        if not self.app:
            await self.initialize()

        assert self.config is not None, "Config should be initialized"
        assert self.monitor is not None and self.table is not None

        if self.config.dry_run:
            self.logger.info("Running in dry-run mode - probing each domain once")
            await self.monitor.probe_once()
            print(
                render_text(
                    self.table.snapshot(),
                    unknown_first=self.config.unknown_first,
                    stale_after=self.config.stale_after_seconds,
                ),
                end="",
            )
            await self.shutdown()
            return

        config_dict = {
            "app": self.app,
            "host": self.config.bind_address,
            "port": self.config.port,
            "log_level": self.config.log_level.lower(),
            "access_log": True,
        }

        if self.config.tls_cert and self.config.tls_key:
            config_dict.update(
                {
                    "ssl_keyfile": self.config.tls_key,
                    "ssl_certfile": self.config.tls_cert,
                }
            )
            self.logger.info(
                f"Starting HTTPS server on {self.config.bind_address}:{self.config.port}"
            )
        else:
            self.logger.info(
                f"Starting HTTP server on {self.config.bind_address}:{self.config.port}"
            )

        self._server = uvicorn.Server(uvicorn.Config(**config_dict))  # type: ignore[arg-type]

        for sig in [signal.SIGTERM, signal.SIGINT]:
            signal.signal(sig, self._signal_handler)

        try:
            await self._server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal")
        finally:
            await self.shutdown()

    def _signal_handler(self, signum: int, frame: Optional[object]) -> None:
        """Handle shutdown signals by asking uvicorn to exit."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
        if self._server is not None:
            self._server.should_exit = True

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        self.logger.info("Starting graceful shutdown")

        if self.monitor:
            await self.monitor.stop()

        self.logger.info("Graceful shutdown completed")


def _split_hosts(hosts: Optional[str]) -> Optional[List[str]]:
    if not hosts:
        return None
    return [host.strip() for host in hosts.split(",") if host.strip()]


@click.command()
@click.option(
    "--config",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--hosts",
    help="Comma-separated list of internet domains whose TLS certificate expiration dates we monitor",
)
@click.option("--port", type=click.IntRange(1, 65535), help="Port for serving HTTP requests")
@click.option("--version", "-v", is_flag=True, help="Show version information")
@click.option("--dry-run", is_flag=True, help="Probe every domain once, print the report and exit")
def main(
    config: Optional[Path],
    hosts: Optional[str],
    port: Optional[int],
    version: bool,
    dry_run: bool,
) -> None:
    """CertMon - Monitor TLS certificate expiration dates of internet domains."""

    if version:
        print(f"CertMon v{__version__}")
        return

    try:
        app = CertMonApp(
            str(config) if config else None,
            dry_run=dry_run,
            domains=_split_hosts(hosts),
            port=port,
        )
        asyncio.run(app.run())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
