"""
FastAPI application for CertMon.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from certmon import __version__
from certmon.config import Config
from certmon.logger import get_logger
from certmon.metrics import MetricsCollector
from certmon.monitor import CertificateMonitor
from certmon.status import StatusRenderer, record_state


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan handler that suppresses CancelledError during shutdown."""
    logger = get_logger("api")
    logger.info("CertMon API started")
    try:
        yield
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("CertMon API shutting down")


def create_app(
    monitor: CertificateMonitor,
    metrics: MetricsCollector,
    config: Config,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        monitor: Certificate monitor owning the expiration table
        metrics: Metrics collector instance
        config: Configuration instance

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="CertMon",
        description="TLS certificate expiration monitor",
        version=__version__,
        docs_url="/docs" if not config.dry_run else None,
        redoc_url="/redoc" if not config.dry_run else None,
        lifespan=lifespan_override or lifespan,
    )

    logger = get_logger("api")
    renderer = StatusRenderer(
        monitor.table,
        unknown_first=config.unknown_first,
        stale_after=config.stale_after_seconds,
        interval=config.probe_interval,
    )

    @app.get("/", response_class=HTMLResponse)
    async def root() -> HTMLResponse:
        try:
            return HTMLResponse(content=renderer.render_html())
        except Exception as e:
            logger.error(f"Failed to render status page: {e}")
            raise HTTPException(status_code=500, detail="Failed to render status page") from e

    @app.get("/status.txt", response_class=PlainTextResponse)
    async def status_text() -> PlainTextResponse:
        try:
            return PlainTextResponse(content=renderer.render_text())
        except Exception as e:
            logger.error(f"Failed to render status report: {e}")
            raise HTTPException(status_code=500, detail="Failed to render status report") from e

    @app.get("/status", response_class=JSONResponse)
    async def status_json() -> JSONResponse:
        records = renderer.ordered()
        content = []
        for record in records:
            entry: Dict[str, Any] = record.to_dict()
            entry["state"] = record_state(record, stale_after=renderer.stale_after)
            content.append(entry)
        return JSONResponse(content=content)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            metrics_data: str = metrics.get_metrics()
            return PlainTextResponse(content=metrics_data, media_type=metrics.get_content_type())
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            monitor_health = await monitor.get_health_status()
            metrics_health = metrics.get_registry_status()

            health_status = {
                **monitor_health,
                **metrics_health,
                "status": "healthy",
                "version": __version__,
            }
            return JSONResponse(content=health_status)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    @app.post("/probe", response_class=JSONResponse)
    async def trigger_probe() -> JSONResponse:
        if config.dry_run:
            return JSONResponse(
                content={"message": "Probe not performed - dry run mode enabled"}, status_code=200
            )
        try:
            logger.info("Manual probe triggered via API")
            results = await monitor.probe_once()
            return JSONResponse(content=results)
        except Exception as e:
            logger.error(f"Manual probe failed: {e}")
            raise HTTPException(status_code=500, detail=f"Probe failed: {e}") from e

    return app
