# SPDX-License-Identifier: MIT
# src/civic_alerts/api/server.py
"""
FastAPI app exposing the cron jobs and the city summary.

The scheduler hits ``/api/cron/check-alerts`` and
``/api/cron/check-expo-receipts`` (GET or POST) on fixed intervals;
authorization is decided by the orchestrator from the request headers.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from civic_alerts import __version__
from civic_alerts.config import Settings
from civic_alerts.alerts.orchestration import AlertCronOrchestrator, build_orchestrator
from civic_alerts.alerts.sources import CivicSources
from civic_alerts.alerts.summary import collect_city_summary

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=1)
def get_orchestrator() -> AlertCronOrchestrator:
    return build_orchestrator(get_settings())


def get_sources(settings: Settings = Depends(get_settings)) -> CivicSources:
    return CivicSources.from_settings(settings)


app = FastAPI(
    title="Civic Alerts",
    version=__version__,
    description="Weather, river, air quality and traffic alerts with push delivery",
)


@app.api_route("/api/cron/check-alerts", methods=["GET", "POST"])
async def check_alerts(request: Request, orchestrator: AlertCronOrchestrator = Depends(get_orchestrator)):
    status, body = await orchestrator.handle(dict(request.headers))
    return JSONResponse(status_code=status, content=body)


@app.api_route("/api/cron/check-expo-receipts", methods=["GET", "POST"])
async def check_expo_receipts(request: Request, orchestrator: AlertCronOrchestrator = Depends(get_orchestrator)):
    status, body = await orchestrator.handle_receipts(dict(request.headers))
    return JSONResponse(status_code=status, content=body)


@app.get("/api/city-summary")
async def city_summary(sources: CivicSources = Depends(get_sources)):
    try:
        return await collect_city_summary(sources)
    except Exception as e:
        logger.error(f"City summary failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "overall_status": "normal",
                "weather": {"current": None, "alerts": [], "anomalies": []},
                "rivers": {"readings": [], "anomalies": []},
                "airQuality": {"current": None, "anomalies": []},
                "traffic": {"incidents": [], "anomalies": []},
                "narrative_summary": "Unable to fetch city data at this time.",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": "Failed to fetch city summary",
            },
        )


@app.get("/health")
async def health_check(settings: Settings = Depends(get_settings)):
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def main() -> None:
    import argparse
    import uvicorn

    p = argparse.ArgumentParser(description="Serve the civic alerts API")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    args = p.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    logger.info(f"Starting {settings.app_name} {settings.app_version} on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
