"""FastAPI application exposing batch control and status endpoints."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from docsync.batch.orchestrator import JobOrchestrator, create_orchestrator
from docsync.batch.store import JobRepository
from docsync.config import AppConfig
from docsync.errors import (
    InvalidJobParametersError,
    JobAlreadyCompleteError,
    JobAlreadyRunningError,
    ProcessingError,
)
from docsync.index.gateway import ElasticsearchGateway
from docsync.streaming.consumer import StreamRunner, create_stream_runner

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="DocSync Admin", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class StartPayload(BaseModel):
    launch_timestamp: str | None = Field(default=None, alias="launchTimestamp")


class _Services:
    """Lazily built collaborators shared by every request."""

    def __init__(self) -> None:
        self.config: AppConfig | None = None
        self.gateway: ElasticsearchGateway | None = None
        self.store: JobRepository | None = None
        self.orchestrator: JobOrchestrator | None = None
        self.runner: StreamRunner | None = None
        self.consume = False
        self.runner_task: asyncio.Task | None = None

    def get_config(self) -> AppConfig:
        if self.config is None:
            self.config = AppConfig.from_env()
        return self.config

    def get_gateway(self) -> ElasticsearchGateway:
        if self.gateway is None:
            self.gateway = ElasticsearchGateway.from_config(self.get_config())
        return self.gateway

    def get_orchestrator(self) -> JobOrchestrator:
        if self.orchestrator is None:
            config = self.get_config()
            db_path = config.resolve_state_db_path(Path.cwd())
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.store = JobRepository(db_path)
            self.orchestrator = create_orchestrator(config, self.get_gateway(), self.store)
        return self.orchestrator

    def close(self) -> None:
        """Stop active runs, wait for their in-flight chunk, then release the store."""
        if self.orchestrator is not None:
            self.orchestrator.shutdown(wait=True)
        if self.store is not None:
            self.store.close()
        if self.gateway is not None:
            self.gateway.close()


services = _Services()


def configure(config: AppConfig, *, consume: bool = False) -> None:
    """Set the configuration before the server starts; ``consume`` also runs the stream consumers."""
    services.config = config
    services.consume = consume


def get_orchestrator() -> JobOrchestrator:
    return services.get_orchestrator()


def get_gateway() -> ElasticsearchGateway:
    return services.get_gateway()


def get_stream_runner() -> StreamRunner | None:
    return services.runner


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    if services.consume:
        services.runner = create_stream_runner(services.get_config(), services.get_gateway())
        services.runner_task = asyncio.create_task(services.runner.run())
        LOGGER.info("Stream consumers started alongside the admin API")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if services.runner_task is not None:
        services.runner_task.cancel()
        await asyncio.gather(services.runner_task, return_exceptions=True)
        services.runner_task = None
    services.close()


@app.post("/api/batch/historical-index/start", status_code=202)
async def start_historical_index(
    payload: StartPayload | None = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    parameters = None
    if payload is not None and payload.launch_timestamp is not None:
        parameters = {"launchTimestamp": payload.launch_timestamp}
    try:
        run = await asyncio.to_thread(orchestrator.start_run, parameters)
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except (JobAlreadyCompleteError, InvalidJobParametersError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        LOGGER.exception("Unable to launch backfill run")
        raise HTTPException(status_code=500, detail=f"Unable to launch backfill run: {exc}")

    return JSONResponse(
        status_code=202,
        content={
            "jobExecutionId": run.run_id,
            "status": run.status.value,
            "message": "Historical indexing job launched",
        },
    )


@app.post("/api/batch/historical-index/stop/{run_id}")
async def stop_historical_index(
    run_id: int, orchestrator: JobOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    run = orchestrator.stop_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return {**run.as_dict(), "message": "Stop requested" if run.status.is_active else "Run is not active"}


@app.get("/api/batch/historical-index/status/{run_id}")
async def historical_index_status(
    run_id: int, orchestrator: JobOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    run = orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run.as_dict()


@app.get("/api/batch/historical-index/latest-status")
async def latest_historical_index_status(
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return [run.as_dict() for run in orchestrator.list_recent_runs()]


@app.get("/api/status/health")
async def health(
    gateway: ElasticsearchGateway = Depends(get_gateway),
    runner: StreamRunner | None = Depends(get_stream_runner),
) -> Dict[str, Any]:
    try:
        cluster = await asyncio.to_thread(gateway.cluster_health)
        elasticsearch = {"status": "UP", "cluster": cluster.get("status")}
    except ProcessingError as exc:
        elasticsearch = {"status": "DOWN", "error": exc.message}
    consumers = {"status": "UP" if runner is not None and runner.workers else "IDLE"}
    if runner is not None:
        consumers["workers"] = len(runner.workers)
    overall = "UP" if elasticsearch["status"] == "UP" else "DEGRADED"
    return {"status": overall, "elasticsearch": elasticsearch, "consumers": consumers}


@app.get("/api/status/elasticsearch/cluster-health")
async def elasticsearch_cluster_health(gateway: ElasticsearchGateway = Depends(get_gateway)) -> Dict[str, Any]:
    try:
        return await asyncio.to_thread(gateway.cluster_health)
    except ProcessingError as exc:
        raise HTTPException(status_code=503, detail=exc.message)


@app.get("/api/status/elasticsearch/index-stats/{index_name}")
async def elasticsearch_index_stats(
    index_name: str, gateway: ElasticsearchGateway = Depends(get_gateway)
) -> Dict[str, Any]:
    try:
        stats = await asyncio.to_thread(gateway.index_stats, index_name)
    except ProcessingError as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {"index": index_name, **stats}


@app.get("/api/status/kafka/consumer-lag")
async def kafka_consumer_lag(runner: StreamRunner | None = Depends(get_stream_runner)) -> Dict[str, Any]:
    if runner is None:
        return {"running": False, "workers": {}}
    return {"running": bool(runner.workers), "groupId": runner.group_id, "workers": await runner.lag()}
