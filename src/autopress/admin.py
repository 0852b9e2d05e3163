from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterator

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Config, load_config
from .db import connect_db
from .errors import PipelineError
from .llm.limiter import ConcurrencyLimiter
from .models import DiscoveryFailed, DiscoverySuccess
from .pipeline import Pipeline, build_limiter, build_pipeline
from .services import campaign_service
from .utils import configure_logging, log_event

ADMIN_TOKEN_ENV = "AP_ADMIN_TOKEN"

STATUS_BY_KIND = {
    "configuration": 400,
    "data": 400,
    "not_found": 404,
    "conflict": 409,
    "exhaustion": 429,
    "transient": 502,
}

logger = logging.getLogger("autopress.admin")

app = FastAPI(title="autopress Admin API")

_limiter: ConcurrencyLimiter | None = None
_limiter_lock = threading.Lock()


class KeyRequest(BaseModel):
    provider: str
    secret: str
    label: str = ""
    daily_quota: int = Field(default=0, ge=0)
    monthly_quota: int = Field(default=0, ge=0)


class KeyUpdateRequest(BaseModel):
    label: str | None = None
    daily_quota: int | None = Field(default=None, ge=0)
    monthly_quota: int | None = Field(default=None, ge=0)
    status: str | None = None


class ReclaimRequest(BaseModel):
    minutes: int | None = Field(default=None, ge=0)


class ProviderResetRequest(BaseModel):
    provider: str | None = None


def _require_admin_token(request: Request) -> None:
    token = os.environ.get(ADMIN_TOKEN_ENV)
    if not token or request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def get_config() -> Config:
    return load_config()


def _shared_limiter(config: Config) -> ConcurrencyLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = build_limiter(config)
        return _limiter


def get_pipeline(config: Config = Depends(get_config)) -> Iterator[Pipeline]:
    conn = connect_db(config.paths.state_db)
    try:
        yield build_pipeline(config, conn, limiter=_shared_limiter(config))
    finally:
        conn.close()


@app.exception_handler(PipelineError)
async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status = STATUS_BY_KIND.get(exc.kind, 500)
    log_event(logger, logging.WARNING, "admin_request_failed", path=request.url.path, error=exc.describe())
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": __version__,
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/queue/stats", dependencies=[Depends(_require_admin_token)])
def queue_stats(campaign_id: str | None = None, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, int]:
    return pipeline.queue.stats(campaign_id)


@app.get("/queue/items", dependencies=[Depends(_require_admin_token)])
def queue_items(
    campaign_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    pipeline: Pipeline = Depends(get_pipeline),
) -> list[dict[str, Any]]:
    return [asdict(item) for item in pipeline.queue.list_items(campaign_id, status, limit)]


@app.post("/queue/reclaim", dependencies=[Depends(_require_admin_token)])
def queue_reclaim(
    payload: ReclaimRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict[str, int]:
    minutes = payload.minutes if payload and payload.minutes is not None else pipeline.config.queue.stuck_minutes
    return {"reclaimed": pipeline.queue.reclaim_stuck(minutes * 60)}


@app.post("/queue/items/{item_id}/retry", dependencies=[Depends(_require_admin_token)])
def queue_retry(item_id: int, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    item = pipeline.queue.get(item_id)
    if not pipeline.queue.requeue_failed(item_id):
        raise PipelineError(
            "item_not_failed",
            f"queue item {item_id} is {item.status}, only failed items can be retried",
            kind="conflict",
        )
    return asdict(pipeline.queue.get(item_id))


@app.get("/keys", dependencies=[Depends(_require_admin_token)])
def keys_list(provider: str | None = None, pipeline: Pipeline = Depends(get_pipeline)) -> list[dict[str, Any]]:
    return [asdict(key) for key in pipeline.keys.list_keys(provider)]


@app.post("/keys", status_code=201, dependencies=[Depends(_require_admin_token)])
def keys_create(payload: KeyRequest, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    key = pipeline.keys.add_key(
        payload.provider,
        payload.secret,
        label=payload.label,
        daily_quota=payload.daily_quota,
        monthly_quota=payload.monthly_quota,
    )
    return asdict(key)


@app.patch("/keys/{key_id}", dependencies=[Depends(_require_admin_token)])
def keys_update(key_id: int, payload: KeyUpdateRequest, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    key = pipeline.keys.update_key(key_id, **payload.model_dump(exclude_unset=True))
    return asdict(key)


@app.delete("/keys/{key_id}", dependencies=[Depends(_require_admin_token)])
def keys_delete(key_id: int, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, str]:
    pipeline.keys.delete_key(key_id)
    return {"status": "deleted"}


@app.get("/campaigns/{campaign_id}/discovery", dependencies=[Depends(_require_admin_token)])
def campaign_discovery(campaign_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    status = pipeline.discovery.discovery_status(campaign_id)
    status["alerts"] = campaign_service.list_health_alerts(pipeline.conn, campaign_id, limit=10)
    return status


@app.post("/campaigns/{campaign_id}/discover", dependencies=[Depends(_require_admin_token)])
def campaign_discover(campaign_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    outcome = pipeline.discovery.force_discover(campaign_id)
    if isinstance(outcome, DiscoverySuccess):
        result = "success"
    elif isinstance(outcome, DiscoveryFailed):
        result = "failed"
    else:
        result = "skipped"
    return {"outcome": result, **asdict(outcome)}


@app.get("/campaigns/{campaign_id}/providers", dependencies=[Depends(_require_admin_token)])
def campaign_providers(campaign_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> list[dict[str, Any]]:
    campaign_service.require_campaign(pipeline.conn, campaign_id)
    return [asdict(stat) for stat in pipeline.search.statistics(campaign_id)]


@app.post("/campaigns/{campaign_id}/providers/reset", dependencies=[Depends(_require_admin_token)])
def campaign_providers_reset(
    campaign_id: str,
    payload: ProviderResetRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict[str, int]:
    campaign_service.require_campaign(pipeline.conn, campaign_id)
    provider = payload.provider if payload else None
    return {"reset": pipeline.search.reset_statistics(campaign_id, provider)}


@app.post("/campaigns/{campaign_id}/rotation/reset", dependencies=[Depends(_require_admin_token)])
def campaign_rotation_reset(campaign_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, str]:
    campaign_service.require_campaign(pipeline.conn, campaign_id)
    pipeline.generation.reset_rotation(campaign_id)
    return {"status": "ok"}


def main() -> None:
    configure_logging("autopress.admin")
    uvicorn.run(
        "autopress.admin:app",
        host=os.environ.get("AP_ADMIN_HOST", "127.0.0.1"),
        port=int(os.environ.get("AP_ADMIN_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
