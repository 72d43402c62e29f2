# moderation/app.py
import logging, os, time
from uuid import uuid4
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, FileResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest
import requests

from .backend import UpstreamClient
from .config import load_settings
from .decision import Decision, decide, safe_decision
from .errors import RemoteError
from .model_loader import ALLOWED_FILES, artifact_path, validate_artifacts
from .security import log_review, require_api_key
from .telemetry import TelemetryTotals, sanitize_events

log = logging.getLogger(__name__)

DECISIONS = Counter("server_decisions_total", "decisions computed by /moderation/check", ["action"])
DEGRADED = Counter("server_degraded_total", "decisions computed without upstream scores")
MODEL_FILES = Counter("model_file_requests_total", "artifact requests", ["status"])
REQ_LAT = Histogram(
    "request_latency_seconds",
    "Moderation request latency in seconds",
    ["route"],
    buckets=(0.05, 0.1, 0.2, 0.3, 0.5, 1.0, 2.0, 5.0, 10.0)
)

DEGRADED_REASON = "Backend unavailable - partial scores"

app = FastAPI(title="Moderation Guard", version="v1")
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

SETTINGS = load_settings()
TOTALS = TelemetryTotals()


class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    client_decision: Optional[Decision] = Field(None, alias="clientDecision")


class TelemetryBatch(BaseModel):
    events: List[Dict[str, Any]] = Field(default_factory=list)


def _upstream_scores(text: str) -> Dict[str, float]:
    """Scores from the inference service. Tests replace this."""
    client = UpstreamClient(SETTINGS.backend.inference_url, SETTINGS.backend_config(),
                            timeout=SETTINGS.timeouts.upstream_s)
    return client.scores(text)


@app.post("/moderation/check")
def moderation_check(payload: CheckRequest, request: Request, response: Response):
    require_api_key(request)
    t0 = time.perf_counter()
    text = (payload.text or "").strip()
    if not text:
        return JSONResponse({"error": "Missing text"}, status_code=400)

    cfg = SETTINGS.backend_config()
    backend_error = False
    if not SETTINGS.flags.moderation_enabled or not SETTINGS.backend.inference_url:
        decision = safe_decision(cfg, "moderation disabled", source="backend")
    else:
        try:
            decision = decide(_upstream_scores(text), cfg, source="backend")
        except RemoteError as e:
            log.warning("upstream inference failed: %s", e)
            backend_error = True
            DEGRADED.inc()
            decision = decide({}, cfg, source="backend", degraded=DEGRADED_REASON)

    req_id = uuid4().hex
    response.headers["X-Request-Id"] = req_id
    response.headers["X-Model-Id"] = cfg.id
    wire = decision.to_wire()
    if payload.client_decision is not None:
        log_review(text, payload.client_decision.to_wire(), wire,
                   backend_error=backend_error, request_id=req_id)
    DECISIONS.labels(action=decision.action).inc()
    REQ_LAT.labels(route="moderation_check").observe(max(0.0, time.perf_counter() - t0))
    return wire


@app.get("/moderation/model")
def moderation_model(request: Request, file: Optional[str] = Query(None)):
    if not SETTINGS.flags.model_access_enabled:
        MODEL_FILES.labels(status="forbidden").inc()
        raise HTTPException(status_code=403, detail="model access disabled")
    lite = SETTINGS.lite
    if file is None:
        base = str(request.url_for("moderation_model"))
        files = [{"file": f, "url": f"{base}?file={f}"} for f in (lite.model_file, lite.tokenizer_file)]
        return {"model_id": lite.model_id, "files": files}
    if file not in ALLOWED_FILES:
        MODEL_FILES.labels(status="rejected").inc()
        raise HTTPException(status_code=400, detail=f"file not allowed: {file}")
    path = artifact_path(lite.artifact_dir, file)
    if path is None:
        MODEL_FILES.labels(status="missing").inc()
        raise HTTPException(status_code=404, detail=f"not found: {file}")
    MODEL_FILES.labels(status="served").inc()
    return FileResponse(path, media_type="application/octet-stream", filename=file)


def _forward(events: list) -> None:
    url = SETTINGS.telemetry.forward_url
    if not url:
        return
    try:
        requests.post(url, json={"events": events}, timeout=SETTINGS.timeouts.upstream_s).raise_for_status()
    except requests.RequestException as e:
        log.warning("telemetry forward to %s failed: %s", url, e)


@app.post("/telemetry/moderation")
def telemetry_ingest(payload: TelemetryBatch):
    if not SETTINGS.flags.telemetry_enabled:
        return {"ok": True, "accepted": 0, "totals": TelemetryTotals.empty()}
    events = sanitize_events(payload.events, limit=SETTINGS.telemetry.max_ingest)
    TOTALS.record(events)
    _forward(events)
    return {"ok": True, "accepted": len(events), "totals": TOTALS.snapshot()}


@app.get("/telemetry/moderation")
def telemetry_totals():
    if not SETTINGS.flags.telemetry_enabled:
        return {"totals": TelemetryTotals.empty()}
    return {"totals": TOTALS.snapshot()}


@app.get("/health")
def health():
    flags = SETTINGS.flags
    payload = {
        "ok": True,
        "moderation_enabled": flags.moderation_enabled,
        "lite_enabled": flags.lite_enabled,
        "override_enabled": flags.override_enabled,
        "lite_model_id": SETTINGS.lite.model_id,
        "backend_model_id": SETTINGS.backend_config().id,
        "upstream_configured": bool(SETTINGS.backend.inference_url),
        "artifacts": None,
    }
    if SETTINGS.lite.artifact_dir:
        art = validate_artifacts(SETTINGS.lite.artifact_dir, SETTINGS.lite_config())
        payload["artifacts"] = art
        payload["ok"] = bool(art.get("ok"))
    # invalid artifacts trip the healthcheck
    if not payload["ok"]:
        return JSONResponse(payload, status_code=503)
    return payload


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
