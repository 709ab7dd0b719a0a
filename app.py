from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from image_store import CancelledError, ImageLoadError
from raster_catalog import RasterCatalog
from timeseries import SamplePoint, TimeSeriesEngine, TimeSeriesRequest

TIMESERIES_JOB_MAX_ENTRIES = int(os.getenv("TIMESERIES_JOB_MAX_ENTRIES", "64"))
MAX_SAMPLE_POINTS = int(os.getenv("MAX_SAMPLE_POINTS", "32"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("RASTER_SERIES_LOG_FILE", "logs/raster_series.log").strip()
LOG_MAX_BYTES = int(os.getenv("RASTER_SERIES_LOG_MAX_BYTES", "2000000"))
LOG_BACKUP_COUNT = int(os.getenv("RASTER_SERIES_LOG_BACKUPS", "5"))
CORS_ORIGINS = os.getenv("RASTER_SERIES_CORS_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000")


def _configure_logging(name: str = "raster_series", level_name: str = LOG_LEVEL, log_file: str = LOG_FILE) -> logging.Logger:
    """Attach stream and rotating file handlers to the project logger once.

    Module loggers (``raster_series.image_store`` ...) propagate here. Records
    carry the name of the prefetch or interactive worker thread.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    if logger.handlers:
        return logger

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT))
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(threadName)s [%(name)s] %(message)s")
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    logger.info("Logging to %s at level=%s", log_file or "stderr only", logging.getLevelName(logger.level))
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Raster Series Explorer")


def _cors_origins(raw: str) -> List[str]:
    origins = [v.strip().rstrip("/") for v in raw.split(",") if v.strip()]
    return ["*"] if "*" in origins else origins


# Every endpoint is a GET.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(CORS_ORIGINS),
    allow_methods=["GET"],
    allow_headers=["*"],
)

engine = TimeSeriesEngine(RasterCatalog.load())
_JOBS: Dict[str, Dict[str, object]] = {}
_JOBS_GUARD = threading.Lock()


def _parse_points(points: str) -> List[SamplePoint]:
    out: List[SamplePoint] = []
    for index, chunk in enumerate(p.strip() for p in str(points).split(";")):
        if not chunk:
            continue
        parts = [v.strip() for v in chunk.split(",")]
        if len(parts) not in (2, 3):
            raise HTTPException(status_code=400, detail=f"Invalid point: {chunk}")
        try:
            x, y = float(parts[0]), float(parts[1])
            label = parts[2] if len(parts) == 3 else f"point {index + 1}"
            out.append(SamplePoint(x=x, y=y, label=label))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid point {chunk}: {exc}") from exc
    if not out:
        raise HTTPException(status_code=400, detail="No sample points requested")
    if len(out) > MAX_SAMPLE_POINTS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_SAMPLE_POINTS} sample points allowed")
    return out


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup")
    domains = engine.catalog.domains()
    if domains and engine.domain is None:
        engine.switch_domain(domains[0])


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    engine.shutdown()


@app.get("/api/metadata")
def metadata() -> Dict[str, object]:
    catalog = engine.catalog
    domains_payload = []
    for domain in catalog.domains():
        timestamps = catalog.timestamps(domain)
        domains_payload.append(
            {
                "domain": domain,
                "timestamps": timestamps,
                "variables": catalog.variables(domain),
            }
        )
    LOGGER.debug("Metadata served domains=%d", len(domains_payload))
    return {"domains": domains_payload, "active_domain": engine.domain}


@app.get("/api/domain/select")
def select_domain(domain: str = Query(...)) -> Dict[str, object]:
    try:
        engine.switch_domain(domain)
    except KeyError as exc:
        LOGGER.warning("Domain switch invalid: %s", exc)
        raise HTTPException(status_code=404, detail=f"Unknown domain: {domain}") from exc
    _cancel_running_jobs()
    return {"ok": True, "active_domain": domain}


@app.get("/api/prefetch")
def prefetch(
    variable: str = Query(...),
    start: str = Query(...),
    end: str = Query(...),
) -> Dict[str, object]:
    try:
        queued = engine.prefetch_variable(variable, start, end)
    except (KeyError, ValueError) as exc:
        LOGGER.warning("Prefetch request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    LOGGER.debug("Prefetch request variable=%s window=%s..%s queued=%d", variable, start, end, len(queued))
    return {"ok": True, "queued": len(queued)}


@app.get("/api/value")
def value(
    timestamp: str = Query(...),
    variable: str = Query(...),
    x: float = Query(..., ge=0, le=1),
    y: float = Query(..., ge=0, le=1),
) -> Dict[str, object]:
    try:
        samples = engine.sample(timestamp, variable, [SamplePoint(x=x, y=y)])
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        LOGGER.warning("Value request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        LOGGER.warning("Value request runtime error: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    sample = samples[0]
    return {
        "domain": engine.domain,
        "timestamp": timestamp,
        "variable": variable,
        "x": x,
        "y": y,
        "rgb": sample["rgb"],
        "value": round(float(sample["value"]), 2),
    }


@app.get("/api/timeseries/start")
def timeseries_start(
    variable: str = Query(...),
    start: str = Query(...),
    end: str = Query(...),
    points: str = Query(...),
) -> Dict[str, object]:
    sample_points = _parse_points(points)
    try:
        request = TimeSeriesRequest(start=start, end=end, points=tuple(sample_points), variable=variable)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if engine.domain is None:
        raise HTTPException(status_code=400, detail="No active domain selected")

    job_id = uuid.uuid4().hex
    job: Dict[str, object] = {
        "job_id": job_id,
        "status": "running",
        "progress": 0.0,
        "domain": engine.domain,
        "variable": variable,
        "started_at": time.time(),
        "result": None,
        "error": None,
    }
    with _JOBS_GUARD:
        _JOBS[job_id] = job
        _prune_jobs()
    thread = threading.Thread(
        target=_run_timeseries_job,
        args=(job_id, request),
        name=f"timeseries-{job_id[:8]}",
        daemon=True,
    )
    thread.start()
    LOGGER.info("Started series job=%s variable=%s range=%s..%s points=%d", job_id, variable, start, end, len(sample_points))
    return {"job_id": job_id, "status": "running"}


@app.get("/api/timeseries/status")
def timeseries_status(job_id: str = Query(...)) -> Dict[str, object]:
    with _JOBS_GUARD:
        job = _JOBS.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Unknown series job_id: {job_id}")
        return dict(job)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


def _run_timeseries_job(job_id: str, request: TimeSeriesRequest) -> None:
    def _progress(fraction: float) -> None:
        _update_job(job_id, progress=round(float(fraction), 4))

    try:
        result = engine.generate(request, progress=_progress)
    except CancelledError as exc:
        LOGGER.info("Series job cancelled job=%s: %s", job_id, exc)
        _update_job(job_id, status="cancelled", result=None)
    except (ValueError, KeyError, ImageLoadError) as exc:
        LOGGER.warning("Series job failed job=%s: %s", job_id, exc)
        _update_job(job_id, status="error", error=str(exc))
    except Exception:
        LOGGER.exception("Series job crashed job=%s", job_id)
        _update_job(job_id, status="error", error="internal error")
    else:
        _update_job(job_id, status="done", progress=1.0, result=result.to_payload())


def _update_job(job_id: str, **fields: object) -> None:
    with _JOBS_GUARD:
        job = _JOBS.get(job_id)
        if job is None:
            return
        if job["status"] == "cancelled" and fields.get("status") != "cancelled":
            return
        job.update(fields)


def _cancel_running_jobs() -> None:
    # Jobs started on the previous domain never report a result.
    with _JOBS_GUARD:
        for job in _JOBS.values():
            if job["status"] == "running":
                job["status"] = "cancelled"
                job["result"] = None


def _prune_jobs() -> None:
    if len(_JOBS) <= TIMESERIES_JOB_MAX_ENTRIES:
        return
    finished = sorted(
        (job for job in _JOBS.values() if job["status"] != "running"),
        key=lambda job: float(job["started_at"]),
    )
    for job in finished[: len(_JOBS) - TIMESERIES_JOB_MAX_ENTRIES]:
        _JOBS.pop(str(job["job_id"]), None)
