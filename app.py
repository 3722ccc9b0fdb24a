from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Path as PathParam, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from gfs_data import (
    GfsConfig,
    GfsDataError,
    GfsRequestError,
    GfsStore,
    IndexFormatError,
    MalformedListingError,
    filter_records,
    format_run,
    latest_aligned_run,
    run_datetime,
)


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("GFS_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("gfs_explorer")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("GFS_LOG_FILE", "logs/gfs_explorer.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="GFS Explorer")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("GFS_EXPLORER_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

store = GfsStore(GfsConfig.from_env())


def _query_value(value) -> Optional[str]:
    # direct calls (tests) receive the Query() marker instead of its default
    if value is not None and not isinstance(value, str):
        value = getattr(value, "default", None)
    if value is None:
        return None
    return str(value)


def _error_status(exc: GfsDataError) -> int:
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, (MalformedListingError, IndexFormatError)):
        return 502
    if isinstance(exc, GfsRequestError):
        return 503
    return 500


def _requested_run(year: int, month: int, day: int, hour: int, forecast: int) -> datetime:
    if int(forecast) < 0:
        raise ValueError(f"Forecast hour must be non-negative, got {forecast}")
    return run_datetime(year, month, day, hour, store.config.run_interval_hours)


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info(
        "App startup bucket=%s expected_forecasts=%d max_runs_to_try=%d",
        store.config.bucket,
        store.config.expected_forecasts,
        store.config.max_runs_to_try,
    )


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")


@app.get("/gfs/latest")
def gfs_latest() -> Dict[str, object]:
    try:
        latest_run = store.latest_complete_run()
    except GfsDataError as exc:
        LOGGER.warning("Latest run lookup failed: %s", exc)
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    LOGGER.debug("Latest complete run %s", format_run(latest_run))
    return {"latest_run": format_run(latest_run)}


@app.get("/gfs/idx")
def gfs_idx_status() -> Dict[str, object]:
    run = latest_aligned_run(datetime.now(timezone.utc), store.config.run_interval_hours)
    try:
        return store.run_status(run)
    except GfsDataError as exc:
        LOGGER.warning("Run status lookup failed run=%s: %s", format_run(run), exc)
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc


@app.get("/gfs/idx/{year}/{month}/{day}/{hour}/{forecast}")
def gfs_idx(
    year: int,
    month: int,
    day: int,
    hour: int,
    forecast: int,
    level: Optional[str] = Query(None),
    parameter: Optional[str] = Query(None),
) -> List[Dict[str, object]]:
    query: Dict[str, str] = {}
    level = _query_value(level)
    parameter = _query_value(parameter)
    if level is not None:
        query["level"] = level
    if parameter is not None:
        query["parameter"] = parameter
    try:
        run = _requested_run(year, month, day, hour, forecast)
        records = filter_records(store.index_records(run, forecast), query)
    except ValueError as exc:
        LOGGER.warning("Index request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GfsDataError as exc:
        LOGGER.warning("Index request failed: %s", exc)
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    LOGGER.debug(
        "Index served run=%s forecast=%s filters=%s records=%d",
        format_run(run),
        forecast,
        query,
        len(records),
    )
    return [record.to_dict() for record in records]


@app.get("/gfs/grib/{year}/{month}/{day}/{hour}/{forecast}/{parameter}/{level}")
def gfs_grib(
    year: int,
    month: int,
    day: int,
    hour: int,
    forecast: int,
    parameter: str = PathParam(...),
    level: str = PathParam(...),
) -> Response:
    try:
        run = _requested_run(year, month, day, hour, forecast)
        record, byte_range, payload = store.grib_record(run, forecast, parameter, level)
    except ValueError as exc:
        LOGGER.warning("Grib request invalid: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GfsDataError as exc:
        LOGGER.warning(
            "Grib request failed run=%s-%s-%s %sh forecast=%s parameter=%s level=%s: %s",
            year,
            month,
            day,
            hour,
            forecast,
            parameter,
            level,
            exc,
        )
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc

    return Response(
        content=payload,
        media_type="application/octet-stream",
        headers={
            "Cache-Control": "no-store",
            "X-Grib-Byte-Range": byte_range.header_value(),
            "X-Grib-Record": f"{record.index}:{record.parameter}:{record.level}:{record.forecast_type}",
        },
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
