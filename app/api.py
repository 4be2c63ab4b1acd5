#!/usr/bin/env python3
"""
Field Telemetry FastAPI Web Application

Read-only REST API over the stored telemetry:
- All rows, newest row and newest row per device for each record kind
- Average kw across the device roster
- Per-channel device counts for a digital input state vector
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregates import get_average_kw, get_devices_status, get_latest_per_device
from schema import RecordKind
from settings import API_PORT, API_TITLE, API_VERSION, DATABASE_URL, LOG_FORMAT, LOG_LEVEL
from telemetry_store import TelemetryStore

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    description="Field device telemetry: digital inputs, analyzer data, analog inputs, device data"
)

# Storage handle, created on startup
store: Optional[TelemetryStore] = None

# URL segment -> record kind
RESOURCES: Dict[str, RecordKind] = {
    "digital-inputs": RecordKind.DIGITAL_INPUTS,
    "analyzer-data": RecordKind.ANALYZER_DATA,
    "analog-input": RecordKind.ANALOG_INPUTS,
    "device-data": RecordKind.DEVICE_DATA,
}


# Pydantic models
class RowsResponse(BaseModel):
    success: bool = True
    count: int
    data: List[Dict[str, Any]]


class RowResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]


class AverageKW(BaseModel):
    average_kw: float


class AverageKWResponse(BaseModel):
    success: bool = True
    data: AverageKW


class DeviceStatusResponse(BaseModel):
    success: bool = True
    data: Dict[int, int]


# Startup/Shutdown events
@app.on_event("startup")
async def startup():
    """Create the connection pool and tables on startup."""
    global store
    if store is None:
        store = TelemetryStore.from_url(DATABASE_URL)
        await store.init_schema()
    logger.info("Database connection pool initialized")


@app.on_event("shutdown")
async def shutdown():
    """Close database connection pool on shutdown."""
    global store
    if store:
        await store.close()
        store = None


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f}ms")
    return response


# Error responses
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors in the same envelope as successful responses."""
    detail = exc.detail
    # Raised by the router itself for paths no endpoint matches
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Route not found"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server Error"})


# Helper functions
def get_store() -> TelemetryStore:
    if store is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return store


def resolve_kind(resource: str) -> RecordKind:
    kind = RESOURCES.get(resource)
    if kind is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return kind


# API Endpoints
@app.get("/")
async def root():
    return {"message": API_TITLE, "version": API_VERSION}


@app.get("/health")
async def health_check():
    """Health check endpoint for container healthchecks."""
    if not await get_store().test_connection():
        raise HTTPException(status_code=503, detail="Database connection failed")
    return {"status": "healthy"}


@app.get("/api/analyzer-data/latest-kw", response_model=AverageKWResponse)
async def average_kw():
    """
    Average kw of the latest analyzer reading of every known device.

    Devices that never reported analyzer data are not part of the average.
    """
    try:
        value = await get_average_kw(get_store())
    except SQLAlchemyError as e:
        logger.error(f"Failed to compute average kw: {e}")
        raise HTTPException(status_code=500, detail="Server Error")

    if value is None:
        raise HTTPException(status_code=404, detail="No data found")
    return {"success": True, "data": {"average_kw": value}}


@app.post("/api/device-status", response_model=DeviceStatusResponse)
async def device_status(request: Request):
    """
    Count devices matching a digital input state vector, channel by channel.

    The vector is read from the request body (state1=1&state2=0...), falling
    back to the query string. Unspecified channels target 0.
    """
    body = (await request.body()).decode("utf-8", errors="replace").strip()
    state_vector = body or request.url.query

    try:
        counts = await get_devices_status(get_store(), state_vector)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"Failed to compute device status: {e}")
        raise HTTPException(status_code=500, detail="Server Error")

    return {"success": True, "data": counts}


@app.get("/api/{resource}", response_model=RowsResponse)
async def list_rows(resource: str):
    """All rows of a record kind, newest first."""
    kind = resolve_kind(resource)
    try:
        rows = await get_store().get_all(kind)
    except SQLAlchemyError as e:
        logger.error(f"Failed to get {kind.value}: {e}")
        raise HTTPException(status_code=500, detail="Server Error")
    return {"success": True, "count": len(rows), "data": rows}


@app.get("/api/{resource}/latest", response_model=RowResponse)
async def latest_row(resource: str, device_id: Optional[str] = None):
    """Newest row of a record kind, optionally for a single device."""
    kind = resolve_kind(resource)
    try:
        row = await get_store().get_latest(kind, device_id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to get latest {kind.value}: {e}")
        raise HTTPException(status_code=500, detail="Server Error")

    if row is None:
        raise HTTPException(status_code=404, detail="No data found")
    return {"success": True, "data": row}


@app.get("/api/{resource}/latest-per-device", response_model=RowsResponse)
async def latest_rows_per_device(resource: str):
    """Newest row of a record kind for every device."""
    kind = resolve_kind(resource)
    try:
        rows = await get_latest_per_device(get_store(), kind)
    except SQLAlchemyError as e:
        logger.error(f"Failed to get latest {kind.value} per device: {e}")
        raise HTTPException(status_code=500, detail="Server Error")
    return {"success": True, "count": len(rows), "data": rows}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
