"""FastAPI REST interface for OBIS smart meter active power acquisition.

Single-process, single-meter lifecycle with thread-safe access to:
- MeterController (validation, polling loop, sensors, histories)

Error mapping:
- InvalidOptionValue → 400
- TransportOpenError → 503
- ValidationFailed → 504
- Other exceptions → 500
"""

import logging
import os
import threading
from pathlib import Path
from threading import RLock
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from obis_power_lib import __version__ as LIB_VERSION
from obis_power_lib import protocol
from obis_power_lib.controller import MeterController
from obis_power_lib.errors import InvalidOptionValue, TransportOpenError, ValidationFailed
from obis_power_lib.models import PlatformConfig
from obis_power_lib.parsing import render_registers
from obis_power_lib.reader import ReaderFactory

# =============================================================================
# Environment Configuration
# =============================================================================


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


# Read configuration from environment variables
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
DEFAULT_SERIAL_PORT = os.getenv("SERIAL_PORT", "/dev/ttyUSB0")
DEFAULT_SERIAL_BAUD = _env_optional_int("SERIAL_BAUD")
DEFAULT_PROTOCOL = os.getenv("OBIS_PROTOCOL", protocol.PROTOCOL_SML)
DEFAULT_TRANSPORT = os.getenv("OBIS_TRANSPORT", protocol.TRANSPORT_SERIAL_RESPONSE)
DEFAULT_LOCAL_FILE = os.getenv("OBIS_LOCAL_FILE", "")
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", str(protocol.POLL_INTERVAL_S)))
HISTORY_PATH = os.getenv("HISTORY_PATH", "history")
HISTORY_MINUTES = float(os.getenv("HISTORY_MINUTES", "10"))
AUTOSTART = _env_bool("AUTOSTART")
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

API_VERSION = "0.1.0"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_controller: Optional[MeterController] = None
_reader_factory: Optional[ReaderFactory] = None  # None uses the real reader
_lock = RLock()  # Protects start/stop

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="OBIS Power Meter API",
    description="REST interface for SML and D0 smart meters",
    version=API_VERSION
)

# CORS for local development (configurable via CORS_ORIGINS env var)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response

# =============================================================================
# Response Models
# =============================================================================


class StatusResponse(BaseModel):
    """Response for GET /status."""
    running: bool
    validation: str
    loop_state: str
    error: Optional[str]
    product_name: Optional[str]
    serial: Optional[str]
    ticks: int
    failed_ticks: int
    last_error: Optional[str]
    debug: int


class DeviceResponse(BaseModel):
    """Response for GET /device."""
    product_name: str
    product_type: str
    serial: str
    firmware_version: str
    api_version: str


class PowerResponse(BaseModel):
    """Response for GET /power/latest."""
    value_w: Optional[float]
    source: Optional[str]
    timestamp: Optional[str]


class StartResponse(BaseModel):
    """Response for POST /start."""
    status: str
    product_name: str
    serial: str
    sensors: List[str]


class SensorResponse(BaseModel):
    """One entry of GET /sensors."""
    key: str
    name: str
    kind: str
    value: float
    raw: Optional[float]
    unit: str
    manufacturer: str
    model: str
    serial_number: str
    updated_at: Optional[str]


class HistoryStatsResponse(BaseModel):
    """Response for GET /history/{name}/stats."""
    name: str
    row_count: int
    start_time: Optional[str]
    end_time: Optional[str]
    duration_s: Optional[float]


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(InvalidOptionValue)
async def invalid_option_handler(request, exc: InvalidOptionValue):
    """Map InvalidOptionValue to 400 Bad Request."""
    logger.error(f"InvalidOptionValue: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(TransportOpenError)
async def transport_open_handler(request, exc: TransportOpenError):
    """Map TransportOpenError to 503 Service Unavailable."""
    logger.error(f"TransportOpenError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request, exc: ValidationFailed):
    """Map ValidationFailed to 504 Gateway Timeout."""
    logger.error(f"ValidationFailed: {exc}")
    return JSONResponse(status_code=504, content={"detail": str(exc)})


# =============================================================================
# Helpers
# =============================================================================

def build_config(
    port: Optional[str] = None,
    protocol_name: Optional[str] = None,
    transport: Optional[str] = None,
    baud: Optional[int] = None,
    local_file: Optional[str] = None,
    poll_interval_s: Optional[float] = None,
) -> PlatformConfig:
    """Platform config from environment defaults, overridden by request values."""
    return PlatformConfig(
        serial_port=DEFAULT_SERIAL_PORT if port is None else port,
        protocol=protocol_name or DEFAULT_PROTOCOL,
        transport=transport or DEFAULT_TRANSPORT,
        baudrate=baud or DEFAULT_SERIAL_BAUD,
        local_file_path=DEFAULT_LOCAL_FILE if local_file is None else local_file,
        poll_interval_s=poll_interval_s or POLL_INTERVAL,
        history_path=HISTORY_PATH,
        history_minutes=HISTORY_MINUTES,
    )


def _is_running() -> bool:
    return _controller is not None and _controller.is_polling()


def _start_controller(config: PlatformConfig) -> MeterController:
    """Validate the meter and start polling. Caller holds _lock.

    Raises:
        InvalidOptionValue: Bad configuration
        TransportOpenError: Meter port cannot be opened
        ValidationFailed: Meter did not deliver data in time
    """
    global _controller

    if not config.validate():
        raise InvalidOptionValue("Configuration error. Please provide your power meter serial_port")
    config.to_options()  # Raises InvalidOptionValue for unsupported values

    controller = MeterController(config, reader_factory=_reader_factory)
    if not controller.initialize():
        error = controller.config_error or controller.validation.error
        if isinstance(error, (InvalidOptionValue, TransportOpenError)):
            raise error
        raise ValidationFailed(f"Meter validation failed: {error}")

    _controller = controller
    return controller


def _history_or_404(name: str):
    stores = _controller.histories if _controller else {}
    if name not in stores:
        raise HTTPException(status_code=404, detail=f"Unknown history '{name}'")
    return stores[name]


# =============================================================================
# Read-Only Endpoints (Low Latency)
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current controller status.

    Returns validation state, loop state, identity and tick counters.
    """
    if _controller is None:
        return StatusResponse(
            running=False,
            validation="idle",
            loop_state="stopped",
            error=None,
            product_name=None,
            serial=None,
            ticks=0,
            failed_ticks=0,
            last_error=None,
            debug=0,
        )

    status = _controller.status()
    loop_status = status["loop"] or {}
    identity = _controller.identity

    return StatusResponse(
        running=_is_running(),
        validation=status["validation"],
        loop_state=loop_status.get("state", "stopped"),
        error=status["error"],
        product_name=identity.product_name if identity else None,
        serial=identity.serial if identity else None,
        ticks=loop_status.get("ticks", 0),
        failed_ticks=loop_status.get("failed_ticks", 0),
        last_error=loop_status.get("last_error"),
        debug=status["debug"],
    )


@app.get("/device", response_model=DeviceResponse)
async def get_device():
    """Get the identity captured during validation.

    Raises:
        404: If no meter has been validated yet
    """
    identity = _controller.identity if _controller else None
    if identity is None:
        raise HTTPException(status_code=404, detail="No validated meter")

    return DeviceResponse(
        product_name=identity.product_name,
        product_type=identity.product_type,
        serial=identity.serial,
        firmware_version=identity.firmware_version,
        api_version=identity.api_version,
    )


@app.get("/power/latest", response_model=PowerResponse)
async def get_latest_power():
    """Get the most recently published active power (W, negative means export).

    All fields are null until the first successful tick.
    """
    loop = _controller.loop if _controller else None
    power = loop.latest_power if loop else None
    if power is None:
        return PowerResponse(value_w=None, source=None, timestamp=None)

    latest_at = loop.latest_at
    return PowerResponse(
        value_w=power.value,
        source=power.source.value,
        timestamp=latest_at.isoformat() if latest_at else None,
    )


@app.get("/registers/latest")
async def get_latest_registers():
    """Get the string rendering of every register from the last successful read.

    Returns:
        {"registers": {obis_id: rendering}} or {"registers": {}} if no data
    """
    loop = _controller.loop if _controller else None
    registers = loop.latest_registers if loop else None
    return {"registers": render_registers(registers) if registers else {}}


@app.get("/sensors", response_model=List[SensorResponse])
async def get_sensors():
    """Get the display state of every exposed sensor."""
    if _controller is None:
        return []

    sensors: List[SensorResponse] = []
    for key, sensor in sorted(_controller.sensors.items()):
        sensors.append(SensorResponse(key=key, **sensor.snapshot()))
    return sensors


@app.get("/history/{name}/recent")
async def get_history_recent(name: str, seconds: int = Query(3600, ge=1, le=86400)):
    """Get history samples from the last N seconds (capped at one day).

    Returns:
        {"rows": [...]} with list of sample dicts
    """
    store = _history_or_404(name)
    recent_df = store.get_recent(seconds=seconds)
    return {"rows": recent_df.to_dict(orient="records")}


@app.get("/history/{name}/stats", response_model=HistoryStatsResponse)
async def get_history_stats(name: str):
    """Get row count and time range of one history."""
    store = _history_or_404(name)
    stats = store.get_stats()

    return HistoryStatsResponse(
        name=name,
        row_count=stats["row_count"],
        start_time=stats["start_time"],
        end_time=stats["end_time"],
        duration_s=stats["duration_s"],
    )


@app.get("/history/{name}/export/csv")
async def export_history_csv(name: str):
    """Write one history to its CSV file and download it.

    Raises:
        400: If the history holds no data
        404: If the history does not exist
    """
    store = _history_or_404(name)
    if len(store) == 0:
        raise HTTPException(status_code=400, detail="No data to export")

    logger.info(f"Exporting history {name} to CSV...")
    csv_path = store.export_csv()

    if not csv_path or not Path(csv_path).exists():
        raise HTTPException(status_code=500, detail="Failed to export CSV")

    return FileResponse(
        path=csv_path,
        media_type="text/csv",
        filename=Path(csv_path).name
    )


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@app.post("/start", response_model=StartResponse)
def start(
    port: Optional[str] = Query(None, description="Serial port (e.g., /dev/ttyUSB0)"),
    protocol_name: Optional[str] = Query(None, alias="protocol", description="SmlProtocol or D0Protocol"),
    transport: Optional[str] = Query(None, description="Transport selector"),
    baud: Optional[int] = Query(None, description="Baud rate (protocol default if omitted)"),
    local_file: Optional[str] = Query(None, description="Frame file for LocalFileTransport"),
    poll_interval_s: Optional[float] = Query(None, gt=0, description="Seconds between polls"),
):
    """Validate the meter and start polling.

    Blocks for the validation read (up to the validation timeout), so it runs
    in the worker threadpool rather than on the event loop.

    Raises:
        400: Already running or invalid configuration
        503: Meter port cannot be opened
        504: Meter delivered no data during validation
    """
    logger.info(f"[START] Request: port={port}, protocol={protocol_name}, transport={transport}")

    with _lock:
        if _is_running():
            logger.error("[START] FAILED: Polling already running")
            raise HTTPException(status_code=400, detail="Polling already running")

        config = build_config(port, protocol_name, transport, baud, local_file, poll_interval_s)
        controller = _start_controller(config)

        identity = controller.identity
        assert identity is not None
        logger.info(f"[START] SUCCESS: meter {identity.product_name} serial {identity.serial}")
        return StartResponse(
            status="started",
            product_name=identity.product_name,
            serial=identity.serial,
            sensors=sorted(controller.sensors),
        )


@app.post("/stop")
def stop():
    """Stop polling and flush histories. Idempotent.

    Returns:
        {"status": "stopped", "was_running": bool}
    """
    with _lock:
        was_running = _is_running()
        if _controller is not None:
            _controller.shutdown()

    logger.info(f"[STOP] Polling stopped (was_running={was_running})")
    return {"status": "stopped", "was_running": was_running}


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
async def root():
    """Service info."""
    return {
        "service": "OBIS Power Meter API",
        "version": API_VERSION,
        "library": LIB_VERSION,
        "status": "online"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "OBIS Power Meter API",
        "version": API_VERSION,
        "status": "online",
        "running": _is_running(),
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

def _autostart() -> None:
    try:
        with _lock:
            if not _is_running():
                _start_controller(build_config())
    except Exception as e:
        logger.error(f"Autostart failed: {e}")


@app.on_event("startup")
async def startup_event():
    """Log configuration and optionally start polling in the background."""
    logger.info("=" * 60)
    logger.info("OBIS Power Meter API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Serial Port: {DEFAULT_SERIAL_PORT}")
    logger.info(f"Protocol: {DEFAULT_PROTOCOL} via {DEFAULT_TRANSPORT}")
    logger.info(f"Poll Interval: {POLL_INTERVAL}s")
    logger.info(f"History Path: {HISTORY_PATH} (flush every {HISTORY_MINUTES} min)")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)

    if AUTOSTART:
        # Validation can take minutes; don't hold up the server
        threading.Thread(target=_autostart, name="Autostart", daemon=True).start()


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown."""
    logger.info("Shutting down OBIS Power Meter API...")

    if _controller is not None:
        try:
            _controller.shutdown()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=API_HOST, port=API_PORT)
