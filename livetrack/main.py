"""
LiveTrack Service - Main Application
Accepts GPS fixes from buses and drivers, serves live locations and ETAs
"""

from fastapi import Body, Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from .auth import AuthContext, USER_ADMIN, USER_DRIVER, verify_token
from .config import Settings, settings as default_settings
from .errors import AuthorizationError, LiveTrackError, NotFoundError, ValidationError
from .eta import EtaPredictor, HistoricalSpeedProvider, TrafficProfile
from .geo import is_valid_coordinate
from .history_store import HistoryStore, create_history_store
from .history_writer import HistoryWriter
from .ingest import GpsIngestPipeline, IngestContext
from .location_cache import LocationCache, create_location_cache
from .models import BusInfo, HealthStatus
from .realtime import RealtimeGateway
from .registry import BusRegistry, create_bus_registry
from .rooms import RoomBroadcaster, RoomRegistry
from .tracking import TrackingService

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def ok(data: Any = None, **extra) -> Dict[str, Any]:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info(f"Starting {app.state.settings.SERVICE_NAME} service...")
    app.state.history_writer.start()

    yield

    # Shutdown
    logger.info(f"Shutting down {app.state.settings.SERVICE_NAME} service...")
    await app.state.pipeline.flush_broadcasts()
    await app.state.history_writer.stop()
    await app.state.cache.close()


def create_app(
    settings: Optional[Settings] = None,
    cache: Optional[LocationCache] = None,
    registry: Optional[BusRegistry] = None,
    history_store: Optional[HistoryStore] = None
) -> FastAPI:
    """Build the app; backends default to what settings select"""
    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL)

    app = FastAPI(
        title="LiveTrack Service",
        description="Live bus location tracking service",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state = app.state
    state.settings = settings
    state.cache = cache or create_location_cache(settings)
    state.registry = registry or create_bus_registry(settings)
    state.history_store = history_store or create_history_store(settings)
    state.history_writer = HistoryWriter(
        state.history_store,
        max_queue_size=settings.HISTORY_QUEUE_SIZE,
        batch_size=settings.HISTORY_BATCH_SIZE
    )
    state.rooms = RoomRegistry()
    state.broadcaster = RoomBroadcaster(
        state.rooms,
        send_timeout=settings.BROADCAST_TIMEOUT_SECONDS,
        max_message_bytes=settings.MAX_MESSAGE_BYTES
    )
    state.pipeline = GpsIngestPipeline(
        state.cache,
        state.history_writer,
        state.broadcaster,
        offline_threshold_seconds=settings.OFFLINE_THRESHOLD_SECONDS,
        min_interval_seconds=settings.INGEST_MIN_INTERVAL_SECONDS,
        reject_out_of_order=settings.REJECT_OUT_OF_ORDER_FIXES,
        low_accuracy_warn_meters=settings.LOW_ACCURACY_WARN_METERS
    )
    state.tracking = TrackingService(
        state.cache,
        state.registry,
        state.history_store,
        offline_threshold_seconds=settings.OFFLINE_THRESHOLD_SECONDS
    )
    state.eta = EtaPredictor(
        TrafficProfile(settings.HOUR_FACTORS, settings.DAY_FACTORS, settings.TIMEZONE),
        offline_threshold_seconds=settings.OFFLINE_THRESHOLD_SECONDS,
        speed_provider=HistoricalSpeedProvider(state.history_store),
        default_speed_kmh=settings.DEFAULT_CRUISING_SPEED_KMH,
        min_speed_kmh=settings.MIN_SPEED_KMH,
        min_eta_seconds=settings.MIN_ETA_SECONDS,
        road_factor=settings.ROAD_FACTOR
    )
    state.gateway = RealtimeGateway(
        state.rooms,
        state.broadcaster,
        state.tracking,
        jwt_secret=settings.JWT_SECRET,
        jwt_algorithm=settings.JWT_ALGORITHM,
        join_min_interval_seconds=settings.JOIN_MIN_INTERVAL_SECONDS,
        max_message_bytes=settings.MAX_MESSAGE_BYTES
    )

    register_routes(app)
    register_error_handlers(app)
    return app


# Auth dependencies

def current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)
) -> AuthContext:
    s = request.app.state.settings
    return verify_token(creds.credentials if creds else None, s.JWT_SECRET, s.JWT_ALGORITHM)


def require_admin(user: AuthContext = Depends(current_user)) -> AuthContext:
    if user.user_type != USER_ADMIN:
        raise AuthorizationError("Admin access required", status_code=403)
    if not user.organization_id:
        raise AuthorizationError("Organization ID not found in token", status_code=403)
    return user


def require_driver(user: AuthContext = Depends(current_user)) -> AuthContext:
    if user.user_type != USER_DRIVER:
        raise AuthorizationError("Driver access required", status_code=403)
    return user


async def driver_bus(request: Request, user: AuthContext = Depends(require_driver)) -> BusInfo:
    """The bus assigned to the calling driver"""
    registry = request.app.state.registry
    bus = await registry.get_bus(user.bus_id) if user.bus_id else None
    if bus is None:
        bus = await registry.get_bus_for_driver(user.sub)
    if bus is None or not bus.is_active:
        raise NotFoundError("No bus assigned to this driver")
    return bus


async def device_bus(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)
) -> BusInfo:
    """Authenticate hardware by API key, or by its registered GPS device id"""
    registry = request.app.state.registry
    if creds and creds.credentials:
        bus = await registry.find_by_api_key(creds.credentials)
        if bus is None:
            raise AuthorizationError("Invalid API key")
        return bus

    payload = await request.json()
    device_id = payload.get("gpsDeviceId") if isinstance(payload, dict) else None
    if device_id:
        bus = await registry.find_by_device_id(str(device_id))
        if bus is None:
            raise AuthorizationError("Unknown GPS device")
        return bus
    raise AuthorizationError("API key required")


def register_routes(app: FastAPI) -> None:

    @app.get("/", response_model=dict)
    async def root(request: Request):
        """Root endpoint"""
        return {
            "service": request.app.state.settings.SERVICE_NAME,
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health", response_model=HealthStatus)
    async def health_check(request: Request):
        """Health check endpoint"""
        state = request.app.state
        health = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        health["components"]["history_writer"] = (
            "healthy" if state.history_writer.is_healthy() else "degraded"
        )
        for name, component in (("location_cache", state.cache), ("history_store", state.history_store)):
            try:
                healthy = await component.health_check()
            except Exception as e:
                logger.error(f"Health check failed for {name}: {str(e)}")
                healthy = False
            health["components"][name] = "healthy" if healthy else "unhealthy"

        if "unhealthy" in health["components"].values():
            health["status"] = "unhealthy"
            return JSONResponse(content=health, status_code=503)
        return HealthStatus(**health)

    @app.get("/metrics")
    async def metrics(request: Request):
        """Pipeline counters"""
        state = request.app.state
        writer = state.history_writer
        return {
            "fixes_accepted": state.pipeline.fixes_accepted,
            "fixes_rejected": state.pipeline.fixes_rejected,
            "history_records_written": writer.records_processed,
            "history_errors": writer.error_count,
            "history_dropped": writer.dropped_count,
            "history_queue_depth": writer.queue.qsize(),
            "history_lag_ms": writer.get_lag_ms(),
            "messages_sent": state.broadcaster.messages_sent,
            "send_failures": state.broadcaster.send_failures,
            "connections": state.rooms.stats(),
        }

    # Ingest

    @app.post("/gps/update")
    async def gps_update(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        bus: BusInfo = Depends(device_bus)
    ):
        """Location update from a bus-mounted GPS device"""
        if not bus.is_active:
            raise ValidationError("Bus is not active")
        result = await request.app.state.pipeline.ingest(payload, IngestContext(bus))
        return ok(dump(result), message="Location updated")

    @app.get("/gps/status")
    async def gps_status():
        return ok(
            message="GPS endpoint operational",
            timestamp=datetime.now(timezone.utc).isoformat()
        )

    @app.post("/driver/location")
    async def driver_location(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        user: AuthContext = Depends(require_driver),
        bus: BusInfo = Depends(driver_bus)
    ):
        """Location update from the driver app"""
        ctx = IngestContext(bus, driver_id=user.sub)
        result = await request.app.state.pipeline.ingest(payload, ctx)
        return ok(dump(result), message="Location updated")

    @app.post("/driver/stop-tracking")
    async def driver_stop_tracking(request: Request, bus: BusInfo = Depends(driver_bus)):
        record = await request.app.state.pipeline.stop_tracking(bus.bus_id)
        return ok(
            record.to_payload() if record else None,
            message="Location tracking stopped"
        )

    @app.get("/driver/history")
    async def driver_history(
        request: Request,
        limit: int = 10,
        user: AuthContext = Depends(require_driver)
    ):
        entries = await request.app.state.tracking.get_driver_history(user.sub, limit)
        return ok([dump(e) for e in entries], count=len(entries))

    # Read path

    @app.get("/buses/{bus_id}/location")
    async def bus_location(request: Request, bus_id: str):
        """Current location of a bus (public)"""
        return ok(await request.app.state.tracking.get_current_location(bus_id))

    @app.get("/buses/{bus_id}/history")
    async def bus_history(request: Request, bus_id: str, limit: int = 10):
        entries = await request.app.state.tracking.get_bus_history(bus_id, limit)
        return ok([dump(e) for e in entries], count=len(entries))

    @app.get("/public/all-locations")
    async def public_all_locations(request: Request):
        locations = await request.app.state.tracking.get_all_locations()
        return ok(locations, count=len(locations))

    @app.get("/public/bus/{bus_number}")
    async def public_bus(request: Request, bus_number: str):
        return ok(await request.app.state.tracking.get_bus_by_number(bus_number))

    @app.get("/admin/locations")
    async def admin_locations(request: Request, user: AuthContext = Depends(require_admin)):
        locations = await request.app.state.tracking.get_all_locations(user.organization_id)
        return ok(locations, count=len(locations))

    @app.get("/admin/locations/{bus_id}")
    async def admin_location(request: Request, bus_id: str, user: AuthContext = Depends(require_admin)):
        tracking = request.app.state.tracking
        return ok(await tracking.get_current_location(bus_id, organization_id=user.organization_id))

    @app.get("/admin/dashboard")
    async def admin_dashboard(request: Request, user: AuthContext = Depends(require_admin)):
        return ok(await request.app.state.tracking.dashboard_stats(user.organization_id))

    @app.get("/admin/buses")
    async def admin_buses(request: Request, user: AuthContext = Depends(require_admin)):
        buses = await request.app.state.tracking.bus_status_list(user.organization_id)
        return ok(buses, count=len(buses))

    # ETA

    @app.get("/eta/{bus_id}")
    async def eta_to_destination(
        request: Request,
        bus_id: str,
        dest_lat: float = Query(..., alias="destLat"),
        dest_lon: float = Query(..., alias="destLon")
    ):
        """ETA from a bus to an arbitrary destination"""
        if not is_valid_coordinate(dest_lat, dest_lon):
            raise ValidationError(f"Invalid destination: ({dest_lat}, {dest_lon})")
        state = request.app.state
        record = await state.cache.get_bus_location(bus_id)
        if record is None and await state.registry.get_bus(bus_id) is None:
            raise NotFoundError("Bus not found")

        result = await state.eta.predict_eta(record, dest_lat, dest_lon)
        return ok({"busId": bus_id, **dump(result)})

    @app.get("/eta/{bus_id}/stops")
    async def eta_to_stops(request: Request, bus_id: str):
        """ETA to every stop on the bus's route"""
        state = request.app.state
        bus = await state.registry.get_bus(bus_id)
        if bus is None:
            raise NotFoundError("Bus not found")
        record = await state.cache.get_bus_location(bus_id)
        results = await state.eta.predict_route_etas(record, bus.stops)
        return ok({
            "busId": bus.bus_id,
            "busNumber": bus.bus_number,
            "stops": [dump(r) for r in results],
        })

    @app.get("/traffic-forecast")
    async def traffic_forecast(request: Request, hours: int = Query(6, ge=1, le=24)):
        return ok([dump(entry) for entry in request.app.state.eta.traffic_forecast(hours)])

    # Realtime

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.app.state.gateway.serve(websocket)


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(LiveTrackError)
    async def livetrack_exception_handler(request, exc: LiveTrackError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message}
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": message}
        )

    # Error handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"}
        )


app = create_app()
