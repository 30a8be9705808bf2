import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .breaks import BreakScheduler
from .bus import NotificationBus
from .config import Settings, configure_logging, get_settings
from .db import create_db_engine, init_db
from .dispatch import DispatchEngine
from .errors import DispatchError
from .fleet import FleetRegistry
from .geo import build_estimator
from .inventory import InventoryMonitor, parse_supply_usage
from .ledger import RequestLedger
from .models import Ambulance, Hospital, InventoryItem, Notification
from .schemas import (
    AmbulanceRegister,
    AssignmentResult,
    BreakGrant,
    BreakRequest,
    CareRecordCreate,
    CareRecordResult,
    ClosestAmbulance,
    HospitalCreate,
    LocationUpdate,
    PendingTransport,
    StatusUpdate,
    StockLevel,
    TransportRequestCreate,
)

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    engine = create_db_engine(settings.database_url)
    bus = NotificationBus()
    ledger = RequestLedger(engine)
    fleet = FleetRegistry(engine, ledger, bus)
    inventory = InventoryMonitor(engine, bus)
    breaks = BreakScheduler(
        engine,
        bus,
        break_duration=timedelta(hours=settings.break_duration_hours),
        min_shift=timedelta(hours=settings.min_shift_hours_for_break),
    )
    dispatch = DispatchEngine(
        fleet, ledger, build_estimator(settings), bus, max_attempts=settings.assignment_attempts
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        init_db(engine)
        breaks.resume_pending()
        logger.info("Dispatch service ready (estimator=%s)", settings.travel_estimator)
        yield
        await breaks.shutdown()
        await bus.drain()

    app = FastAPI(title="Unified EMS dispatch", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.bus = bus
    app.state.ledger = ledger
    app.state.fleet = fleet
    app.state.inventory = inventory
    app.state.breaks = breaks
    app.state.dispatch = dispatch

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal error"})

    @app.get("/")
    def root():
        return {"service": "unified-ems", "status": "ok"}

    # hospitals

    @app.post("/api/hospitals", response_model=Hospital)
    def register_hospital(payload: HospitalCreate):
        return ledger.register_hospital(payload)

    @app.get("/api/hospitals", response_model=List[Hospital])
    def list_hospitals():
        return ledger.list_hospitals()

    # ambulances

    @app.post("/api/ambulances", response_model=Ambulance)
    def register_ambulance(payload: AmbulanceRegister):
        return fleet.register(payload)

    @app.get("/api/ambulances", response_model=List[Ambulance])
    def list_ambulances():
        return fleet.list_ambulances()

    @app.post("/api/ambulances/location", response_model=Ambulance)
    async def update_location(payload: LocationUpdate):
        ambulance, _ = fleet.update_location(payload)
        return ambulance

    @app.post("/api/ambulances/status", response_model=Ambulance)
    async def update_status(payload: StatusUpdate):
        return fleet.update_status(payload.ambulance_id, payload.status)

    @app.get("/api/ambulances/{ambulance_id}/inventory", response_model=List[InventoryItem])
    def get_inventory(ambulance_id: int):
        fleet.get(ambulance_id)
        return inventory.stock_for(ambulance_id)

    @app.put("/api/ambulances/{ambulance_id}/inventory", response_model=InventoryItem)
    def set_inventory(ambulance_id: int, payload: StockLevel):
        return inventory.set_stock(ambulance_id, payload)

    # dispatch

    @app.post("/api/transport-requests", response_model=AssignmentResult)
    async def create_transport_request(payload: TransportRequestCreate):
        return await dispatch.submit(payload)

    @app.post("/api/transport-requests/{request_id}/assign", response_model=AssignmentResult)
    async def retry_assignment(request_id: int):
        return await dispatch.assign(request_id)

    @app.get("/api/closest-ambulances", response_model=Dict[str, Optional[ClosestAmbulance]])
    def closest_ambulances(hospital_id: int):
        hospital = ledger.get_hospital(hospital_id)
        return fleet.closest_by_tier(hospital.latitude, hospital.longitude, settings.dashboard_speed_kmh)

    @app.get("/api/pending-transports", response_model=List[PendingTransport])
    def pending_transports(hospital_id: int):
        return ledger.pending_for_hospital(hospital_id)

    # breaks

    @app.post("/api/breaks", response_model=BreakGrant)
    async def request_break(payload: BreakRequest):
        ambulance = breaks.request_break(payload.ambulance_id)
        hours = breaks.break_duration.total_seconds() / 3600
        return BreakGrant(
            ambulance_id=ambulance.id,
            break_ends_at=ambulance.break_ends_at,
            message=f"Break granted. Status will revert to available in {hours:g} hours.",
        )

    # patient care records

    @app.post("/api/pcrs", response_model=CareRecordResult)
    async def submit_pcr(payload: CareRecordCreate):
        usage = parse_supply_usage(payload.supply_usage)
        record = ledger.save_care_record(payload, usage)
        request = ledger.get(payload.transport_request_id)
        notifications = inventory.consume(request.ambulance_id, usage)
        return CareRecordResult(record=record, notifications=notifications)

    # notifications

    @app.get("/api/notifications", response_model=List[Notification])
    def unread_notifications():
        return inventory.unread()

    @app.post("/api/notifications/{notification_id}/read", response_model=Notification)
    def mark_notification_read(notification_id: int):
        return inventory.mark_read(notification_id)

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await bus.connect(ws)
        try:
            while True:
                text = await ws.receive_text()
                try:
                    data = json.loads(text)
                    typ = data.get("type")
                    if typ == "locationUpdate":
                        fleet.update_location(LocationUpdate.model_validate(data.get("data") or {}))
                    elif typ == "statusUpdate":
                        update = StatusUpdate.model_validate(data.get("data") or {})
                        fleet.update_status(update.ambulance_id, update.status)
                    else:
                        await ws.send_text(json.dumps({"type": "error", "error": "unknown_message", "detail": typ}))
                except (ValueError, AttributeError, DispatchError) as e:
                    error = e.to_dict() if isinstance(e, DispatchError) else {"error": "invalid_message", "detail": str(e)}
                    await ws.send_text(json.dumps({"type": "error", **error}, default=str))
        except WebSocketDisconnect:
            bus.disconnect(ws)
        except Exception:
            logger.exception("Websocket connection failed")
            bus.disconnect(ws)

    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run("ems.main:app", host="0.0.0.0", port=8000)
