import logging
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from .bus import NotificationBus
from .errors import AmbulanceNotFound
from .geo import haversine_km, linear_eta_minutes
from .ledger import RequestLedger, open_request_clause
from .models import CALL_TYPES, Ambulance, AmbulanceStatus, TransportRequest, utcnow
from .schemas import AmbulanceRegister, ClosestAmbulance, LocationUpdate

logger = logging.getLogger(__name__)


class FleetRegistry:
    """Ambulance records and the ambulance status state machine."""

    def __init__(self, engine: Engine, ledger: RequestLedger, bus: NotificationBus, clock: Callable = utcnow):
        self.engine = engine
        self.ledger = ledger
        self.bus = bus
        self.clock = clock

    def register(self, payload: AmbulanceRegister) -> Ambulance:
        now = self.clock()
        with Session(self.engine) as session:
            ambulance = session.exec(select(Ambulance).where(Ambulance.name == payload.name)).first()
            if ambulance is None:
                ambulance = Ambulance(name=payload.name)
            ambulance.designation_level = payload.designation_level
            ambulance.shift_length_hours = payload.shift_length_hours
            ambulance.shift_start = payload.shift_start or now
            ambulance.latitude = payload.latitude
            ambulance.longitude = payload.longitude
            ambulance.last_updated = now
            session.add(ambulance)
            session.commit()
            session.refresh(ambulance)
        logger.info("Ambulance %s registered (tier %s)", ambulance.name, ambulance.designation_level)
        return ambulance

    def get(self, ambulance_id: int) -> Ambulance:
        with Session(self.engine) as session:
            ambulance = session.get(Ambulance, ambulance_id)
            if not ambulance:
                raise AmbulanceNotFound(f"Ambulance {ambulance_id} not found", ambulance_id=ambulance_id)
            return ambulance

    def list_ambulances(self) -> List[Ambulance]:
        with Session(self.engine) as session:
            return list(session.exec(select(Ambulance)).all())

    def update_location(self, update: LocationUpdate) -> Tuple[Ambulance, bool]:
        """Move an ambulance, creating it on its first report. Returns (ambulance, created)."""
        with Session(self.engine) as session:
            ambulance = session.exec(select(Ambulance).where(Ambulance.name == update.name)).first()
            created = ambulance is None
            if created:
                ambulance = Ambulance(name=update.name)
            ambulance.latitude = update.latitude
            ambulance.longitude = update.longitude
            ambulance.last_updated = self.clock()
            session.add(ambulance)
            session.commit()
            session.refresh(ambulance)

        if created:
            logger.info("Ambulance %s added with location: %s, %s", update.name, update.latitude, update.longitude)
        else:
            logger.debug("Location updated for %s: %s, %s", update.name, update.latitude, update.longitude)
        self.bus.emit(
            "locationUpdate", {"name": update.name, "latitude": update.latitude, "longitude": update.longitude}
        )
        return ambulance, created

    def update_status(self, ambulance_id: int, status) -> Ambulance:
        new_status = AmbulanceStatus.parse(status)
        with Session(self.engine) as session:
            ambulance = session.get(Ambulance, ambulance_id)
            if not ambulance:
                raise AmbulanceNotFound(f"Ambulance {ambulance_id} not found", ambulance_id=ambulance_id)

            ambulance.status = new_status.value
            if new_status != AmbulanceStatus.AVAILABLE:
                ambulance.on_break = False
            if new_status == AmbulanceStatus.COMPLETED:
                ambulance.last_call_end = self.clock()
            session.add(ambulance)
            self.ledger.advance_for_ambulance(session, ambulance_id, new_status)
            session.commit()
            session.refresh(ambulance)

        logger.info("Status updated for ambulance %s: %s", ambulance_id, new_status.value)
        self.bus.emit("statusUpdate", {"ambulanceId": ambulance_id, "status": new_status.value})
        return ambulance

    def available(self) -> List[Ambulance]:
        """Ambulances free to take a call: available, not resting, no open request."""
        busy = select(TransportRequest.ambulance_id).where(
            col(TransportRequest.ambulance_id).is_not(None), open_request_clause()
        )
        stmt = select(Ambulance).where(
            Ambulance.status == AmbulanceStatus.AVAILABLE.value,
            col(Ambulance.on_break).is_(False),
            col(Ambulance.id).not_in(busy),
        )
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def closest_by_tier(
        self, latitude: float, longitude: float, speed_kmh: float = 50.0
    ) -> Dict[str, Optional[ClosestAmbulance]]:
        hospital = (latitude, longitude)
        ambulances = self.available()
        closest: Dict[str, Optional[ClosestAmbulance]] = {}
        for call_type, tier in CALL_TYPES.items():
            candidates = [a for a in ambulances if a.designation_level == tier]
            if not candidates:
                closest[call_type] = None
                continue
            distance, nearest = min(
                ((haversine_km(hospital, (a.latitude, a.longitude)), a) for a in candidates),
                key=lambda pair: pair[0],
            )
            closest[call_type] = ClosestAmbulance(
                name=nearest.name, eta_minutes=linear_eta_minutes(distance, speed_kmh)
            )
        return closest
