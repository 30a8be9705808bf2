import logging
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from .errors import HospitalNotFound, RequestNotFound
from .models import (
    Ambulance,
    AmbulanceStatus,
    Hospital,
    PatientCareRecord,
    RequestStatus,
    TransportRequest,
    utcnow,
)
from .schemas import CareRecordCreate, HospitalCreate, PendingTransport, TransportRequestCreate

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.ASSIGNED},
    RequestStatus.ASSIGNED: {RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED},
    RequestStatus.IN_PROGRESS: {RequestStatus.COMPLETED},
    RequestStatus.COMPLETED: set(),
}

# request status an ambulance status change pushes its open request to
COUPLED_REQUEST_STATUS: Dict[AmbulanceStatus, RequestStatus] = {
    AmbulanceStatus.EN_ROUTE: RequestStatus.IN_PROGRESS,
    AmbulanceStatus.COMPLETED: RequestStatus.COMPLETED,
}


def open_request_clause():
    return col(TransportRequest.status) != RequestStatus.COMPLETED.value


class RequestLedger:
    def __init__(self, engine: Engine, clock: Callable = utcnow):
        self.engine = engine
        self.clock = clock

    # hospitals

    def register_hospital(self, payload: HospitalCreate) -> Hospital:
        with Session(self.engine) as session:
            hospital = session.exec(select(Hospital).where(Hospital.name == payload.name)).first()
            if hospital:
                hospital.latitude = payload.latitude
                hospital.longitude = payload.longitude
            else:
                hospital = Hospital.model_validate(payload)
            session.add(hospital)
            session.commit()
            session.refresh(hospital)
            return hospital

    def get_hospital(self, hospital_id: int) -> Hospital:
        with Session(self.engine) as session:
            hospital = session.get(Hospital, hospital_id)
            if not hospital:
                raise HospitalNotFound(f"Hospital {hospital_id} not found", hospital_id=hospital_id)
            return hospital

    def list_hospitals(self) -> List[Hospital]:
        with Session(self.engine) as session:
            return list(session.exec(select(Hospital)).all())

    # transport requests

    def open(self, payload: TransportRequestCreate, tier: int, hospital: Hospital) -> TransportRequest:
        latitude = payload.hospital_latitude
        longitude = payload.hospital_longitude
        if latitude is None or longitude is None:
            latitude, longitude = hospital.latitude, hospital.longitude

        request = TransportRequest(
            patient_name=payload.patient_name,
            age=payload.age,
            chief_complaint=payload.chief_complaint,
            call_type=payload.call_type,
            requested_tier=int(tier),
            hospital_id=hospital.id,
            hospital_latitude=latitude,
            hospital_longitude=longitude,
            created_at=self.clock(),
        )
        with Session(self.engine) as session:
            session.add(request)
            session.commit()
            session.refresh(request)
        logger.info("Transport request saved with ID: %s", request.id)
        return request

    def get(self, request_id: int) -> TransportRequest:
        with Session(self.engine) as session:
            request = session.get(TransportRequest, request_id)
            if not request:
                raise RequestNotFound(f"Transport request {request_id} not found", request_id=request_id)
            return request

    def mark_assigned(self, session: Session, request: TransportRequest, ambulance_id: int, needs_approval: bool):
        """Record a dispatch decision. Only the dispatch engine calls this."""
        self._transition(request, RequestStatus.ASSIGNED)
        request.ambulance_id = ambulance_id
        request.needs_approval = needs_approval
        request.assigned_at = self.clock()
        session.add(request)

    def active_request_for(self, session: Session, ambulance_id: int) -> Optional[TransportRequest]:
        stmt = select(TransportRequest).where(
            TransportRequest.ambulance_id == ambulance_id, open_request_clause()
        )
        return session.exec(stmt).first()

    def advance_for_ambulance(
        self, session: Session, ambulance_id: int, status: AmbulanceStatus
    ) -> Optional[TransportRequest]:
        """Follow an ambulance status change onto its open request, if any."""
        target = COUPLED_REQUEST_STATUS.get(status)
        if target is None:
            return None
        request = self.active_request_for(session, ambulance_id)
        if request is None or RequestStatus(request.status) == target:
            return None
        if target not in REQUEST_TRANSITIONS[RequestStatus(request.status)]:
            logger.info(
                "Request %s stays %s on ambulance %s -> %s", request.id, request.status, ambulance_id, status.value
            )
            return None
        self._transition(request, target)
        session.add(request)
        logger.info("Request %s status updated to %s", request.id, target.value)
        return request

    def pending_for_hospital(self, hospital_id: int) -> List[PendingTransport]:
        stmt = (
            select(TransportRequest, Ambulance)
            .join(Ambulance, col(TransportRequest.ambulance_id) == col(Ambulance.id), isouter=True)
            .where(TransportRequest.hospital_id == hospital_id, open_request_clause())
            .order_by(col(TransportRequest.id))
        )
        with Session(self.engine) as session:
            return [
                PendingTransport(
                    id=request.id,
                    status=request.status,
                    ambulance_name=ambulance.name if ambulance else None,
                    latitude=ambulance.latitude if ambulance else None,
                    longitude=ambulance.longitude if ambulance else None,
                )
                for request, ambulance in session.exec(stmt).all()
            ]

    def _transition(self, request: TransportRequest, target: RequestStatus):
        current = RequestStatus(request.status)
        if target not in REQUEST_TRANSITIONS[current]:
            raise ValueError(f"Illegal request transition {current.value} -> {target.value}")
        request.status = target.value

    # patient care records

    def save_care_record(self, payload: CareRecordCreate, supply_usage: Dict[str, int]) -> PatientCareRecord:
        with Session(self.engine) as session:
            if not session.get(TransportRequest, payload.transport_request_id):
                raise RequestNotFound(
                    f"Transport request {payload.transport_request_id} not found",
                    request_id=payload.transport_request_id,
                )
            record = PatientCareRecord.model_validate(
                payload, update={"supply_usage": supply_usage or None, "created_at": self.clock()}
            )
            session.add(record)
            session.commit()
            session.refresh(record)
        logger.info("PCR saved with ID: %s for request %s", record.id, payload.transport_request_id)
        return record
