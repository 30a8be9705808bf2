"""Dispatch engine: ranks eligible ambulances for a transport request and
commits the winner.

Candidates are ordered by shift length (asc), idle time (desc), then travel
time (asc).
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import exists, update
from sqlmodel import Session, col

from .bus import NotificationBus
from .errors import NoAvailableAmbulances, NoEligibleAmbulance, PersistenceConflict
from .fleet import FleetRegistry
from .geo import GeoEstimator
from .ledger import RequestLedger, open_request_clause
from .models import Ambulance, AmbulanceStatus, RequestStatus, Tier, TransportRequest, as_utc, utcnow
from .schemas import AssignmentResult, TransportRequestCreate

logger = logging.getLogger(__name__)


def is_eligible(ambulance_tier: Optional[int], requested_tier: int) -> bool:
    """A unit may cover its own tier or the tier directly below it.

    CCT (tier 4) calls take CCT units only.
    """
    if ambulance_tier is None:
        return False
    if ambulance_tier == requested_tier:
        return True
    return ambulance_tier == requested_tier + 1 and requested_tier < Tier.CCT


def idle_hours(shift_start: Optional[datetime], last_call_end: Optional[datetime], now: datetime) -> float:
    references = [as_utc(t) for t in (shift_start, last_call_end) if t is not None]
    if not references:
        return 0.0
    return max(0.0, (as_utc(now) - max(references)).total_seconds() / 3600)


@dataclass(frozen=True)
class Candidate:
    ambulance_id: int
    name: str
    tier: int
    shift_length_hours: Optional[float]
    idle_hours: float
    travel_minutes: float

    def rank_key(self):
        shift = self.shift_length_hours if self.shift_length_hours is not None else math.inf
        return (shift, -self.idle_hours, self.travel_minutes)


def rank_candidates(candidates: List[Candidate]) -> List[Candidate]:
    return sorted(candidates, key=Candidate.rank_key)


class DispatchEngine:
    def __init__(
        self,
        fleet: FleetRegistry,
        ledger: RequestLedger,
        estimator: GeoEstimator,
        bus: NotificationBus,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
    ):
        self.fleet = fleet
        self.engine = fleet.engine
        self.ledger = ledger
        self.estimator = estimator
        self.bus = bus
        self.clock = clock
        self.max_attempts = max_attempts

    async def submit(self, payload: TransportRequestCreate) -> AssignmentResult:
        """Open a transport request and try to assign it straight away.

        The call type and hospital are checked before anything is written; a
        request that finds no ambulance is left pending.
        """
        tier = Tier.for_call_type(payload.call_type)
        hospital = self.ledger.get_hospital(payload.hospital_id)
        request = self.ledger.open(payload, tier, hospital)
        return await self.assign(request.id)

    async def assign(self, request_id: int) -> AssignmentResult:
        request = self.ledger.get(request_id)
        if request.status != RequestStatus.PENDING:
            raise PersistenceConflict(
                f"Request {request_id} is already {request.status}", request_id=request_id
            )
        destination = (request.hospital_latitude, request.hospital_longitude)

        for attempt in range(1, self.max_attempts + 1):
            pool = self.fleet.available()
            if not pool:
                raise NoAvailableAmbulances("No available ambulances", request_id=request_id)
            eligible = [a for a in pool if is_eligible(a.designation_level, request.requested_tier)]
            if not eligible:
                raise NoEligibleAmbulance(
                    f"No suitable ambulances available for {request.call_type}", request_id=request_id
                )

            ranked = await self._rank(eligible, destination)
            winner = ranked[0]
            needs_approval = winner.tier > request.requested_tier
            if self._commit(request_id, winner, needs_approval):
                return self._assigned(request_id, winner, needs_approval)
            logger.warning(
                "Ambulance %s was taken before request %s committed (attempt %d/%d)",
                winner.name, request_id, attempt, self.max_attempts,
            )

        raise PersistenceConflict(
            f"Could not commit an ambulance for request {request_id} after {self.max_attempts} attempts",
            request_id=request_id,
        )

    async def _rank(self, ambulances: List[Ambulance], destination) -> List[Candidate]:
        now = self.clock()
        travel = await asyncio.gather(
            *(self.estimator.estimate((a.latitude, a.longitude), destination) for a in ambulances)
        )
        return rank_candidates([
            Candidate(
                ambulance_id=a.id,
                name=a.name,
                tier=a.designation_level,
                shift_length_hours=a.shift_length_hours,
                idle_hours=idle_hours(a.shift_start, a.last_call_end, now),
                travel_minutes=minutes,
            )
            for a, minutes in zip(ambulances, travel)
        ])

    def _commit(self, request_id: int, winner: Candidate, needs_approval: bool) -> bool:
        """Claim the ambulance and assign the request in one transaction.

        Returns False when the ambulance stopped being free after the pool was
        read; the request is left untouched in that case.
        """
        still_open = exists().where(TransportRequest.ambulance_id == winner.ambulance_id, open_request_clause())
        claim = (
            update(Ambulance)
            .where(
                Ambulance.id == winner.ambulance_id,
                Ambulance.status == AmbulanceStatus.AVAILABLE.value,
                col(Ambulance.on_break).is_(False),
                ~still_open,
            )
            .values(status=AmbulanceStatus.EN_ROUTE.value)
            .execution_options(synchronize_session=False)
        )
        with Session(self.engine) as session:
            if session.exec(claim).rowcount != 1:
                session.rollback()
                return False
            request = session.get(TransportRequest, request_id)
            if request.status != RequestStatus.PENDING:
                session.rollback()
                raise PersistenceConflict(
                    f"Request {request_id} was assigned concurrently", request_id=request_id
                )
            self.ledger.mark_assigned(session, request, winner.ambulance_id, needs_approval)
            session.commit()
        return True

    def _assigned(self, request_id: int, winner: Candidate, needs_approval: bool) -> AssignmentResult:
        message = f"Ambulance {winner.name} assigned to request {request_id}"
        if needs_approval:
            message += ", pending supervisor approval"
        logger.info("%s", message)
        self.bus.emit(
            "assignment",
            {
                "requestId": request_id,
                "ambulanceId": winner.ambulance_id,
                "ambulanceName": winner.name,
                "needsApproval": needs_approval,
            },
        )
        return AssignmentResult(
            request_id=request_id,
            ambulance_id=winner.ambulance_id,
            ambulance_name=winner.name,
            needs_approval=needs_approval,
            travel_minutes=winner.travel_minutes,
            message=message,
        )
