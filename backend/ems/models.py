from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, Optional

from sqlalchemy import JSON, Column, DateTime, TypeDecorator, UniqueConstraint
from sqlmodel import Field, SQLModel

from .errors import InvalidCallType, InvalidStatus

# largest value an SQLite INTEGER column holds
MAX_QUANTITY = 2**63 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of ``value``; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UtcDateTime(TypeDecorator):
    """Stores UTC wall-clock time and hands back aware UTC datetimes.

    SQLite keeps no offset, so every value is converted to UTC on the way in.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            value = as_utc(value).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Tier(IntEnum):
    WHEELCHAIR = 1
    BLS = 2
    ALS = 3
    CCT = 4

    @property
    def call_type(self) -> str:
        return CALL_TYPE_NAMES[self]

    @classmethod
    def for_call_type(cls, call_type: str) -> "Tier":
        try:
            return CALL_TYPES[call_type]
        except (KeyError, TypeError):
            raise InvalidCallType(f"Invalid call type: {call_type!r}", call_type=call_type) from None


CALL_TYPES: Dict[str, Tier] = {
    "Wheelchair": Tier.WHEELCHAIR,
    "BLS": Tier.BLS,
    "ALS": Tier.ALS,
    "CCT": Tier.CCT,
}
CALL_TYPE_NAMES: Dict[Tier, str] = {tier: name for name, tier in CALL_TYPES.items()}


class AmbulanceStatus(str, Enum):
    AVAILABLE = "available"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    ARRIVED_AT_PATIENT = "arrived_at_patient"
    TRANSPORTING = "transporting"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value) -> "AmbulanceStatus":
        """Accept the canonical value or the spaced form field units send ("en route")."""
        normalized = str(value or "").strip().lower().replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidStatus(f"Invalid status: {value!r}", status=value) from None


class RequestStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"


class Hospital(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    latitude: float
    longitude: float


class Ambulance(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    status: str = AmbulanceStatus.AVAILABLE.value
    latitude: float = 0.0
    longitude: float = 0.0
    designation_level: Optional[int] = None
    shift_length_hours: Optional[float] = None
    shift_start: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    last_call_end: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    on_break: bool = False
    break_ends_at: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    last_updated: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)


class TransportRequest(SQLModel, table=True):
    __tablename__ = "transport_request"

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_name: str
    age: int
    chief_complaint: str
    call_type: str
    requested_tier: int
    status: str = Field(default=RequestStatus.PENDING.value, index=True)
    hospital_id: int = Field(foreign_key="hospital.id")
    hospital_latitude: float
    hospital_longitude: float
    ambulance_id: Optional[int] = Field(default=None, foreign_key="ambulance.id", index=True)
    needs_approval: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_type=UtcDateTime)
    assigned_at: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)


class InventoryItem(SQLModel, table=True):
    __tablename__ = "ambulance_inventory"
    __table_args__ = (UniqueConstraint("ambulance_id", "supply_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    ambulance_id: int = Field(foreign_key="ambulance.id")
    supply_name: str
    quantity: int = 0
    par_level: int = 0


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ambulance_id: int = Field(foreign_key="ambulance.id")
    supply_name: str
    current_quantity: int
    par_level: int
    status: str = Field(default=NotificationStatus.UNREAD.value, index=True)
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UtcDateTime)


class PatientCareRecord(SQLModel, table=True):
    __tablename__ = "pcr"

    id: Optional[int] = Field(default=None, primary_key=True)
    transport_request_id: int = Field(foreign_key="transport_request.id")
    patient_name: str
    age: Optional[int] = None
    gender: Optional[str] = None
    chief_complaint: str
    vital_signs: Optional[str] = None
    medical_history: Optional[str] = None
    assessment: Optional[str] = None
    interventions: Optional[str] = None
    narrative: Optional[str] = None
    timestamps: Optional[str] = None
    crew_info: Optional[str] = None
    outcome: Optional[str] = None
    supply_usage: Optional[Dict[str, int]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UtcDateTime)
